"""
Run routes — async batch runs, status polling, operator pause, reports.
"""
import logging
from flask import Blueprint, current_app, jsonify, request

from skiptrace.pipeline.errors import ValidationError
from skiptrace.routes.skiptrace import error_response, handle_error, parse_flag

logger = logging.getLogger('routes.runs')

bp = Blueprint('runs', __name__)


def _manager():
    return current_app.extensions['run_manager']


@bp.route('/runs', methods=['POST'])
def create_run():
    """Create a run and execute it in the background (RQ)."""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')
        summary = _manager().launch_run(
            data.get('leadIds'),
            source_label=str(data.get('sourceLabel') or 'async'),
            force=parse_flag(data.get('force', False)),
        )
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'message': 'Run queued', 'data': summary.to_dict()}), 202


@bp.route('/runs')
def list_runs():
    """Most recent runs first."""
    try:
        limit = request.args.get('limit', 20, type=int)
        runs = _manager().list_runs(limit=max(1, min(limit, 200)))
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'data': [r.to_dict() for r in runs]}), 200


@bp.route('/runs/<run_id>')
def get_run(run_id):
    try:
        summary = _manager().run_status(run_id)
    except Exception as e:
        return handle_error(e)
    if summary is None:
        return error_response('Run not found', 'not_found', 404)
    return jsonify({'success': True, 'data': summary.to_dict()}), 200


@bp.route('/runs/<run_id>/pause', methods=['POST'])
def pause_run(run_id):
    """Operator stop: no new items are dispatched; in-flight ones finish."""
    manager = _manager()
    try:
        data = request.get_json(silent=True) or {}
        if manager.run_status(run_id) is None:
            return error_response('Run not found', 'not_found', 404)
        paused = manager.pause_run(run_id, reason=str(data.get('reason') or 'operator'))
        summary = manager.run_status(run_id)
    except Exception as e:
        return handle_error(e)
    message = 'Run paused' if paused else 'Run already paused or finished'
    return jsonify({'success': True, 'message': message, 'data': summary.to_dict()}), 200


@bp.route('/runs/<run_id>/report')
def get_report(run_id):
    try:
        report = _manager().reports.get_or_create_report(run_id)
    except Exception as e:
        return handle_error(e)
    if report is None:
        return error_response('Run not found', 'not_found', 404)
    return jsonify({'success': True, 'data': report}), 200
