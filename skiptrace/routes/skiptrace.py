"""
Skip-trace routes — single/bulk traces, cached reads, quota, analytics, compliance.

Every error body uses the {success: false, message, error} envelope.
"""
import logging
from flask import Blueprint, current_app, jsonify, request

from skiptrace.config import BULK_MAX_BATCH
from skiptrace.pipeline.errors import SkipTraceError, BudgetExceeded, ValidationError
from skiptrace.pipeline.manager import normalize_lead_ids
from skiptrace.services.analytics import parse_date_range, cost_analytics
from skiptrace.services.dnc import normalize_phone

logger = logging.getLogger('routes.skiptrace')

bp = Blueprint('skiptrace', __name__)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _manager():
    return current_app.extensions['run_manager']


def error_response(message, error, status, **extra):
    body = {'success': False, 'message': message, 'error': error}
    body.update(extra)
    return jsonify(body), status


def handle_error(e):
    """Map an exception to the shared envelope and status."""
    if isinstance(e, BudgetExceeded):
        return error_response(str(e), e.reason, 429, quota=e.quota)
    if isinstance(e, SkipTraceError):
        status = e.http_status if e.http_status >= 400 else 500
        return error_response(str(e), e.reason, status)
    logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=True)
    return error_response('Internal server error', str(e), 500)


def parse_flag(value) -> bool:
    """JSON bool or a truthy string ("1", "true", "yes", "on"); anything else is False."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _empty_payload(lead_id):
    return {'leadId': lead_id, 'phones': [], 'emails': [], 'cached': False, 'cost': 0, 'provider': None}


# ── Single lead ──────────────────────────────────────────────────────────────

@bp.route('/leads/<lead_id>/skiptrace', methods=['POST'])
def trace_lead(lead_id):
    """Trace one lead synchronously."""
    try:
        data = request.get_json(silent=True) or {}
        force = parse_flag(data.get('force', request.args.get('force', False)))
        result = _manager().trace_single(lead_id, force=force)
    except Exception as e:
        return handle_error(e)

    payload = {
        'leadId': result.lead_id,
        'phones': result.phones,
        'emails': result.emails,
        'cached': result.cached,
        'cost': result.cost_cents,
        'provider': result.provider,
    }
    if result.success:
        message = 'Returned cached skip trace result' if result.cached else 'Skip trace completed'
        return jsonify({'success': True, 'message': message, 'data': payload}), 200
    return jsonify({
        'success': False,
        'message': 'Skip trace failed',
        'error': result.error,
        'data': payload,
    }), 200


@bp.route('/leads/<lead_id>/skiptrace', methods=['GET'])
def get_lead_result(lead_id):
    """Current result without tracing; ?compliance=true adds per-phone call checks."""
    manager = _manager()
    try:
        current = manager.ledger.get_current(lead_id)
        if current is not None and parse_flag(request.args.get('compliance', False)):
            if manager.dnc is None:
                return error_response('DNC compliance checks are not configured', 'not_configured', 501)
            current['phones'] = manager.dnc.annotate_phones(current['phones'], request.args.get('timezone'))
    except Exception as e:
        return handle_error(e)
    if current is None:
        return jsonify({
            'success': False,
            'message': 'No skip trace data found for this lead',
            'data': _empty_payload(lead_id),
        }), 200
    return jsonify({'success': True, 'message': 'Skip trace data found', 'data': current}), 200


@bp.route('/leads/<lead_id>/skiptrace/history')
def get_lead_history(lead_id):
    """Provider-call audit trail for a lead, newest first."""
    try:
        limit = request.args.get('limit', 50, type=int)
        calls = _manager().ledger.provider_calls_for_lead(lead_id, limit=max(1, min(limit, 500)))
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'data': calls}), 200


# ── Bulk ─────────────────────────────────────────────────────────────────────

@bp.route('/leads/bulk/skiptrace', methods=['POST'])
def trace_bulk():
    """Trace up to BULK_MAX_BATCH leads synchronously as one run."""
    manager = _manager()
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')
        lead_ids = normalize_lead_ids(data.get('leadIds'), max_batch=BULK_MAX_BATCH)
        summary, results = manager.run_batch(
            lead_ids,
            source_label=str(data.get('sourceLabel') or 'bulk'),
            force=parse_flag(data.get('force', False)),
            max_batch=BULK_MAX_BATCH,
        )
        quota = manager.budget.get_remaining_quota()
    except Exception as e:
        return handle_error(e)

    successes = sum(1 for r in results if r.success)
    failures = len(results) - successes
    return jsonify({
        'success': successes > 0,
        'message': f'Processed {len(results)} leads: {successes} succeeded, {failures} failed',
        'runId': summary.run_id,
        'softPaused': summary.soft_paused,
        'data': [r.to_dict() for r in results],
        'totalCost': sum(r.cost_cents for r in results),
        'quota': quota,
    }), 200


# ── Quota ────────────────────────────────────────────────────────────────────

@bp.route('/skiptrace/quota')
def get_quota():
    try:
        quota = _manager().budget.get_remaining_quota()
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'data': quota}), 200


@bp.route('/skiptrace/quota/reset', methods=['POST'])
def reset_quota():
    """Operator reset of today's soft pause, optionally with a new limit."""
    try:
        data = request.get_json(silent=True) or {}
        limit = data.get('limitCents')
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
            raise ValidationError('limitCents must be an integer')
        quota = _manager().budget.reset(limit_cents=limit)
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'message': 'Budget window reset', 'data': quota}), 200


# ── Analytics ────────────────────────────────────────────────────────────────

@bp.route('/skiptrace/analytics')
def get_analytics():
    try:
        start, end = parse_date_range(request.args.get('startDate'), request.args.get('endDate'))
        data = cost_analytics(start, end, session_factory=_manager().session_factory)
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'data': data}), 200


# ── Compliance ───────────────────────────────────────────────────────────────

@bp.route('/compliance/check/<phone_number>')
def check_compliance(phone_number):
    """DNC verdict plus quiet-hours check for one phone number."""
    dnc = _manager().dnc
    if dnc is None:
        return error_response('DNC compliance checks are not configured', 'not_configured', 501)
    if normalize_phone(phone_number) is None:
        return error_response(f'Invalid phone number: {phone_number}', 'validation_error', 400)
    try:
        result = dnc.can_call(phone_number, request.args.get('timezone'))
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'data': result}), 200


# ── Providers ────────────────────────────────────────────────────────────────

@bp.route('/skiptrace/providers')
def get_providers():
    """Configured chain plus circuit breaker health per provider."""
    try:
        orchestrator = _manager().orchestrator
        chain = orchestrator.describe()
        breakers = orchestrator.breakers
        for entry in chain:
            cb = breakers.get(entry['adapter'])
            entry['health'] = cb.get_health() if cb else None
    except Exception as e:
        return handle_error(e)
    return jsonify({'success': True, 'data': chain}), 200


@bp.route('/skiptrace/providers/<name>/reset', methods=['POST'])
def reset_provider_breaker(name):
    """Manually close a provider's circuit breaker."""
    cb = _manager().orchestrator.breakers.get(name)
    if not cb:
        return error_response(f"Unknown provider '{name}'", 'not_found', 404)
    cb.reset()
    return jsonify({'success': True, 'message': f"Circuit '{name}' reset"}), 200
