"""
Report Generator — structured summary of a run, built from durable rows only.

generate_report() is a pure read and returns the same dict for the same rows
(nothing time-dependent: an unfinished run has duration_seconds = None).
get_or_create_report() persists the artifact once the run has finished; a
stored report is never recomputed or overwritten.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from skiptrace.database import get_session, utcnow, as_utc
from skiptrace.models.enrichment_result import EnrichmentResult
from skiptrace.models.provider_call import ProviderCall
from skiptrace.models.run import SkipTraceRun
from skiptrace.models.run_item import SkipTraceRunItem
from skiptrace.models.run_report import RunReport
from skiptrace.pipeline.errors import StoreError

logger = logging.getLogger('pipeline.report')

TOP_FAILURE_REASONS = 10
SAMPLE_SIZE = 3


def _pct(part, whole) -> float:
    return round(100.0 * part / whole, 1) if whole else 0.0


class ReportGenerator:

    def __init__(self, session_factory=None, clock=utcnow):
        self._session_factory = session_factory or get_session
        self._clock = clock

    def generate_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Compute the report for a run. None if the run does not exist."""
        session = self._session_factory()
        try:
            run = session.get(SkipTraceRun, run_id)
            if run is None:
                return None
            return self._build(session, run)
        except SQLAlchemyError as e:
            logger.error("Failed to build report for run %s", run_id, exc_info=True)
            raise StoreError(f'report query failed: {e}') from e
        finally:
            session.close()

    def _build(self, session, run) -> Dict[str, Any]:
        run_id = run.run_id
        items = session.execute(
            select(SkipTraceRunItem.lead_id, SkipTraceRunItem.status,
                   SkipTraceRunItem.cached, SkipTraceRunItem.last_error)
            .where(SkipTraceRunItem.run_id == run_id)
        ).all()

        counts = {'queued': 0, 'in_flight': 0, 'done': 0, 'failed': 0}
        done_ids, failed_ids, cached = [], [], 0
        for lead_id, status, is_cached, _ in items:
            counts[status] = counts.get(status, 0) + 1
            if status == 'done':
                done_ids.append(lead_id)
                cached += 1 if is_cached else 0
            elif status == 'failed':
                failed_ids.append(lead_id)

        # Hit rates: done items joined against the ledger's current results
        contacts = {}
        if done_ids:
            rows = session.execute(
                select(EnrichmentResult.lead_id, EnrichmentResult.phones, EnrichmentResult.emails)
                .join(SkipTraceRunItem, SkipTraceRunItem.lead_id == EnrichmentResult.lead_id)
                .where(SkipTraceRunItem.run_id == run_id, SkipTraceRunItem.status == 'done')
            ).all()
            contacts = {lead_id: (bool(phones), bool(emails)) for lead_id, phones, emails in rows}
        with_phone = sum(1 for lead_id in done_ids if contacts.get(lead_id, (False, False))[0])
        with_email = sum(1 for lead_id in done_ids if contacts.get(lead_id, (False, False))[1])

        # Spend and call counts from the audit ledger
        by_provider = {}
        calls = session.execute(
            select(ProviderCall.provider, ProviderCall.succeeded,
                   func.count(ProviderCall.id), func.coalesce(func.sum(ProviderCall.cost_cents), 0))
            .where(ProviderCall.run_id == run_id)
            .group_by(ProviderCall.provider, ProviderCall.succeeded)
        ).all()
        for provider, succeeded, n, cost in calls:
            entry = by_provider.setdefault(provider, {'calls': 0, 'succeeded': 0, 'failed': 0, 'cost_cents': 0})
            entry['calls'] += n
            entry['succeeded' if succeeded else 'failed'] += n
            entry['cost_cents'] += int(cost or 0)

        reasons = session.execute(
            select(SkipTraceRunItem.last_error, func.count(SkipTraceRunItem.id).label('n'))
            .where(SkipTraceRunItem.run_id == run_id, SkipTraceRunItem.status == 'failed')
            .group_by(SkipTraceRunItem.last_error)
            .order_by(func.count(SkipTraceRunItem.id).desc(), SkipTraceRunItem.last_error)
            .limit(TOP_FAILURE_REASONS)
        ).all()

        started = as_utc(run.started_at)
        finished = as_utc(run.finished_at)
        enriched = sorted(lead_id for lead_id in done_ids if any(contacts.get(lead_id, (False, False))))
        done = counts['done']

        return {
            'run_id': run_id,
            'source_label': run.source_label or '',
            'status': 'finished' if finished else 'in_progress',
            'started_at': started.isoformat() if started else None,
            'finished_at': finished.isoformat() if finished else None,
            'duration_seconds': round((finished - started).total_seconds(), 3) if finished and started else None,
            'soft_paused': bool(run.soft_paused),
            'pause_reason': run.pause_reason,
            'totals': {
                'total': len(items),
                'done': done,
                'failed': counts['failed'],
                'queued': counts['queued'],
                'in_flight': counts['in_flight'],
                'cached': cached,
                'provider_calls': sum(e['calls'] for e in by_provider.values()),
                'cost_cents': sum(e['cost_cents'] for e in by_provider.values()),
            },
            'hit_rate': {
                'phone_pct': _pct(with_phone, done),
                'email_pct': _pct(with_email, done),
            },
            'cache_hit_ratio': round(cached / done, 4) if done else 0.0,
            'cost_by_provider': dict(sorted(by_provider.items())),
            'top_failure_reasons': [
                {'reason': reason or 'unknown', 'count': n} for reason, n in reasons
            ],
            'sample_enriched': enriched[:SAMPLE_SIZE],
            'sample_failed': sorted(failed_ids)[:SAMPLE_SIZE],
        }

    def get_or_create_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Stored artifact if present; otherwise compute, persisting it when the run is finished.

        Returns the report dict with `generated_at` (None while the run is
        still in progress and nothing is stored).
        """
        session = self._session_factory()
        try:
            stored = session.get(RunReport, run_id)
            if stored is not None:
                return {**stored.report, 'generated_at': as_utc(stored.generated_at).isoformat()}

            run = session.get(SkipTraceRun, run_id)
            if run is None:
                return None
            report = self._build(session, run)
            if run.finished_at is None:
                return {**report, 'generated_at': None}

            generated_at = self._clock()
            session.add(RunReport(run_id=run_id, report=report, generated_at=generated_at))
            try:
                session.commit()
            except IntegrityError:
                # Written concurrently; the first artifact stands
                session.rollback()
                stored = session.get(RunReport, run_id)
                return {**stored.report, 'generated_at': as_utc(stored.generated_at).isoformat()}
            logger.info("Report persisted for run %s", run_id)
            return {**report, 'generated_at': as_utc(generated_at).isoformat()}
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to get or create report for run %s", run_id, exc_info=True)
            raise StoreError(f'report persistence failed: {e}') from e
        finally:
            session.close()
