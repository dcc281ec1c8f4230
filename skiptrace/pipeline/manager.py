"""
Run Manager — groups leads into a Run and drives each item through the engine.

Per item:
  queued → in_flight → cache check → budget reservation → provider chain
         → DNC screening → ledger upsert → lead projection → done | failed

Status changes are conditional UPDATEs (WHERE status = <expected>), so an
item can never regress or be processed twice. Run counters are recomputed
from item rows on every read and snapshotted onto the run when it finishes.

A budget denial fails the item with "budget_exceeded" and soft-pauses the
run: workers stop pulling new items, in-flight items finish, and items never
dispatched stay queued.
"""
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError

from skiptrace.config import RUN_CONCURRENCY, RUN_MAX_BATCH, RUN_JOB_TIMEOUT
from skiptrace.database import get_session, utcnow, as_utc
from skiptrace.models.run import SkipTraceRun
from skiptrace.models.run_item import SkipTraceRunItem
from skiptrace.pipeline.errors import (
    SkipTraceError, ValidationError, LeadNotFound, BudgetExceeded, StoreError,
    ConfigurationError,
)
from skiptrace.services.leads import best_phone, best_email

logger = logging.getLogger('pipeline.manager')


# ── Lazy RQ queue (avoids import-time Redis connection) ──────────────────

_queue = None


def _get_queue():
    global _queue
    if _queue is None:
        from skiptrace.extensions import redis_client
        from rq import Queue
        _queue = Queue('skiptrace', connection=redis_client)
    return _queue


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass
class RunSummary:
    run_id: str
    source_label: str
    force: bool
    total: int
    queued: int
    in_flight: int
    done: int
    failed: int
    soft_paused: bool
    pause_reason: Optional[str]
    started_at: Any
    finished_at: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'source_label': self.source_label,
            'force': self.force,
            'total': self.total,
            'queued': self.queued,
            'in_flight': self.in_flight,
            'done': self.done,
            'failed': self.failed,
            'soft_paused': self.soft_paused,
            'pause_reason': self.pause_reason,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ItemResult:
    lead_id: str
    status: str
    phones: List[Dict[str, Any]] = field(default_factory=list)
    emails: List[Dict[str, Any]] = field(default_factory=list)
    cached: bool = False
    cost_cents: int = 0
    provider: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == 'done'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'leadId': self.lead_id,
            'success': self.success,
            'status': self.status,
            'phones': self.phones,
            'emails': self.emails,
            'cached': self.cached,
            'cost': self.cost_cents,
            'provider': self.provider,
            'error': self.error,
        }


def normalize_lead_ids(lead_ids, max_batch: int = None) -> List[str]:
    """Validate and de-duplicate (order-preserving) a list of lead ids."""
    if not isinstance(lead_ids, (list, tuple)) or not lead_ids:
        raise ValidationError('leadIds must be a non-empty list')
    cleaned = []
    for raw in lead_ids:
        if isinstance(raw, bool) or not isinstance(raw, (str, int)):
            raise ValidationError(f'Invalid lead id: {raw!r}')
        lead_id = str(raw).strip()
        if not lead_id:
            raise ValidationError('Lead ids must be non-empty')
        cleaned.append(lead_id)
    unique = list(dict.fromkeys(cleaned))
    if max_batch is not None and len(unique) > max_batch:
        raise ValidationError(f'Batch too large: {len(unique)} leads (max {max_batch})')
    return unique


class RunManager:

    def __init__(self, ledger, leads, budget, orchestrator, reports=None, dnc=None,
                 session_factory=None, concurrency: int = RUN_CONCURRENCY, clock=utcnow):
        self.ledger = ledger
        self.leads = leads
        self.budget = budget
        self.orchestrator = orchestrator
        self.reports = reports
        self.dnc = dnc
        self._session_factory = session_factory or get_session
        self.concurrency = max(1, int(concurrency))
        self._clock = clock

    @property
    def session_factory(self):
        return self._session_factory

    # ── Run lifecycle ─────────────────────────────────────────────────

    def create_run(self, lead_ids, source_label: str = '', force: bool = False,
                   max_batch: int = RUN_MAX_BATCH) -> str:
        """Create a run with one queued item per distinct lead. Returns run_id."""
        unique = normalize_lead_ids(lead_ids, max_batch=max_batch)
        if not self.orchestrator.chain:
            raise ConfigurationError('No providers configured')

        run_id = str(uuid.uuid4())
        now = self._clock()
        session = self._session_factory()
        try:
            session.add(SkipTraceRun(
                run_id=run_id,
                source_label=source_label or '',
                force=bool(force),
                total=len(unique),
                queued=len(unique),
                started_at=now,
            ))
            session.flush()
            session.add_all([
                SkipTraceRunItem(run_id=run_id, lead_id=lead_id, status='queued', updated_at=now)
                for lead_id in unique
            ])
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to create run (%d leads)", len(unique), exc_info=True)
            raise StoreError(f'run creation failed: {e}') from e
        finally:
            session.close()

        logger.info("Created run %s (%s) with %d leads, force=%s", run_id, source_label, len(unique), force)
        return run_id

    def run_status(self, run_id: str) -> Optional[RunSummary]:
        """Current summary, counters recomputed from item rows. None if unknown."""
        session = self._session_factory()
        try:
            run = session.get(SkipTraceRun, run_id)
            if run is None:
                return None
            counts = self._count_items(session, run_id)
            return self._summary(run, counts)
        except SQLAlchemyError as e:
            raise StoreError(f'run read failed: {e}') from e
        finally:
            session.close()

    def list_runs(self, limit: int = 20) -> List[RunSummary]:
        session = self._session_factory()
        try:
            runs = session.execute(
                select(SkipTraceRun).order_by(SkipTraceRun.started_at.desc()).limit(limit)
            ).scalars().all()
            return [self._summary(run, self._count_items(session, run.run_id)) for run in runs]
        except SQLAlchemyError as e:
            raise StoreError(f'run list failed: {e}') from e
        finally:
            session.close()

    @staticmethod
    def _count_items(session, run_id) -> Dict[str, int]:
        rows = session.execute(
            select(SkipTraceRunItem.status, func.count(SkipTraceRunItem.id))
            .where(SkipTraceRunItem.run_id == run_id)
            .group_by(SkipTraceRunItem.status)
        ).all()
        counts = {'queued': 0, 'in_flight': 0, 'done': 0, 'failed': 0}
        counts.update({status: n for status, n in rows})
        counts['total'] = sum(counts[s] for s in ('queued', 'in_flight', 'done', 'failed'))
        return counts

    @staticmethod
    def _summary(run, counts) -> RunSummary:
        return RunSummary(
            run_id=run.run_id,
            source_label=run.source_label or '',
            force=bool(run.force),
            total=counts['total'],
            queued=counts['queued'],
            in_flight=counts['in_flight'],
            done=counts['done'],
            failed=counts['failed'],
            soft_paused=bool(run.soft_paused),
            pause_reason=run.pause_reason,
            started_at=as_utc(run.started_at),
            finished_at=as_utc(run.finished_at),
        )

    def pause_run(self, run_id: str, reason: str = 'operator') -> bool:
        """Stop dispatching new items for a run. In-flight items still finish."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(SkipTraceRun)
                .where(SkipTraceRun.run_id == run_id,
                       SkipTraceRun.finished_at.is_(None),
                       SkipTraceRun.soft_paused.is_(False))
                .values(soft_paused=True, pause_reason=reason)
            )
            session.commit()
            paused = result.rowcount == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f'run pause failed: {e}') from e
        finally:
            session.close()
        if paused:
            logger.warning("Run %s soft-paused: %s", run_id, reason)
        return paused

    def _is_paused(self, run_id: str) -> bool:
        session = self._session_factory()
        try:
            return bool(session.execute(
                select(SkipTraceRun.soft_paused).where(SkipTraceRun.run_id == run_id)
            ).scalar())
        except SQLAlchemyError as e:
            raise StoreError(f'run pause check failed: {e}') from e
        finally:
            session.close()

    def finalize_run(self, run_id: str, write_report: bool = True) -> Optional[RunSummary]:
        """Snapshot counters and set finished_at (once)."""
        session = self._session_factory()
        try:
            run = session.get(SkipTraceRun, run_id)
            if run is None:
                return None
            if run.finished_at is None:
                counts = self._count_items(session, run_id)
                session.execute(
                    update(SkipTraceRun)
                    .where(SkipTraceRun.run_id == run_id, SkipTraceRun.finished_at.is_(None))
                    .values(
                        total=counts['total'], queued=counts['queued'], in_flight=counts['in_flight'],
                        done=counts['done'], failed=counts['failed'], finished_at=self._clock(),
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to finalize run %s", run_id, exc_info=True)
            raise StoreError(f'run finalize failed: {e}') from e
        finally:
            session.close()

        summary = self.run_status(run_id)
        logger.info("Run %s finished: done=%d failed=%d queued=%d soft_paused=%s",
                    run_id, summary.done, summary.failed, summary.queued, summary.soft_paused)

        if write_report and self.reports is not None:
            try:
                self.reports.get_or_create_report(run_id)
            except SkipTraceError:
                logger.error("Report generation failed for run %s", run_id, exc_info=True)
        return summary

    # ── Item processing ───────────────────────────────────────────────

    def _transition(self, run_id, lead_id, from_status, to_status, **values) -> bool:
        """Conditional status change; False if the item was not in from_status."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(SkipTraceRunItem)
                .where(SkipTraceRunItem.run_id == run_id,
                       SkipTraceRunItem.lead_id == lead_id,
                       SkipTraceRunItem.status == from_status)
                .values(status=to_status, updated_at=self._clock(), **values)
            )
            session.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f'item transition {from_status}->{to_status} failed: {e}') from e
        finally:
            session.close()

    def _item_state(self, run_id, lead_id):
        """(status, last_error) as stored, or (None, None) if the item is gone."""
        session = self._session_factory()
        try:
            row = session.execute(
                select(SkipTraceRunItem.status, SkipTraceRunItem.last_error)
                .where(SkipTraceRunItem.run_id == run_id, SkipTraceRunItem.lead_id == lead_id)
            ).first()
            return (row.status, row.last_error) if row else (None, None)
        except SQLAlchemyError as e:
            raise StoreError(f'item read failed: {e}') from e
        finally:
            session.close()

    def _lost_item(self, run_id, lead_id) -> ItemResult:
        """Result for an item whose in_flight → done change matched no row."""
        status, last_error = self._item_state(run_id, lead_id)
        logger.warning("Item %s/%s left in_flight by another executor, now %s", run_id, lead_id, status,
                       extra={'run_id': run_id, 'lead_id': lead_id})
        return ItemResult(lead_id=lead_id, status=status or 'failed', error=last_error or 'interrupted')

    def _fail(self, run_id, lead_id, reason, message=None) -> ItemResult:
        try:
            self._transition(run_id, lead_id, 'in_flight', 'failed', last_error=reason)
        except StoreError:
            # Left in_flight; recovered as "interrupted" when the run is resumed
            logger.error("Could not mark item %s/%s failed", run_id, lead_id, exc_info=True,
                         extra={'run_id': run_id, 'lead_id': lead_id})
        return ItemResult(lead_id=lead_id, status='failed', error=message or reason)

    def process_item(self, run_id: str, lead_id: str, force: bool = False) -> Optional[ItemResult]:
        """Process one queued item. Returns None if it was not queued."""
        context = {'run_id': run_id, 'lead_id': lead_id}
        try:
            if not self._transition(run_id, lead_id, 'queued', 'in_flight'):
                return None
        except StoreError:
            logger.error("Could not claim item %s/%s", run_id, lead_id, exc_info=True, extra=context)
            return ItemResult(lead_id=lead_id, status='queued', error='store_error')

        try:
            lead = self.leads.get_lead(lead_id)
            if lead is None:
                raise LeadNotFound(lead_id)

            if not force:
                cached = self.ledger.get_current(lead_id)
                if cached is not None:
                    if not self._transition(run_id, lead_id, 'in_flight', 'done',
                                            cached=True, provider=cached['provider'], cost_cents=0):
                        return self._lost_item(run_id, lead_id)
                    logger.debug("Lead %s served from cache", lead_id,
                                 extra=dict(context, provider=cached['provider']))
                    return ItemResult(lead_id=lead_id, status='done', phones=cached['phones'],
                                      emails=cached['emails'], cached=True, cost_cents=0,
                                      provider=cached['provider'])

            decision = self.budget.check_and_reserve(self.orchestrator.estimate_cost())
            if not decision.allowed:
                self.pause_run(run_id, reason='budget_exceeded')
                return self._fail(run_id, lead_id, BudgetExceeded.reason)

            actual = 0
            try:
                outcome = self.orchestrator.trace(lead, run_id=run_id)
                actual = outcome.cost_cents
            finally:
                self.budget.commit(actual, decision)

            phones = outcome.phones
            if self.dnc is not None:
                try:
                    phones = self.dnc.screen_phones(outcome.phones)
                except StoreError:
                    # Provider-reported flags still stand; the lookup is already paid for
                    logger.warning("DNC screening skipped for lead %s", lead_id, exc_info=True, extra=context)

            self.ledger.upsert(lead_id, phones, outcome.emails,
                               provider=outcome.provider, cost_cents=outcome.cost_cents,
                               resolved_at=self._clock())
            try:
                self.leads.update_contact_projection(lead_id, best_phone(phones),
                                                     best_email(outcome.emails))
            except StoreError:
                # Projection is a convenience copy; the ledger already holds the result
                logger.warning("Contact projection not updated for lead %s", lead_id, exc_info=True,
                               extra=context)

            if not self._transition(run_id, lead_id, 'in_flight', 'done', cached=False,
                                    provider=outcome.provider, cost_cents=outcome.cost_cents):
                return self._lost_item(run_id, lead_id)
            logger.info("Item %s/%s done via %s (%d cents)", run_id, lead_id, outcome.provider,
                        outcome.cost_cents, extra=dict(context, provider=outcome.provider))
            return ItemResult(lead_id=lead_id, status='done', phones=phones,
                              emails=outcome.emails, cached=False, cost_cents=outcome.cost_cents,
                              provider=outcome.provider)

        except SkipTraceError as e:
            logger.info("Item %s/%s failed: %s", run_id, lead_id, e, extra=context)
            return self._fail(run_id, lead_id, e.reason, message=str(e))
        except Exception as e:
            logger.error("Unexpected error processing %s/%s", run_id, lead_id, exc_info=True, extra=context)
            return self._fail(run_id, lead_id, 'internal_error', message=str(e))

    # ── Execution ─────────────────────────────────────────────────────

    def _recover_interrupted(self, run_id: str) -> int:
        """Fail items a previous executor left in_flight."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(SkipTraceRunItem)
                .where(SkipTraceRunItem.run_id == run_id, SkipTraceRunItem.status == 'in_flight')
                .values(status='failed', last_error='interrupted', updated_at=self._clock())
            )
            session.commit()
            if result.rowcount:
                logger.warning("Run %s: %d interrupted items marked failed", run_id, result.rowcount)
            return result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f'interrupted item recovery failed: {e}') from e
        finally:
            session.close()

    def _queued_lead_ids(self, run_id: str) -> List[str]:
        session = self._session_factory()
        try:
            return list(session.execute(
                select(SkipTraceRunItem.lead_id)
                .where(SkipTraceRunItem.run_id == run_id, SkipTraceRunItem.status == 'queued')
                .order_by(SkipTraceRunItem.id)
            ).scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f'queued item read failed: {e}') from e
        finally:
            session.close()

    def execute_run(self, run_id: str, write_report: bool = True) -> Optional[RunSummary]:
        """Process every queued item with a bounded worker pool, then finalize."""
        status = self.run_status(run_id)
        if status is None:
            logger.error("Run %s not found", run_id)
            return None
        if status.finished_at is not None:
            logger.info("Run %s already finished", run_id)
            return status

        self._recover_interrupted(run_id)
        pending = self._queued_lead_ids(run_id)
        lock = threading.Lock()
        cursor = iter(pending)

        def next_lead():
            with lock:
                return next(cursor, None)

        def worker():
            processed = 0
            while True:
                try:
                    if self._is_paused(run_id):
                        break
                except StoreError:
                    logger.error("Run %s: pause check failed, stopping dispatch", run_id, exc_info=True,
                                 extra={'run_id': run_id})
                    try:
                        self.pause_run(run_id, reason='store_error')
                    except StoreError:
                        logger.error("Run %s: could not record store_error pause", run_id, exc_info=True,
                                     extra={'run_id': run_id})
                    break
                lead_id = next_lead()
                if lead_id is None:
                    break
                self.process_item(run_id, lead_id, force=status.force)
                processed += 1
            return processed

        workers = min(self.concurrency, len(pending))
        logger.info("Executing run %s: %d queued items, %d workers", run_id, len(pending), workers)
        if workers:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'run-{run_id[:8]}') as pool:
                futures = [pool.submit(worker) for _ in range(workers)]
                for future in futures:
                    exc = future.exception()
                    if exc is not None:
                        logger.error("Worker for run %s crashed: %s", run_id, exc,
                                     exc_info=(type(exc), exc, exc.__traceback__))

        return self.finalize_run(run_id, write_report=write_report)

    def item_results(self, run_id: str) -> List[ItemResult]:
        """Per-item outcome for a run, in submission order."""
        session = self._session_factory()
        try:
            items = session.execute(
                select(SkipTraceRunItem).where(SkipTraceRunItem.run_id == run_id)
                .order_by(SkipTraceRunItem.id)
            ).scalars().all()
            items = [(i.lead_id, i.status, i.cached, i.cost_cents, i.provider, i.last_error) for i in items]
        finally:
            session.close()

        current = self.ledger.get_many([lead_id for lead_id, status, *_ in items if status == 'done'])
        results = []
        for lead_id, status, cached, cost, provider, last_error in items:
            payload = current.get(lead_id, {}) if status == 'done' else {}
            results.append(ItemResult(
                lead_id=lead_id,
                status=status,
                phones=payload.get('phones', []),
                emails=payload.get('emails', []),
                cached=bool(cached),
                cost_cents=cost or 0,
                provider=provider,
                error=last_error,
            ))
        return results

    # ── Entry points ──────────────────────────────────────────────────

    def trace_single(self, lead_id, force: bool = False) -> ItemResult:
        """Synchronous one-lead trace.

        Raises LeadNotFound for an unknown lead and BudgetExceeded when the
        guard denies the lookup. Provider exhaustion comes back as a failed
        ItemResult.
        """
        lead_ids = normalize_lead_ids([lead_id])
        if self.leads.get_lead(lead_ids[0]) is None:
            raise LeadNotFound(lead_ids[0])

        run_id = self.create_run(lead_ids, source_label='single', force=force)
        result = self.process_item(run_id, lead_ids[0], force=force)
        self.finalize_run(run_id, write_report=False)

        if result.error == BudgetExceeded.reason:
            raise BudgetExceeded(quota=self.budget.get_remaining_quota())
        return result

    def preflight(self, lead_ids: List[str], force: bool = False) -> Dict[str, Any]:
        """Refuse a batch up front if the quota cannot cover its provider calls.

        Only leads that will actually reach a provider count: known leads
        without a cached result (all known leads when force is set).
        """
        known = self.leads.get_leads(lead_ids)
        needing = set(known) if force else set(known) - self.ledger.cached_lead_ids(list(known))
        quota = self.budget.get_remaining_quota()
        per_lead = self.orchestrator.estimate_cost()
        required = len(needing) * per_lead
        if needing and (quota['soft_paused'] or required > quota['remaining_cents']):
            remaining_lookups = quota['remaining_cents'] // per_lead if per_lead else 0
            if quota['soft_paused']:
                remaining_lookups = 0
            raise BudgetExceeded(
                f"Insufficient daily quota. Requested: {len(needing)}, Remaining: {remaining_lookups}",
                quota=quota,
            )
        return quota

    def run_batch(self, lead_ids, source_label: str = 'bulk', force: bool = False,
                  max_batch: int = RUN_MAX_BATCH):
        """Synchronous batch: pre-flight, create, execute. Returns (summary, item results)."""
        unique = normalize_lead_ids(lead_ids, max_batch=max_batch)
        self.preflight(unique, force=force)
        run_id = self.create_run(unique, source_label=source_label, force=force, max_batch=max_batch)
        summary = self.execute_run(run_id)
        return summary, self.item_results(run_id)

    def launch_run(self, lead_ids, source_label: str = 'async', force: bool = False) -> RunSummary:
        """Create a run and enqueue its execution as a background RQ job."""
        run_id = self.create_run(lead_ids, source_label=source_label, force=force)
        _get_queue().enqueue(execute_run_job, run_id, job_timeout=RUN_JOB_TIMEOUT)
        logger.info("Run %s enqueued", run_id)
        return self.run_status(run_id)


# ── Wiring ───────────────────────────────────────────────────────────────────

_manager = None
_manager_lock = threading.Lock()


def build_run_manager(session_factory=None, chain=None, breakers=None, clock=utcnow,
                      daily_limit_cents=None, concurrency=RUN_CONCURRENCY, dnc=None) -> RunManager:
    """Assemble a RunManager and its collaborators from configuration."""
    from skiptrace.pipeline.budget import BudgetGuard
    from skiptrace.pipeline.orchestrator import ProviderOrchestrator, build_chain
    from skiptrace.pipeline.report import ReportGenerator
    from skiptrace.services.dnc import DncService
    from skiptrace.services.ledger import Ledger
    from skiptrace.services.leads import LeadStore

    ledger = Ledger(session_factory)
    chain = build_chain() if chain is None else chain
    if breakers is None:
        from skiptrace.extensions import redis_client
        from skiptrace.pipeline.provider_config import get_chain_settings
        from skiptrace.services.circuit_breaker import get_all_breakers, init_breakers
        breakers = get_all_breakers() or init_breakers(redis_client, get_chain_settings())
    orchestrator = ProviderOrchestrator(chain, ledger, breakers=breakers, clock=clock)
    budget = BudgetGuard(ledger, session_factory, daily_limit_cents=daily_limit_cents, clock=clock)
    return RunManager(
        ledger=ledger,
        leads=LeadStore(session_factory),
        budget=budget,
        orchestrator=orchestrator,
        reports=ReportGenerator(session_factory, clock=clock),
        dnc=DncService(session_factory, clock=clock) if dnc is None else dnc,
        session_factory=session_factory,
        concurrency=concurrency,
        clock=clock,
    )


def get_run_manager() -> RunManager:
    """Process-wide RunManager, so budget reservations are shared by all requests."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = build_run_manager()
        return _manager


def execute_run_job(run_id: str):
    """RQ entry point."""
    from skiptrace.logging_config import configure_logging
    configure_logging()
    summary = get_run_manager().execute_run(run_id)
    return summary.to_dict() if summary else None
