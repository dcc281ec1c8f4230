"""
Cache/Ledger store — current enrichment results and the provider-call audit log.

upsert() is the only path that writes EnrichmentResult and is a single
INSERT ... ON CONFLICT (lead_id) DO UPDATE statement, so concurrent re-traces
of one lead can never leave two current rows. ProviderCall rows are insert-only.

Every database failure surfaces as StoreError.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from skiptrace.database import get_session, utcnow
from skiptrace.models.enrichment_result import EnrichmentResult
from skiptrace.models.provider_call import ProviderCall
from skiptrace.pipeline.errors import StoreError

logger = logging.getLogger('services.ledger')


class Ledger:

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session

    # ── Current results (the cache) ───────────────────────────────────

    def get_current(self, lead_id: str) -> Optional[Dict[str, Any]]:
        """Current result for a lead as a cached payload, or None."""
        session = self._session_factory()
        try:
            row = session.execute(
                select(EnrichmentResult).where(EnrichmentResult.lead_id == lead_id)
            ).scalar_one_or_none()
            return row.to_dict(cached=True) if row else None
        except SQLAlchemyError as e:
            logger.error("Failed to read cached result for lead %s", lead_id, exc_info=True)
            raise StoreError(f'cache read failed: {e}') from e
        finally:
            session.close()

    def cached_lead_ids(self, lead_ids: List[str]) -> set:
        """Subset of lead_ids that already have a current result."""
        ids = list(lead_ids)
        if not ids:
            return set()
        session = self._session_factory()
        try:
            found = set()
            for i in range(0, len(ids), 500):
                found.update(session.execute(
                    select(EnrichmentResult.lead_id).where(EnrichmentResult.lead_id.in_(ids[i:i + 500]))
                ).scalars().all())
            return found
        except SQLAlchemyError as e:
            raise StoreError(f'cache read failed: {e}') from e
        finally:
            session.close()

    def get_many(self, lead_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Current results for several leads, keyed by lead id."""
        ids = list(lead_ids)
        if not ids:
            return {}
        session = self._session_factory()
        try:
            found = {}
            for i in range(0, len(ids), 500):
                rows = session.execute(
                    select(EnrichmentResult).where(EnrichmentResult.lead_id.in_(ids[i:i + 500]))
                ).scalars().all()
                found.update({r.lead_id: r.to_dict() for r in rows})
            return found
        except SQLAlchemyError as e:
            raise StoreError(f'cache read failed: {e}') from e
        finally:
            session.close()

    def upsert(self, lead_id: str, phones: List[dict], emails: List[dict],
               provider: str, cost_cents: int, resolved_at=None) -> None:
        """Insert or replace the current result for a lead, atomically."""
        values = {
            'lead_id': lead_id,
            'phones': phones,
            'emails': emails,
            'provider': provider,
            'cost_cents': int(cost_cents),
            'resolved_at': resolved_at or utcnow(),
        }
        session = self._session_factory()
        try:
            dialect = session.get_bind().dialect.name
            if dialect in ('sqlite', 'postgresql'):
                insert = sqlite.insert if dialect == 'sqlite' else postgresql.insert
                stmt = insert(EnrichmentResult).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[EnrichmentResult.lead_id],
                    set_={k: stmt.excluded[k] for k in values if k != 'lead_id'},
                )
                session.execute(stmt)
            else:
                self._upsert_generic(session, values)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to upsert result for lead %s", lead_id, exc_info=True)
            raise StoreError(f'result upsert failed: {e}') from e
        finally:
            session.close()

    @staticmethod
    def _upsert_generic(session, values):
        """Insert, falling back to update when the unique key already exists."""
        try:
            with session.begin_nested():
                session.add(EnrichmentResult(**values))
        except IntegrityError:
            row = session.execute(
                select(EnrichmentResult).where(EnrichmentResult.lead_id == values['lead_id'])
            ).scalar_one()
            for k, v in values.items():
                setattr(row, k, v)

    # ── Provider-call audit log ───────────────────────────────────────

    def record_provider_call(self, lead_id: str, provider: str, cost_cents: int, succeeded: bool,
                             run_id: str = None, adapter: str = None, error_reason: str = None,
                             duration_ms: int = None, called_at=None) -> int:
        """Append one audit row. Returns the new row id."""
        session = self._session_factory()
        try:
            call = ProviderCall(
                run_id=run_id,
                lead_id=lead_id,
                provider=provider,
                adapter=adapter,
                cost_cents=int(cost_cents),
                succeeded=succeeded,
                error_reason=(error_reason or None) and str(error_reason)[:500],
                duration_ms=duration_ms,
                called_at=called_at or utcnow(),
            )
            session.add(call)
            session.commit()
            return call.id
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to record provider call for lead %s (%s)", lead_id, provider, exc_info=True)
            raise StoreError(f'provider call insert failed: {e}') from e
        finally:
            session.close()

    def provider_calls_for_lead(self, lead_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest-first audit rows for one lead."""
        session = self._session_factory()
        try:
            rows = session.execute(
                select(ProviderCall)
                .where(ProviderCall.lead_id == lead_id)
                .order_by(ProviderCall.called_at.desc(), ProviderCall.id.desc())
                .limit(limit)
            ).scalars().all()
            return [r.to_dict() for r in rows]
        except SQLAlchemyError as e:
            raise StoreError(f'provider call read failed: {e}') from e
        finally:
            session.close()

    def count_provider_calls(self, run_id: str = None, lead_id: str = None) -> int:
        session = self._session_factory()
        try:
            stmt = select(func.count(ProviderCall.id))
            if run_id is not None:
                stmt = stmt.where(ProviderCall.run_id == run_id)
            if lead_id is not None:
                stmt = stmt.where(ProviderCall.lead_id == lead_id)
            return int(session.execute(stmt).scalar() or 0)
        except SQLAlchemyError as e:
            raise StoreError(f'provider call count failed: {e}') from e
        finally:
            session.close()

    def spend_between(self, start, end) -> int:
        """Sum of cost_cents for calls with start <= called_at < end."""
        session = self._session_factory()
        try:
            total = session.execute(
                select(func.coalesce(func.sum(ProviderCall.cost_cents), 0))
                .where(ProviderCall.called_at >= start, ProviderCall.called_at < end)
            ).scalar()
            return int(total or 0)
        except SQLAlchemyError as e:
            logger.error("Failed to sum provider spend", exc_info=True)
            raise StoreError(f'spend query failed: {e}') from e
        finally:
            session.close()
