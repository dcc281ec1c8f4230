"""
Budget Guard — daily spend cap with reservations and a durable soft pause.

Spend is never kept as a free-standing counter: it is the SUM of
ProviderCall.cost_cents inside the current window, so it survives restarts
and always agrees with the audit ledger. On top of that, in-process
reservations are tracked under a lock so concurrent workers cannot all pass
the same check with the last few cents. Other processes are not coordinated;
overshoot is bounded by (max lookup cost × concurrency).

The window is one calendar day in BUDGET_TIMEZONE. Once spend reaches the
limit the window's soft_paused flag is persisted and every check is denied
until the day rolls over or an operator calls reset().
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from skiptrace.config import DAILY_BUDGET_CENTS, BUDGET_TIMEZONE
from skiptrace.database import get_session, utcnow
from skiptrace.models.budget_window import BudgetWindow
from skiptrace.pipeline.errors import StoreError, ValidationError

logger = logging.getLogger('pipeline.budget')


@dataclass
class BudgetDecision:
    allowed: bool
    remaining_cents: int
    reserved_cents: int = 0
    window_start: Optional[date] = field(default=None, repr=False)


class BudgetGuard:

    def __init__(self, ledger, session_factory=None, daily_limit_cents: int = None,
                 tz_name: str = None, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self._session_factory = session_factory or get_session
        self.daily_limit_cents = DAILY_BUDGET_CENTS if daily_limit_cents is None else int(daily_limit_cents)
        self.tz = ZoneInfo(tz_name or BUDGET_TIMEZONE)
        self._clock = clock
        self._lock = threading.Lock()
        self._reserved: Dict[date, int] = {}

    # ── Window ────────────────────────────────────────────────────────

    def current_window(self):
        """(window_date, start_utc, end_utc) for the window containing now."""
        local_now = self._clock().astimezone(self.tz)
        day = local_now.date()
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)
        return day, start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def _window_row(self, session, day) -> Optional[BudgetWindow]:
        return session.get(BudgetWindow, day)

    def _read_window(self, day):
        """(limit_cents, soft_paused) for a window."""
        session = self._session_factory()
        try:
            row = self._window_row(session, day)
            if row is None:
                return self.daily_limit_cents, False
            limit = self.daily_limit_cents if row.limit_cents is None else row.limit_cents
            return limit, bool(row.soft_paused)
        except SQLAlchemyError as e:
            raise StoreError(f'budget window read failed: {e}') from e
        finally:
            session.close()

    def _write_window(self, day, **values):
        """Create or update the window row."""
        session = self._session_factory()
        try:
            row = self._window_row(session, day)
            if row is None:
                row = BudgetWindow(window_start=day, soft_paused=False)
                session.add(row)
            for k, v in values.items():
                setattr(row, k, v)
            try:
                session.commit()
            except IntegrityError:
                # Another process created the row first
                session.rollback()
                row = self._window_row(session, day)
                for k, v in values.items():
                    setattr(row, k, v)
                session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to write budget window %s", day, exc_info=True)
            raise StoreError(f'budget window write failed: {e}') from e
        finally:
            session.close()

    def _pause(self, day, spent, limit):
        self._write_window(day, soft_paused=True, paused_at=self._clock())
        logger.warning("Budget window %s soft-paused: spent=%d limit=%d (cents)", day, spent, limit)

    # ── Contract ──────────────────────────────────────────────────────

    def check_and_reserve(self, estimated_cost_cents: int) -> BudgetDecision:
        """Reserve estimated_cost_cents if the window can still cover it."""
        estimate = max(0, int(estimated_cost_cents))
        with self._lock:
            day, start, end = self.current_window()
            limit, paused = self._read_window(day)
            spent = self.ledger.spend_between(start, end)
            reserved = self._reserved.get(day, 0)
            remaining = max(0, limit - spent - reserved)

            if not paused and spent >= limit:
                self._pause(day, spent, limit)
                paused = True

            if paused or estimate > remaining:
                logger.info("Budget denied: estimate=%d remaining=%d paused=%s", estimate, remaining, paused)
                return BudgetDecision(allowed=False, remaining_cents=remaining, window_start=day)

            self._reserved[day] = reserved + estimate
            return BudgetDecision(
                allowed=True,
                remaining_cents=remaining - estimate,
                reserved_cents=estimate,
                window_start=day,
            )

    def commit(self, actual_cost_cents: int, reservation: Optional[BudgetDecision] = None) -> None:
        """Release a reservation once its provider calls are in the ledger.

        The actual cost is already counted through ProviderCall rows; this
        only drops the hold and flips the soft pause when the cap is reached.
        """
        with self._lock:
            if reservation is not None and reservation.reserved_cents:
                held = self._reserved.get(reservation.window_start, 0) - reservation.reserved_cents
                if held > 0:
                    self._reserved[reservation.window_start] = held
                else:
                    self._reserved.pop(reservation.window_start, None)

            if not actual_cost_cents:
                return

            day, start, end = self.current_window()
            limit, paused = self._read_window(day)
            spent = self.ledger.spend_between(start, end)
            if not paused and spent >= limit:
                self._pause(day, spent, limit)

    def get_remaining_quota(self) -> Dict[str, Any]:
        day, start, end = self.current_window()
        limit, paused = self._read_window(day)
        spent = self.ledger.spend_between(start, end)
        with self._lock:
            reserved = self._reserved.get(day, 0)
        return {
            'limit_cents': limit,
            'spent_cents': spent,
            'reserved_cents': reserved,
            'remaining_cents': max(0, limit - spent - reserved),
            'soft_paused': paused or spent >= limit,
            'window_start': start.isoformat(),
            'window_end': end.isoformat(),
            'timezone': str(self.tz),
        }

    def reset(self, limit_cents: int = None) -> Dict[str, Any]:
        """Operator reset: clear the soft pause, optionally override today's limit."""
        if limit_cents is not None and int(limit_cents) < 0:
            raise ValidationError('limitCents must be >= 0')
        day, _, _ = self.current_window()
        values = {'soft_paused': False, 'paused_at': None, 'reset_at': self._clock()}
        if limit_cents is not None:
            values['limit_cents'] = int(limit_cents)
        with self._lock:
            self._write_window(day, **values)
        logger.info("Budget window %s reset by operator (limit_cents=%s)", day, limit_cents)
        return self.get_remaining_quota()
