"""
Spend analytics over the provider-call ledger.

All amounts are integer cents. Date ranges are inclusive calendar days in UTC.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict

from sqlalchemy import select, func, case
from sqlalchemy.exc import SQLAlchemyError

from skiptrace.database import get_session
from skiptrace.models.provider_call import ProviderCall
from skiptrace.pipeline.errors import StoreError, ValidationError

logger = logging.getLogger('services.analytics')

DEFAULT_RANGE_DAYS = 30
MAX_RANGE_DAYS = 366


def parse_date_range(start_raw, end_raw, today: date = None):
    """(start, end) dates from YYYY-MM-DD strings; defaults to the last 30 days."""
    today = today or datetime.now(timezone.utc).date()
    try:
        end = date.fromisoformat(end_raw) if end_raw else today
        start = date.fromisoformat(start_raw) if start_raw else end - timedelta(days=DEFAULT_RANGE_DAYS)
    except ValueError:
        raise ValidationError('startDate and endDate must be YYYY-MM-DD')
    if start > end:
        raise ValidationError('startDate must be on or before endDate')
    if (end - start).days > MAX_RANGE_DAYS:
        raise ValidationError(f'Date range too large (max {MAX_RANGE_DAYS} days)')
    return start, end


def cost_analytics(start: date, end: date, session_factory=None) -> Dict[str, Any]:
    """Totals, daily breakdown and per-provider stats for provider calls in [start, end]."""
    lower = datetime.combine(start, time.min, tzinfo=timezone.utc)
    upper = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    in_range = (ProviderCall.called_at >= lower, ProviderCall.called_at < upper)
    succeeded = func.sum(case((ProviderCall.succeeded.is_(True), 1), else_=0))

    session = (session_factory or get_session)()
    try:
        total_cost, total_count, total_ok = session.execute(
            select(func.coalesce(func.sum(ProviderCall.cost_cents), 0), func.count(ProviderCall.id), succeeded)
            .where(*in_range)
        ).one()

        day = func.date(ProviderCall.called_at)
        daily = session.execute(
            select(day, func.coalesce(func.sum(ProviderCall.cost_cents), 0), func.count(ProviderCall.id))
            .where(*in_range)
            .group_by(day)
            .order_by(day)
        ).all()

        providers = session.execute(
            select(ProviderCall.provider, func.count(ProviderCall.id),
                   func.coalesce(func.sum(ProviderCall.cost_cents), 0), succeeded,
                   func.avg(ProviderCall.duration_ms))
            .where(*in_range)
            .group_by(ProviderCall.provider)
            .order_by(ProviderCall.provider)
        ).all()
    except SQLAlchemyError as e:
        logger.error("Analytics query failed", exc_info=True)
        raise StoreError(f'analytics query failed: {e}') from e
    finally:
        session.close()

    total_cost = int(total_cost or 0)
    total_count = int(total_count or 0)
    return {
        'totalCost': total_cost,
        'totalCount': total_count,
        'successCount': int(total_ok or 0),
        'averageCost': round(total_cost / total_count, 2) if total_count else 0,
        'dailyCosts': [
            {'date': str(d), 'cost': int(cost or 0), 'count': int(n)}
            for d, cost, n in daily
        ],
        'byProvider': [
            {
                'provider': provider,
                'count': int(n),
                'cost': int(cost or 0),
                'successRate': round(100.0 * int(ok or 0) / n, 1) if n else 0.0,
                'avgDurationMs': round(float(avg_ms), 1) if avg_ms is not None else None,
            }
            for provider, n, cost, ok, avg_ms in providers
        ],
        'dateRange': {'startDate': start.isoformat(), 'endDate': end.isoformat()},
    }
