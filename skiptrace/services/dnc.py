"""
Do-not-call compliance — DNC verdicts per phone number and quiet-hours checks.

Lookup order for a number:
  dnc_cache row (unexpired) → DNC API (when configured) → "none"

API verdicts are cached for DNC_CACHE_DAYS. A DNC flag reported by a
skip-trace provider is cached too (source 'provider'), so a number flagged by
one provider stays flagged when a later lookup comes from another one.
An API failure is logged and treated as "no verdict"; it is not cached.
"""
import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from skiptrace.config import (
    DNC_API_URL, DNC_API_KEY, DNC_TIMEOUT, DNC_CACHE_DAYS,
    ENFORCE_QUIET_HOURS, DEFAULT_CALL_TIMEZONE,
)
from skiptrace.database import get_session, utcnow, as_utc
from skiptrace.models.dnc_entry import DncEntry
from skiptrace.pipeline.errors import StoreError

logger = logging.getLogger('services.dnc')

# Calls allowed from 09:00 to 21:00 in the callee's timezone
QUIET_HOURS_END = 9
QUIET_HOURS_START = 21


def normalize_phone(raw) -> Optional[str]:
    """E.164 for US-style input; None when the digits can't be a phone number."""
    if not raw:
        return None
    digits = re.sub(r'\D', '', str(raw))
    if len(digits) == 10:
        return f'+1{digits}'
    if len(digits) == 11 and digits.startswith('1'):
        return f'+{digits}'
    if len(digits) > 11:
        return f'+{digits}'
    return None


def is_quiet_hours(tz_name: str, now=None) -> bool:
    """True outside 09:00-21:00 local time. Unknown timezones count as quiet."""
    try:
        local = (now or utcnow()).astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone '%s', treating as quiet hours", tz_name)
        return True
    return local.hour < QUIET_HOURS_END or local.hour >= QUIET_HOURS_START


class DncService:

    def __init__(self, session_factory=None, api_url: str = DNC_API_URL, api_key: str = DNC_API_KEY,
                 http: requests.Session = None, timeout: float = DNC_TIMEOUT,
                 cache_days: int = DNC_CACHE_DAYS, enforce_quiet_hours: bool = ENFORCE_QUIET_HOURS,
                 default_timezone: str = DEFAULT_CALL_TIMEZONE, clock=utcnow):
        self._session_factory = session_factory or get_session
        self.api_url = (api_url or '').rstrip('/')
        self.api_key = api_key
        self.http = http or requests.Session()
        self.timeout = timeout
        self.cache_days = cache_days
        self.enforce_quiet_hours = enforce_quiet_hours
        self.default_timezone = default_timezone
        self._clock = clock

    @property
    def api_enabled(self) -> bool:
        return bool(self.api_url and self.api_key)

    # ── Cache ─────────────────────────────────────────────────────────

    def _cached(self, number: str) -> Optional[Dict[str, Any]]:
        session = self._session_factory()
        try:
            row = session.get(DncEntry, number)
            if row is None or as_utc(row.expires_at) <= self._clock():
                return None
            return {'is_dnc': bool(row.is_dnc), 'source': row.source}
        except SQLAlchemyError as e:
            logger.error("Failed to read DNC cache for %s", number, exc_info=True)
            raise StoreError(f'dnc cache read failed: {e}') from e
        finally:
            session.close()

    def _store(self, number: str, is_dnc: bool, source: str) -> None:
        now = self._clock()
        values = {
            'phone_number': number,
            'is_dnc': bool(is_dnc),
            'source': source,
            'checked_at': now,
            'expires_at': now + timedelta(days=self.cache_days),
        }
        session = self._session_factory()
        try:
            dialect = session.get_bind().dialect.name
            if dialect in ('sqlite', 'postgresql'):
                insert = sqlite.insert if dialect == 'sqlite' else postgresql.insert
                stmt = insert(DncEntry).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[DncEntry.phone_number],
                    set_={k: stmt.excluded[k] for k in values if k != 'phone_number'},
                )
                session.execute(stmt)
            else:
                session.merge(DncEntry(**values))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to cache DNC verdict for %s", number, exc_info=True)
            raise StoreError(f'dnc cache write failed: {e}') from e
        finally:
            session.close()

    # ── API ───────────────────────────────────────────────────────────

    def _query_api(self, number: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.http.get(
                f'{self.api_url}/check',
                params={'phone': number},
                headers={'X-API-Key': self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning("DNC API check failed for %s: %s", number, e)
            return None
        if not isinstance(data, dict):
            logger.warning("DNC API returned unexpected payload for %s", number)
            return None
        return {'is_dnc': data.get('is_dnc') is True, 'source': data.get('source') or 'api'}

    # ── Public API ────────────────────────────────────────────────────

    def check_dnc(self, phone_number) -> Dict[str, Any]:
        """DNC verdict for one number: {'is_dnc': bool, 'source': str}.

        Raises StoreError when the cache can't be read or written.
        """
        number = normalize_phone(phone_number)
        if number is None:
            return {'is_dnc': False, 'source': 'invalid'}

        cached = self._cached(number)
        if cached is not None:
            return cached

        if self.api_enabled:
            verdict = self._query_api(number)
            if verdict is not None:
                self._store(number, verdict['is_dnc'], verdict['source'])
                return verdict

        return {'is_dnc': False, 'source': 'none'}

    def can_call(self, phone_number, tz_name: str = None) -> Dict[str, Any]:
        """Whether a number may be called now: not DNC and, if enforced, not quiet hours."""
        tz_name = tz_name or self.default_timezone
        verdict = self.check_dnc(phone_number)
        quiet = is_quiet_hours(tz_name, self._clock()) if self.enforce_quiet_hours else False
        return {
            'phoneNumber': normalize_phone(phone_number) or phone_number,
            'canCall': not verdict['is_dnc'] and not quiet,
            'isDnc': verdict['is_dnc'],
            'dncSource': verdict['source'],
            'isQuietHours': quiet,
            'timezone': tz_name,
        }

    def screen_phones(self, phones: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Copy of phones with is_dnc set from the provider flag or a DNC verdict."""
        screened = []
        for phone in phones:
            phone = dict(phone)
            number = normalize_phone(phone.get('number'))
            if phone.get('is_dnc'):
                if number:
                    self._store(number, True, 'provider')
                phone['is_dnc'] = True
            else:
                phone['is_dnc'] = self.check_dnc(phone.get('number'))['is_dnc']
            screened.append(phone)
        return screened

    def annotate_phones(self, phones: List[Dict[str, Any]], tz_name: str = None) -> List[Dict[str, Any]]:
        """Phones from a stored result with current compliance fields added."""
        annotated = []
        for phone in phones:
            compliance = self.can_call(phone.get('number'), tz_name)
            annotated.append(dict(
                phone,
                is_dnc=bool(phone.get('is_dnc')) or compliance['isDnc'],
                canCall=compliance['canCall'] and not phone.get('is_dnc'),
                isQuietHours=compliance['isQuietHours'],
            ))
        return annotated
