"""
Concrete contact provider adapters.

  BatchData     — paid, POST owner/contact lookup (default primary)
  WhitePages    — paid, GET person search (default secondary)
  PublicRecords — free, county/public-records lookup or known contacts on the lead
"""
import logging
from typing import Any, Dict, List

from skiptrace.pipeline.base import ProviderAdapter, LeadRecord, LookupResult, Phone, Email
from skiptrace.pipeline.errors import ProviderFailure

logger = logging.getLogger('pipeline.providers')


def _as_list(value, provider, field_name) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProviderFailure(provider, f"malformed payload: '{field_name}' is not a list")
    return value


def _clamp_confidence(value) -> int:
    try:
        return max(0, min(100, int(value or 0)))
    except (TypeError, ValueError):
        return 0


# ──────────────────────────────────────────────────────────────────────────────
# BatchData
# ──────────────────────────────────────────────────────────────────────────────

class BatchDataAdapter(ProviderAdapter):
    """
    BatchData owner-contact lookup.

    POST {endpoint}/v1/property/owner/contact with the owner name and the
    property address; auth via X-API-KEY. A 200 with no phones/emails is a
    valid (billed) empty answer.
    """
    name = 'batchdata'
    description = 'BatchData — owner phone/email by property address'

    def lookup(self, lead: LeadRecord) -> LookupResult:
        if not self.api_key:
            raise ProviderFailure(self.name, 'API key not configured')

        payload = {
            'name': lead.owner_name,
            'address': lead.address,
            'city': lead.city,
            'state': lead.state,
            'zip': lead.zip_code,
        }
        headers = {
            'X-API-KEY': self.api_key,
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        data = self._request('POST', f'{self.endpoint}/v1/property/owner/contact',
                             json=payload, headers=headers)
        if not isinstance(data, dict):
            raise ProviderFailure(self.name, 'malformed payload: expected an object')

        phones = []
        for p in _as_list(data.get('phones'), self.name, 'phones'):
            number = (p or {}).get('number')
            if not number:
                continue
            phones.append(Phone(
                number=str(number),
                type=p.get('type') or 'unknown',
                confidence=_clamp_confidence(p.get('confidence')),
                is_dnc=bool(p.get('is_dnc', False)),
                is_litigator=bool(p.get('is_litigator', False)),
            ))

        emails = []
        for e in _as_list(data.get('emails'), self.name, 'emails'):
            address = (e or {}).get('address')
            if not address:
                continue
            emails.append(Email(address=str(address), confidence=_clamp_confidence(e.get('confidence'))))

        return LookupResult(
            phones=phones,
            emails=emails,
            cost_cents=self.cost_cents,
            meta={'request_id': data.get('request_id')},
        )


# ──────────────────────────────────────────────────────────────────────────────
# WhitePages
# ──────────────────────────────────────────────────────────────────────────────

class WhitePagesAdapter(ProviderAdapter):
    """
    WhitePages person search.

    Confidence is derived from line validity: 70 valid / 50 otherwise, +20
    when connected, capped at 99. An empty result set is a failure so the
    chain falls through to the next provider.
    """
    name = 'whitepages'
    description = 'WhitePages — person search by name and address'

    def lookup(self, lead: LeadRecord) -> LookupResult:
        if not self.api_key:
            raise ProviderFailure(self.name, 'API key not configured')

        params = {
            'api_key': self.api_key,
            'name': lead.owner_name,
            'address': lead.address,
            'city': lead.city,
            'state_code': lead.state,
            'postal_code': lead.zip_code,
            'country_code': 'US',
        }
        data = self._request('GET', self.endpoint, params=params)
        if not isinstance(data, dict):
            raise ProviderFailure(self.name, 'malformed payload: expected an object')

        results = _as_list(data.get('results'), self.name, 'results')
        if not results:
            raise ProviderFailure(self.name, data.get('error_message') or 'no results found')
        person = results[0] or {}

        phones = []
        for p in _as_list(person.get('phones'), self.name, 'phones'):
            number = (p or {}).get('phone_number')
            if not number:
                continue
            confidence = (70 if p.get('is_valid') else 50) + (20 if p.get('is_connected') else 0)
            phones.append(Phone(
                number=str(number),
                type=p.get('line_type') or 'unknown',
                confidence=min(99, confidence),
            ))

        emails = [
            Email(address=str(e['email_address']), confidence=70)
            for e in _as_list(person.get('emails'), self.name, 'emails')
            if e and e.get('email_address')
        ]

        return LookupResult(
            phones=phones,
            emails=emails,
            cost_cents=self.cost_cents,
            meta={'request_id': data.get('request_id')},
        )


# ──────────────────────────────────────────────────────────────────────────────
# Public records (free fallback)
# ──────────────────────────────────────────────────────────────────────────────

class PublicRecordsAdapter(ProviderAdapter):
    """
    Free public-records fallback.

    Queries the configured public-records endpoint when one is set; otherwise
    echoes contacts already present on the lead. Everything it returns is
    low confidence and costs nothing.
    """
    name = 'public_records'
    description = 'Public records — free, low-confidence fallback'

    CONFIDENCE = 25

    def lookup(self, lead: LeadRecord) -> LookupResult:
        phones, emails = [], []

        if self.endpoint:
            params = {'address': lead.address, 'city': lead.city,
                      'state': lead.state, 'zip': lead.zip_code}
            data = self._request('GET', self.endpoint, params=params)
            if not isinstance(data, dict):
                raise ProviderFailure(self.name, 'malformed payload: expected an object')
            phones = [
                Phone(number=str(p['number']), type=p.get('type') or 'unknown', confidence=self.CONFIDENCE)
                for p in _as_list(data.get('phones'), self.name, 'phones') if p and p.get('number')
            ]
            emails = [
                Email(address=str(e['address']), confidence=self.CONFIDENCE)
                for e in _as_list(data.get('emails'), self.name, 'emails') if e and e.get('address')
            ]
        else:
            if lead.phone:
                phones.append(Phone(number=lead.phone, confidence=self.CONFIDENCE))
            if lead.email:
                emails.append(Email(address=lead.email, confidence=self.CONFIDENCE))

        if not phones and not emails:
            raise ProviderFailure(self.name, 'no public records found')

        return LookupResult(phones=phones, emails=emails, cost_cents=0)


ADAPTERS = {
    'batchdata': BatchDataAdapter,
    'whitepages': WhitePagesAdapter,
    'public_records': PublicRecordsAdapter,
}
