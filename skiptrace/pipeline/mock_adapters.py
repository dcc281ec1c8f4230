"""
Mock provider adapters — deterministic fake contacts for local testing.

Activated with SKIPTRACE_MOCK_PROVIDERS=1. Each real adapter name maps to a
fake that never touches the network, so a full run (fallbacks, budget,
reports) can be exercised end to end without provider credentials.

Outcomes are keyed off a hash of the lead id so repeated runs behave the same.
"""
import hashlib
import logging
import random
import time

from skiptrace.pipeline.base import ProviderAdapter, LeadRecord, LookupResult, Phone, Email
from skiptrace.pipeline.errors import ProviderFailure

logger = logging.getLogger('pipeline.mock')


def _bucket(lead_id: str) -> int:
    """Stable 0-99 bucket for a lead id."""
    return int(hashlib.md5(lead_id.encode('utf-8')).hexdigest(), 16) % 100


def _fake_number(lead_id: str, salt: str) -> str:
    digest = int(hashlib.md5(f'{salt}:{lead_id}'.encode('utf-8')).hexdigest(), 16)
    return f'+1555{digest % 10_000_000:07d}'


def _simulate_delay(min_s=0.05, max_s=0.2):
    """Small delay to simulate API latency."""
    time.sleep(random.uniform(min_s, max_s))


class MockBatchData(ProviderAdapter):
    """Fails for roughly a quarter of leads to exercise fallback."""
    name = 'batchdata'
    description = '[MOCK] Simulated BatchData lookup'

    def lookup(self, lead: LeadRecord) -> LookupResult:
        _simulate_delay()
        if _bucket(lead.id) < 25:
            raise ProviderFailure(self.name, 'HTTP 503', status_code=503)
        return LookupResult(
            phones=[Phone(number=_fake_number(lead.id, 'bd'), type='mobile', confidence=90)],
            emails=[Email(address=f'owner.{lead.id}@example.com', confidence=80)],
            cost_cents=self.cost_cents,
        )


class MockWhitePages(ProviderAdapter):
    name = 'whitepages'
    description = '[MOCK] Simulated WhitePages lookup'

    def lookup(self, lead: LeadRecord) -> LookupResult:
        _simulate_delay()
        if _bucket(lead.id) < 10:
            raise ProviderFailure(self.name, 'no results found')
        return LookupResult(
            phones=[Phone(number=_fake_number(lead.id, 'wp'), type='landline', confidence=70)],
            cost_cents=self.cost_cents,
        )


class MockPublicRecords(ProviderAdapter):
    name = 'public_records'
    description = '[MOCK] Simulated public records lookup'

    def lookup(self, lead: LeadRecord) -> LookupResult:
        if _bucket(lead.id) < 5:
            raise ProviderFailure(self.name, 'no public records found')
        return LookupResult(
            phones=[Phone(number=_fake_number(lead.id, 'pr'), confidence=25)],
            cost_cents=0,
        )


MOCK_ADAPTERS = {
    'batchdata': MockBatchData,
    'whitepages': MockWhitePages,
    'public_records': MockPublicRecords,
}
