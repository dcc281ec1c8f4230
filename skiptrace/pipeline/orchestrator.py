"""
Provider Orchestrator — runs one lead through the provider fallback chain.

  primary → secondary → free

First success wins: later (cheaper or free) providers are never called "for
completeness". Every provider actually invoked writes exactly one ProviderCall
row (failures at zero cost); a provider whose circuit breaker is open is
skipped without being invoked and leaves no row.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from skiptrace.config import MOCK_PROVIDERS
from skiptrace.database import utcnow
from skiptrace.pipeline.base import ProviderAdapter, LeadRecord, get_adapter
from skiptrace.pipeline.errors import ProviderFailure, AllProvidersExhausted, ConfigurationError
from skiptrace.pipeline.provider_config import get_chain_settings
from skiptrace.pipeline import providers as providers_mod

logger = logging.getLogger('pipeline.orchestrator')


@dataclass
class TraceOutcome:
    """Successful trace: the winning provider's normalized payload."""
    lead_id: str
    provider: str                 # chain slot
    adapter: str
    phones: List[Dict[str, Any]] = field(default_factory=list)
    emails: List[Dict[str, Any]] = field(default_factory=list)
    cost_cents: int = 0
    failures: List[str] = field(default_factory=list)   # providers tried before the winner


def build_chain(chain_settings: List[Dict[str, Any]] = None, adapters=None) -> List[ProviderAdapter]:
    """Instantiate the configured chain, in order."""
    if adapters is None:
        if MOCK_PROVIDERS:
            from skiptrace.pipeline.mock_adapters import MOCK_ADAPTERS
            adapters = MOCK_ADAPTERS
            logger.info("SKIPTRACE_MOCK_PROVIDERS active — using fake adapters")
        else:
            adapters = providers_mod.ADAPTERS

    settings = get_chain_settings() if chain_settings is None else chain_settings
    chain = [get_adapter(adapters, entry['adapter'], entry['slot'], entry) for entry in settings]
    if not chain:
        raise ConfigurationError('No providers configured')
    return chain


class ProviderOrchestrator:

    def __init__(self, chain: List[ProviderAdapter], ledger, breakers: Dict[str, Any] = None,
                 clock=utcnow):
        if not chain:
            raise ConfigurationError('No providers configured')
        self.chain = list(chain)
        self.ledger = ledger
        self.breakers = breakers or {}
        self._clock = clock

    def estimate_cost(self) -> int:
        """Worst-case cents for one lead: only one provider ever bills per lead."""
        return max(adapter.estimate_cost() for adapter in self.chain)

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {'slot': a.slot, 'adapter': a.name, 'description': a.description,
             'cost_cents': a.cost_cents, 'timeout': a.timeout, 'max_retries': a.max_retries}
            for a in self.chain
        ]

    @staticmethod
    def _context(run_id, lead, adapter) -> Dict[str, Any]:
        return {'run_id': run_id, 'lead_id': lead.id, 'provider': adapter.slot}

    def trace(self, lead: LeadRecord, run_id: Optional[str] = None) -> TraceOutcome:
        """
        Try each provider in order until one succeeds.

        Raises:
            AllProvidersExhausted when every provider failed or was skipped.
            StoreError if an audit row cannot be written.
        """
        failures = []
        for adapter in self.chain:
            breaker = self.breakers.get(adapter.name)
            if breaker is not None and not breaker.allow_request():
                logger.info("Skipping %s for lead %s: circuit open", adapter.name, lead.id,
                            extra=self._context(run_id, lead, adapter))
                failures.append(f'{adapter.slot}: circuit open')
                continue

            started = time.monotonic()
            try:
                result = adapter.lookup(lead)
            except ProviderFailure as e:
                error = e
            except Exception as e:
                # Adapter bug or unexpected payload shape counts as a provider failure
                logger.error("Adapter %s raised unexpectedly for lead %s", adapter.name, lead.id, exc_info=True,
                             extra=self._context(run_id, lead, adapter))
                error = ProviderFailure(adapter.name, f'unexpected error: {e}')
            else:
                error = None
            duration_ms = int((time.monotonic() - started) * 1000)

            if error is not None:
                self.ledger.record_provider_call(
                    lead_id=lead.id, run_id=run_id, provider=adapter.slot, adapter=adapter.name,
                    cost_cents=0, succeeded=False, error_reason=str(error),
                    duration_ms=duration_ms, called_at=self._clock(),
                )
                if breaker is not None:
                    breaker.record_failure(error)
                logger.info("Provider %s (%s) failed for lead %s: %s", adapter.slot, adapter.name, lead.id, error,
                            extra=self._context(run_id, lead, adapter))
                failures.append(f'{adapter.slot}: {error}')
                continue

            cost = max(0, int(result.cost_cents))
            self.ledger.record_provider_call(
                lead_id=lead.id, run_id=run_id, provider=adapter.slot, adapter=adapter.name,
                cost_cents=cost, succeeded=True, duration_ms=duration_ms, called_at=self._clock(),
            )
            if breaker is not None:
                breaker.record_success()
            logger.info("Lead %s resolved by %s (%s): %d phones, %d emails, %d cents",
                        lead.id, adapter.slot, adapter.name, len(result.phones), len(result.emails), cost,
                        extra=self._context(run_id, lead, adapter))
            return TraceOutcome(
                lead_id=lead.id,
                provider=adapter.slot,
                adapter=adapter.name,
                phones=result.phone_dicts(),
                emails=result.email_dicts(),
                cost_cents=cost,
                failures=failures,
            )

        raise AllProvidersExhausted(lead.id, failures)
