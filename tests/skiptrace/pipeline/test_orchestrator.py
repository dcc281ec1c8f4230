"""Tests for skiptrace.pipeline.orchestrator — fallback chain and audit rows."""
import os
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from skiptrace.models.provider_call import ProviderCall
from skiptrace.pipeline.base import LeadRecord
from skiptrace.pipeline.errors import AllProvidersExhausted, ConfigurationError
from skiptrace.pipeline.mock_adapters import MOCK_ADAPTERS, MockBatchData
from skiptrace.pipeline.orchestrator import ProviderOrchestrator, build_chain
from skiptrace.pipeline.providers import BatchDataAdapter, PublicRecordsAdapter


LEAD = LeadRecord(id='L1', address='12 Elm St', owner_name='Pat Owner')


def _calls(db_session):
    return db_session.execute(select(ProviderCall).order_by(ProviderCall.id)).scalars().all()


@pytest.fixture
def orchestrator(chain, ledger, clock):
    return ProviderOrchestrator(chain, ledger, clock=clock)


# ── Construction ─────────────────────────────────────────────────────────────

class TestConstruction:

    def test_empty_chain_rejected(self, ledger):
        with pytest.raises(ConfigurationError):
            ProviderOrchestrator([], ledger)

    def test_estimate_is_most_expensive_provider(self, orchestrator):
        assert orchestrator.estimate_cost() == 30

    def test_describe_lists_chain_in_order(self, orchestrator):
        info = orchestrator.describe()
        assert [(e['slot'], e['adapter'], e['cost_cents']) for e in info] == [
            ('primary', 'batchdata', 25), ('secondary', 'whitepages', 30), ('free', 'public_records', 0),
        ]


class TestBuildChain:

    SETTINGS = [
        {'slot': 'primary', 'adapter': 'batchdata', 'cost_cents': 25},
        {'slot': 'free', 'adapter': 'public_records', 'cost_cents': 0},
    ]

    def test_builds_real_adapters(self):
        with patch('skiptrace.pipeline.orchestrator.MOCK_PROVIDERS', False):
            chain = build_chain(self.SETTINGS)
        assert isinstance(chain[0], BatchDataAdapter)
        assert isinstance(chain[1], PublicRecordsAdapter)
        assert chain[0].cost_cents == 25

    def test_mock_flag_swaps_in_fakes(self):
        with patch('skiptrace.pipeline.orchestrator.MOCK_PROVIDERS', True):
            chain = build_chain(self.SETTINGS)
        assert isinstance(chain[0], MockBatchData)

    def test_explicit_registry(self):
        chain = build_chain(self.SETTINGS, adapters=MOCK_ADAPTERS)
        assert [a.slot for a in chain] == ['primary', 'free']

    def test_empty_settings_rejected(self):
        with pytest.raises(ConfigurationError):
            build_chain([])

    def test_unknown_adapter_rejected(self):
        with pytest.raises(ConfigurationError):
            build_chain([{'slot': 'primary', 'adapter': 'acme'}])


# ── trace ────────────────────────────────────────────────────────────────────

class TestTrace:

    def test_first_success_wins(self, orchestrator, chain, db_session):
        outcome = orchestrator.trace(LEAD, run_id='r-1')
        assert outcome.provider == 'primary'
        assert outcome.adapter == 'batchdata'
        assert outcome.cost_cents == 25
        assert outcome.emails == [{'address': 'owner@example.com', 'confidence': 80}]
        assert chain[1].calls == []
        assert chain[2].calls == []

        calls = _calls(db_session)
        assert len(calls) == 1
        assert calls[0].succeeded is True
        assert calls[0].cost_cents == 25
        assert calls[0].run_id == 'r-1'

    def test_falls_back_after_failure(self, orchestrator, chain, db_session):
        chain[0].error = 'HTTP 503'
        outcome = orchestrator.trace(LEAD)
        assert outcome.provider == 'secondary'
        assert outcome.cost_cents == 30
        assert outcome.failures == ['primary: batchdata: HTTP 503']

        calls = _calls(db_session)
        assert [(c.provider, c.succeeded, c.cost_cents) for c in calls] == [
            ('primary', False, 0), ('secondary', True, 30),
        ]
        assert 'HTTP 503' in calls[0].error_reason

    def test_free_provider_reached_last(self, orchestrator, chain):
        chain[0].error = 'timeout'
        chain[1].error = 'no results found'
        outcome = orchestrator.trace(LEAD)
        assert outcome.provider == 'free'
        assert outcome.cost_cents == 0

    def test_all_fail_raises_exhausted(self, orchestrator, chain, db_session):
        for adapter in chain:
            adapter.error = 'down'
        with pytest.raises(AllProvidersExhausted) as exc_info:
            orchestrator.trace(LEAD)
        assert exc_info.value.lead_id == 'L1'
        assert len(exc_info.value.failures) == 3
        calls = _calls(db_session)
        assert len(calls) == 3
        assert sum(c.cost_cents for c in calls) == 0

    def test_unexpected_exception_treated_as_failure(self, orchestrator, chain, db_session):
        chain[0].lookup = MagicMock(side_effect=KeyError('phones'))
        outcome = orchestrator.trace(LEAD)
        assert outcome.provider == 'secondary'
        assert 'unexpected error' in _calls(db_session)[0].error_reason

    def test_duration_recorded(self, orchestrator, db_session):
        orchestrator.trace(LEAD)
        assert _calls(db_session)[0].duration_ms >= 0


class TestTraceWithBreakers:

    def _breaker(self, allow=True):
        cb = MagicMock()
        cb.allow_request.return_value = allow
        return cb

    def test_open_breaker_skips_without_audit_row(self, chain, ledger, clock, db_session):
        breakers = {'batchdata': self._breaker(allow=False), 'whitepages': self._breaker()}
        orchestrator = ProviderOrchestrator(chain, ledger, breakers=breakers, clock=clock)
        outcome = orchestrator.trace(LEAD)
        assert outcome.provider == 'secondary'
        assert chain[0].calls == []
        assert outcome.failures == ['primary: circuit open']
        assert [c.provider for c in _calls(db_session)] == ['secondary']

    def test_outcomes_reported_to_breakers(self, chain, ledger, clock):
        breakers = {'batchdata': self._breaker(), 'whitepages': self._breaker()}
        chain[0].error = 'HTTP 500'
        ProviderOrchestrator(chain, ledger, breakers=breakers, clock=clock).trace(LEAD)
        breakers['batchdata'].record_failure.assert_called_once()
        breakers['whitepages'].record_success.assert_called_once()

    def test_all_breakers_open_exhausts_with_no_calls(self, chain, ledger, clock, db_session):
        breakers = {a.name: self._breaker(allow=False) for a in chain}
        orchestrator = ProviderOrchestrator(chain, ledger, breakers=breakers, clock=clock)
        with pytest.raises(AllProvidersExhausted):
            orchestrator.trace(LEAD)
        assert _calls(db_session) == []
