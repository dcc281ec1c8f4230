"""Tests for skip-trace routes — single, bulk, cached reads, quota, analytics, providers."""
from unittest.mock import MagicMock

import pytest

from skiptrace import create_app
from skiptrace.pipeline.base import Phone


@pytest.fixture
def make_client(make_manager):
    """Factory fixture — test client over a manager built from the given chain."""
    def _make(chain, **kwargs):
        manager = make_manager(chain, **kwargs)
        app = create_app(run_manager=manager)
        app.config['TESTING'] = True
        return app.test_client(), manager
    return _make


# ── Acceptance scenarios ─────────────────────────────────────────────────────

class TestScenarios:

    def test_fallback_bills_only_the_winning_provider(self, make_client, make_adapter, make_lead, ledger):
        chain = [
            make_adapter('batchdata', 'primary', cost_cents=25, error='HTTP 503'),
            make_adapter('whitepages', 'secondary', cost_cents=25,
                         phones=[Phone(number='+15557654321', type='mobile', confidence=90)]),
            make_adapter('public_records', 'free', cost_cents=0),
        ]
        client, _ = make_client(chain)
        make_lead('L1')

        resp = client.post('/leads/L1/skiptrace')
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['success'] is True
        assert len(body['data']['phones']) == 1
        assert body['data']['cost'] == 25
        assert body['data']['provider'] == 'secondary'
        assert body['data']['cached'] is False

        calls = ledger.provider_calls_for_lead('L1')
        assert [(c['provider'], c['succeeded'], c['costCents']) for c in reversed(calls)] == [
            ('primary', False, 0), ('secondary', True, 25),
        ]
        assert chain[2].calls == []

    def test_bulk_refused_when_quota_short(self, make_client, chain, make_lead, ledger, clock):
        client, manager = make_client(chain, daily_limit_cents=100)
        for lead_id in ('L1', 'L2', 'L3'):
            make_lead(lead_id)
        # 80c spent: 20c left, one lookup is estimated at 30c
        ledger.record_provider_call('L0', 'primary', 80, True, called_at=clock())
        before = manager.budget.get_remaining_quota()

        resp = client.post('/leads/bulk/skiptrace', json={'leadIds': ['L1', 'L2', 'L3']})
        assert resp.status_code == 429
        body = resp.get_json()
        assert body['success'] is False
        assert body['error'] == 'budget_exceeded'
        assert 'Insufficient daily quota' in body['message']
        assert body['quota']['remaining_cents'] == 20

        assert all(adapter.calls == [] for adapter in chain)
        assert manager.budget.get_remaining_quota() == before
        assert ledger.count_provider_calls() == 1

    def test_retrace_of_cached_lead_is_free(self, client, make_lead, ledger):
        make_lead('L1')
        client.post('/leads/L1/skiptrace')
        calls_before = ledger.count_provider_calls()

        resp = client.post('/leads/L1/skiptrace')
        body = resp.get_json()
        assert resp.status_code == 200
        assert body['data']['cached'] is True
        assert body['data']['cost'] == 0
        assert body['message'] == 'Returned cached skip trace result'
        assert ledger.count_provider_calls() == calls_before


# ── POST /leads/<id>/skiptrace ───────────────────────────────────────────────

class TestTraceLead:

    def test_unknown_lead_404(self, client):
        resp = client.post('/leads/ghost/skiptrace')
        assert resp.status_code == 404
        body = resp.get_json()
        assert body == {'success': False, 'message': "Lead 'ghost' not found", 'error': 'lead_not_found'}

    def test_force_bypasses_cache(self, client, make_lead, chain):
        make_lead('L1')
        client.post('/leads/L1/skiptrace')
        resp = client.post('/leads/L1/skiptrace', json={'force': True})
        assert resp.get_json()['data']['cached'] is False
        assert len(chain[0].calls) == 2

    def test_force_query_param(self, client, make_lead, chain):
        make_lead('L1')
        client.post('/leads/L1/skiptrace')
        client.post('/leads/L1/skiptrace?force=true')
        assert len(chain[0].calls) == 2

    def test_all_providers_failed_is_200_with_success_false(self, client, make_lead, chain):
        make_lead('L1')
        for adapter in chain:
            adapter.error = 'down'
        resp = client.post('/leads/L1/skiptrace')
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['success'] is False
        assert body['message'] == 'Skip trace failed'
        assert 'All providers failed' in body['error']
        assert body['data']['phones'] == []

    def test_budget_denied_429(self, make_client, chain, make_lead):
        client, _ = make_client(chain, daily_limit_cents=0)
        make_lead('L1')
        resp = client.post('/leads/L1/skiptrace')
        assert resp.status_code == 429
        body = resp.get_json()
        assert body['error'] == 'budget_exceeded'
        assert body['quota']['soft_paused'] is True
        assert chain[0].calls == []


# ── GET /leads/<id>/skiptrace ────────────────────────────────────────────────

class TestGetLeadResult:

    def test_no_data(self, client):
        resp = client.get('/leads/L1/skiptrace')
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['success'] is False
        assert body['data'] == {'leadId': 'L1', 'phones': [], 'emails': [], 'cached': False,
                                'cost': 0, 'provider': None}

    def test_returns_cached_payload_without_tracing(self, client, ledger, chain):
        ledger.upsert('L1', [{'number': '+1555'}], [], provider='primary', cost_cents=25)
        resp = client.get('/leads/L1/skiptrace')
        body = resp.get_json()
        assert body['success'] is True
        assert body['data']['cached'] is True
        assert body['data']['cost'] == 0
        assert chain[0].calls == []


class TestLeadHistory:

    def test_newest_first(self, client, make_lead, chain):
        make_lead('L1')
        chain[0].error = 'HTTP 503'
        client.post('/leads/L1/skiptrace')
        resp = client.get('/leads/L1/skiptrace/history')
        data = resp.get_json()['data']
        assert len(data) == 2
        assert {c['provider'] for c in data} == {'primary', 'secondary'}

    def test_limit(self, client, make_lead, chain):
        make_lead('L1')
        chain[0].error = 'HTTP 503'
        client.post('/leads/L1/skiptrace')
        assert len(client.get('/leads/L1/skiptrace/history?limit=1').get_json()['data']) == 1


# ── POST /leads/bulk/skiptrace ───────────────────────────────────────────────

class TestBulk:

    def test_mixed_outcomes(self, client, make_lead, chain):
        make_lead('L1')
        make_lead('L2')
        resp = client.post('/leads/bulk/skiptrace', json={'leadIds': ['L1', 'L2', 'ghost', 'L1']})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['success'] is True
        assert body['message'] == 'Processed 3 leads: 2 succeeded, 1 failed'
        assert [r['leadId'] for r in body['data']] == ['L1', 'L2', 'ghost']
        assert body['data'][2]['error'] == 'lead_not_found'
        assert body['totalCost'] == 50
        assert body['softPaused'] is False
        assert body['runId']
        assert body['quota']['spent_cents'] == 50

    def test_cached_leads_cost_nothing(self, client, make_lead, ledger):
        make_lead('L1')
        ledger.upsert('L1', [{'number': '+1555'}], [], provider='primary', cost_cents=25)
        body = client.post('/leads/bulk/skiptrace', json={'leadIds': ['L1']}).get_json()
        assert body['data'][0]['cached'] is True
        assert body['totalCost'] == 0

    @pytest.mark.parametrize('payload', [
        None,
        {},
        {'leadIds': []},
        {'leadIds': 'L1'},
        {'leadIds': ['L1', '']},
    ])
    def test_invalid_body_400(self, client, payload):
        resp = client.post('/leads/bulk/skiptrace', json=payload)
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'validation_error'

    def test_over_bulk_limit_400(self, client):
        ids = [f'L{i}' for i in range(101)]
        resp = client.post('/leads/bulk/skiptrace', json={'leadIds': ids})
        assert resp.status_code == 400
        assert 'Batch too large' in resp.get_json()['message']


# ── Quota ────────────────────────────────────────────────────────────────────

class TestQuota:

    def test_get_quota(self, client):
        body = client.get('/skiptrace/quota').get_json()
        assert body['success'] is True
        assert body['data']['limit_cents'] == 1000
        assert body['data']['remaining_cents'] == 1000

    def test_reset_with_new_limit(self, client):
        resp = client.post('/skiptrace/quota/reset', json={'limitCents': 2000})
        assert resp.status_code == 200
        assert resp.get_json()['data']['limit_cents'] == 2000

    @pytest.mark.parametrize('limit', ['500', 1.5, True, -5])
    def test_reset_rejects_bad_limit(self, client, limit):
        resp = client.post('/skiptrace/quota/reset', json={'limitCents': limit})
        assert resp.status_code == 400

    def test_reset_lifts_pause(self, make_client, chain, make_lead):
        client, _ = make_client(chain, daily_limit_cents=0)
        make_lead('L1')
        assert client.post('/leads/L1/skiptrace').status_code == 429
        client.post('/skiptrace/quota/reset', json={'limitCents': 100})
        assert client.post('/leads/L1/skiptrace').status_code == 200


# ── Analytics ────────────────────────────────────────────────────────────────

class TestAnalytics:

    def test_range_query(self, client, ledger, clock):
        ledger.record_provider_call('L1', 'primary', 25, True, called_at=clock())
        resp = client.get('/skiptrace/analytics?startDate=2026-03-01&endDate=2026-03-10')
        assert resp.status_code == 200
        assert resp.get_json()['data']['totalCost'] == 25

    def test_bad_date_400(self, client):
        resp = client.get('/skiptrace/analytics?startDate=yesterday')
        assert resp.status_code == 400


# ── Compliance ───────────────────────────────────────────────────────────────

class TestCompliance:

    @pytest.fixture(autouse=True)
    def _calling_hours_not_enforced(self, manager):
        manager.dnc.enforce_quiet_hours = False

    def test_clear_number(self, client):
        resp = client.get('/compliance/check/555-123-4567')
        assert resp.status_code == 200
        data = resp.get_json()['data']
        assert data['phoneNumber'] == '+15551234567'
        assert data['canCall'] is True
        assert data['isDnc'] is False
        assert data['dncSource'] == 'none'

    def test_flagged_number(self, client, manager):
        manager.dnc.screen_phones([{'number': '+15551234567', 'is_dnc': True}])
        data = client.get('/compliance/check/+15551234567').get_json()['data']
        assert data['isDnc'] is True
        assert data['dncSource'] == 'provider'
        assert data['canCall'] is False

    def test_timezone_param(self, client, manager):
        manager.dnc.enforce_quiet_hours = True
        # Fixed clock is 15:00 UTC, midnight in Tokyo
        data = client.get('/compliance/check/5551234567?timezone=Asia/Tokyo').get_json()['data']
        assert data['timezone'] == 'Asia/Tokyo'
        assert data['isQuietHours'] is True
        assert data['canCall'] is False

    def test_invalid_number_400(self, client):
        resp = client.get('/compliance/check/123')
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'validation_error'

    def test_not_configured_501(self, client, manager):
        manager.dnc = None
        assert client.get('/compliance/check/5551234567').status_code == 501

    def test_result_read_with_compliance(self, client, manager, ledger):
        manager.dnc.screen_phones([{'number': '+15550000002', 'is_dnc': True}])
        ledger.upsert('L1', [
            {'number': '+15550000001', 'type': 'mobile', 'is_dnc': False},
            {'number': '+15550000002', 'type': 'landline', 'is_dnc': False},
        ], [], provider='primary', cost_cents=25)

        phones = client.get('/leads/L1/skiptrace?compliance=true').get_json()['data']['phones']
        assert [(p['is_dnc'], p['canCall']) for p in phones] == [(False, True), (True, False)]

    def test_result_read_without_compliance_untouched(self, client, ledger):
        ledger.upsert('L1', [{'number': '+15550000001', 'is_dnc': False}], [], provider='primary', cost_cents=25)
        phones = client.get('/leads/L1/skiptrace').get_json()['data']['phones']
        assert 'canCall' not in phones[0]


# ── Providers ────────────────────────────────────────────────────────────────

class TestProviders:

    def test_lists_chain_without_breakers(self, client):
        data = client.get('/skiptrace/providers').get_json()['data']
        assert [p['slot'] for p in data] == ['primary', 'secondary', 'free']
        assert data[0]['health'] is None

    def test_breaker_health_and_reset(self, make_client, chain):
        breaker = MagicMock()
        breaker.get_health.return_value = {'name': 'batchdata', 'state': 'open'}
        client, _ = make_client(chain, breakers={'batchdata': breaker})

        data = client.get('/skiptrace/providers').get_json()['data']
        assert data[0]['health']['state'] == 'open'

        resp = client.post('/skiptrace/providers/batchdata/reset')
        assert resp.status_code == 200
        breaker.reset.assert_called_once()

    def test_reset_unknown_provider_404(self, client):
        assert client.post('/skiptrace/providers/acme/reset').status_code == 404


# ── Error handling ───────────────────────────────────────────────────────────

class TestErrorHandling:

    def test_unexpected_error_500(self, client, manager):
        manager.budget.get_remaining_quota = MagicMock(side_effect=RuntimeError('boom'))
        resp = client.get('/skiptrace/quota')
        assert resp.status_code == 500
        body = resp.get_json()
        assert body['success'] is False
        assert body['message'] == 'Internal server error'

    def test_store_error_500(self, client, manager):
        from skiptrace.pipeline.errors import StoreError
        manager.ledger.get_current = MagicMock(side_effect=StoreError('db down'))
        resp = client.get('/leads/L1/skiptrace')
        assert resp.status_code == 500
        assert resp.get_json()['error'] == 'store_error'
