"""Tests for the /health endpoint."""


class TestHealth:
    """GET /health liveness check."""

    def test_returns_200(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json() == {'status': 'healthy'}
