"""
tests/test_health.py -- Integration tests for GET /api/v1/health and the JWKS endpoint.

Covers:
  - 200 response with status, version, and components fields
  - components.database and components.keystore report 'ok'
  - a storage failure reports 'degraded' instead of raising
  - No authentication or CSRF token required
  - /.well-known/jwks.json: public members only, cacheable, previous key
    still published after rotation
"""

from __future__ import annotations

from auth.errors import StorageConnectionError
from conftest import make_client


def test_health_returns_200_with_components():
    """Health endpoint returns 200 with status, version, and components."""
    with make_client("health_ok") as (client, _runtime):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"
        assert data["components"] == {"app": "ok", "database": "ok", "keystore": "ok"}


def test_health_reports_degraded_storage(monkeypatch):
    """A storage failure is reported in components rather than as a 500."""
    with make_client("health_degraded") as (client, runtime):

        def _down():
            raise StorageConnectionError("database unreachable")

        monkeypatch.setattr(runtime.store, "ping", _down)
        data = client.get("/api/v1/health").json()
        assert data["status"] == "degraded"
        assert data["components"]["database"] == "error"
        assert data["components"]["keystore"] == "ok"


def test_health_no_auth_required():
    """Health endpoint is accessible without any authentication headers."""
    with make_client("health_anon") as (client, _runtime):
        resp = client.get("/api/v1/health", headers={})
        assert resp.status_code == 200


def test_jwks_exports_public_keys():
    with make_client("jwks_public") as (client, runtime):
        resp = client.get("/.well-known/jwks.json")
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "public, max-age=300"
        [key] = resp.json()["keys"]
        assert key["kid"] == runtime.keystore.get_active_key().kid
        assert key["alg"] == "ES256"
        assert key["use"] == "sig"
        assert key["kty"] == "EC"
        assert "d" not in key


def test_jwks_keeps_previous_key_after_rotation():
    with make_client("jwks_rotation") as (client, runtime):
        previous = runtime.keystore.get_active_key().kid
        runtime.keystore.generate_key()
        kids = [k["kid"] for k in client.get("/.well-known/jwks.json").json()["keys"]]
        assert previous in kids
        assert runtime.keystore.get_active_key().kid in kids
        assert len(kids) == 2
