"""
Tests for the admin and health endpoints
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from shield.app.core.store import CounterStore, InMemoryCounterStore
from shield.app.exceptions import StoreUnavailableError
from shield.app.main import create_app
from shield.app.middleware.auth import get_admin_token, require_admin
from shield.app.services.audit import AuditSink

ADMIN_TOKEN = "test-admin-token"


def _clear_admin_token_cache() -> None:
    if hasattr(get_admin_token, "_cached_token"):
        delattr(get_admin_token, "_cached_token")


@pytest.fixture(autouse=True)
def admin_token(monkeypatch):
    _clear_admin_token_cache()
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)
    yield ADMIN_TOKEN
    _clear_admin_token_cache()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}", "X-Forwarded-For": "192.0.2.1"}


@pytest.fixture
def app():
    return create_app(store=InMemoryCounterStore(), audit=MagicMock(spec=AuditSink))


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


class TestAdminAuth:

    def test_get_admin_token_trims_whitespace(self, monkeypatch):
        _clear_admin_token_cache()
        monkeypatch.setenv("ADMIN_TOKEN", "  token-with-whitespace  \n")

        assert get_admin_token() == "token-with-whitespace"

    def test_require_admin_accepts_trimmed_env_token(self, monkeypatch):
        _clear_admin_token_cache()
        monkeypatch.setenv("ADMIN_TOKEN", "token-with-newline\n")

        app = FastAPI()

        @app.get("/protected")
        async def protected(_admin=Depends(require_admin)):
            return {"ok": True}

        response = TestClient(app).get(
            "/protected", headers={"Authorization": "Bearer token-with-newline"}
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, client):
        response = await client.get("/admin/protection/bob:10.0.0.1")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, client):
        response = await client.get(
            "/admin/protection/bob:10.0.0.1", headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401


class TestProtectionAdmin:

    @pytest.mark.asyncio
    async def test_status_and_unlock(self, app, client, auth_headers):
        protection = app.state.brute_force
        for _ in range(5):
            await protection.record_failed_attempt("bob:10.0.0.1")
        await protection.check_attempt("bob:10.0.0.1")

        response = await client.get("/admin/protection/bob:10.0.0.1", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["identifier"] == "bob:10.0.0.1"
        assert data["isLocked"] is True
        assert data["lockedUntil"] is not None

        response = await client.post("/admin/protection/bob:10.0.0.1/unlock", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "identifier": "bob:10.0.0.1"}

        status = await protection.get_status("bob:10.0.0.1")
        assert not status.is_locked

    @pytest.mark.asyncio
    async def test_unlock_during_outage_returns_503(self, auth_headers):
        store = AsyncMock(spec=CounterStore)
        store.record_and_count.return_value = 1
        store.delete.side_effect = StoreUnavailableError("delete", "connection refused")
        app = create_app(store=store, audit=MagicMock(spec=AuditSink))

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/admin/protection/bob/unlock", headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"


class TestRateLimitAdmin:

    @pytest.mark.asyncio
    async def test_count_and_reset(self, app, client, auth_headers):
        limiter = app.state.rate_limiters["auth"]
        await limiter.check_limit("ip:10.0.0.9", "/api/auth/login")
        await limiter.check_limit("ip:10.0.0.9", "/api/auth/login")

        response = await client.get(
            "/admin/rate-limits/ip:10.0.0.9",
            params={"endpoint": "/api/auth/login", "policy": "auth"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert data["limit"] == limiter.config.max_requests
        assert data["windowMs"] == limiter.config.window_ms

        response = await client.delete(
            "/admin/rate-limits/ip:10.0.0.9", params={"policy": "auth"}, headers=auth_headers
        )
        assert response.status_code == 200
        assert await limiter.get_current_count("ip:10.0.0.9", "/api/auth/login") == 0

    @pytest.mark.asyncio
    async def test_unknown_policy_is_404(self, client, auth_headers):
        response = await client.get(
            "/admin/rate-limits/x", params={"endpoint": "/a", "policy": "nope"}, headers=auth_headers
        )

        assert response.status_code == 404


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_reports_store(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["store"]["healthy"] is True
        assert data["store"]["type"] == "InMemoryCounterStore"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_health_degraded_when_store_down(self, broken_store):
        app = create_app(store=broken_store, audit=MagicMock(spec=AuditSink))

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["store"]["healthy"] is False


def test_lifespan_starts_and_stops_components():
    store = InMemoryCounterStore()
    audit = AuditSink()

    with TestClient(create_app(store=store, audit=audit)) as client:
        assert client.get("/health").status_code == 200
        assert audit.started

    assert not audit.started
