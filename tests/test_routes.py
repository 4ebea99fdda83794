"""
Tests for FastAPI routes and security headers.

Tests cover:
- Recording failed logins through the API
- Ban check endpoint
- Delay applied per request
- StorageError mapped to 503
- Startup refusing invalid configuration
- Prune and health endpoints
- Security headers on responses
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from starlette.testclient import TestClient

from loginlimit import main
from loginlimit.config import get_settings
from loginlimit.errors import ConfigurationError, StorageError
from loginlimit.main import app, get_limiter, lifespan
from loginlimit.main import suspend as real_suspend


def _failure(username: str = "alice", ip: str = "1.2.3.4", surface: str = "frontend") -> dict:
    return {"ip": ip, "username": username, "surface": surface}


@pytest.fixture()
def client(monkeypatch):
    """Test client over in-memory stores with a low threshold."""
    monkeypatch.delenv("LOGINLIMIT_DATABASE_URL", raising=False)
    monkeypatch.delenv("LOGINLIMIT_API_TOKEN", raising=False)
    monkeypatch.setenv("LOGINLIMIT_MAX_RETRIES", "3")
    monkeypatch.setenv("LOGINLIMIT_FIND_TIME_SECONDS", "300")
    monkeypatch.setenv("LOGINLIMIT_DELAY_LOGIN_ON_FAILURE", "true")

    delays: list[float] = []

    async def fake_suspend(request, seconds):
        delays.append(seconds)
        return True

    monkeypatch.setattr(main, "suspend", fake_suspend)
    with TestClient(app) as c:
        c.delays = delays
        yield c
    app.dependency_overrides.clear()
    get_settings.cache_clear()


class TestLoginFailures:
    """Test POST /api/login-failures."""

    def test_records_attempt(self, client: TestClient):
        r = client.post("/api/login-failures", json=_failure())
        assert r.status_code == 200
        data = r.json()
        assert data["recorded"] is True
        assert data["ip_count"] == 1
        assert data["banned"] is False
        assert len(app.state.attempts) == 1

    def test_empty_username_not_recorded(self, client: TestClient):
        r = client.post("/api/login-failures", json=_failure(username=""))
        assert r.status_code == 200
        assert r.json()["recorded"] is False
        assert len(app.state.attempts) == 0

    def test_invalid_surface_returns_422(self, client: TestClient):
        r = client.post("/api/login-failures", json=_failure(surface="mobile"))
        assert r.status_code == 422

    def test_end_to_end_scenario(self, client: TestClient):
        for _ in range(3):
            r = client.post("/api/login-failures", json=_failure())
        data = r.json()
        assert data["ip_banned"] is True
        assert data["username_banned"] is True
        assert data["delay_seconds"] == 3
        assert client.delays == [1, 2, 3]

        bans = app.state.bans.all()
        assert len([b for b in bans if b.ip == "1.2.3.4"]) == 1
        assert len([b for b in bans if b.username == "alice"]) == 1
        assert len(app.state.attempts) == 3

    def test_storage_error_returns_503(self, client: TestClient):
        limiter = MagicMock()
        limiter.record_failed_login.side_effect = StorageError("db down")
        app.dependency_overrides[get_limiter] = lambda: limiter
        r = client.post("/api/login-failures", json=_failure())
        assert r.status_code == 503
        assert r.json() == {"detail": "Storage unavailable"}


class TestBanCheck:
    """Test GET /api/bans/check."""

    def test_not_banned(self, client: TestClient):
        r = client.get("/api/bans/check", params={"ip": "1.2.3.4", "username": "alice"})
        assert r.status_code == 200
        assert r.json() == {"banned": False, "ip_banned": False, "username_banned": False}

    def test_banned_after_threshold(self, client: TestClient):
        for user in ("a", "b", "c"):
            client.post("/api/login-failures", json=_failure(username=user))
        r = client.get("/api/bans/check", params={"ip": "1.2.3.4", "username": "a"})
        assert r.json() == {"banned": True, "ip_banned": True, "username_banned": False}

    def test_requires_a_key(self, client: TestClient):
        r = client.get("/api/bans/check")
        assert r.status_code == 400


class TestDelay:
    """Test the per-request delay."""

    def test_no_suspend_without_delay(self, client: TestClient, monkeypatch):
        monkeypatch.setenv("LOGINLIMIT_DELAY_LOGIN_ON_FAILURE", "false")
        get_settings.cache_clear()
        with TestClient(app) as c:
            c.post("/api/login-failures", json=_failure())
        assert client.delays == []

    def test_suspend_returns_early_on_disconnect(self):
        request = MagicMock()

        async def disconnected():
            return True

        request.is_disconnected = disconnected
        assert asyncio.run(real_suspend(request, 5)) is False

    def test_suspend_waits_full_delay(self):
        request = MagicMock()

        async def connected():
            return False

        request.is_disconnected = connected
        assert asyncio.run(real_suspend(request, 0.01)) is True


class TestStartup:
    """Invalid throttling configuration refuses to start."""

    def test_lifespan_raises_configuration_error(self, monkeypatch):
        monkeypatch.setenv("LOGINLIMIT_MAX_RETRIES", "0")

        async def start():
            async with lifespan(app):
                pass

        with pytest.raises(ConfigurationError):
            asyncio.run(start())
        get_settings.cache_clear()


class TestPrune:
    """Test POST /api/maintenance/prune."""

    def test_prune_reports_counts(self, client: TestClient):
        client.post("/api/login-failures", json=_failure())
        r = client.post("/api/maintenance/prune")
        assert r.status_code == 200
        assert r.json() == {"attempts_deleted": 0, "bans_deleted": 0}


class TestHealthEndpoint:
    """Test health check endpoint (no auth required)."""

    def test_health_reports_memory_storage(self, client: TestClient):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy", "storage": "memory"}


class TestSecurityHeaders:
    """Test that security headers are present on responses."""

    def test_x_content_type_options(self, client: TestClient):
        r = client.get("/api/health")
        assert r.headers.get("X-Content-Type-Options") == "nosniff"

    def test_x_frame_options(self, client: TestClient):
        r = client.get("/api/health")
        assert r.headers.get("X-Frame-Options") == "DENY"

    def test_no_store(self, client: TestClient):
        r = client.post("/api/login-failures", json=_failure())
        assert r.headers.get("Cache-Control") == "no-store"


class TestDocsDisabled:
    """Test that API docs are disabled."""

    def test_docs_returns_404(self, client: TestClient):
        r = client.get("/docs")
        assert r.status_code == 404
