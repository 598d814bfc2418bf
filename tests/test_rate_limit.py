"""Tests for the rate limit middleware."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import redis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from quotagate.app.core.store import InMemoryCounterStore
from quotagate.app.exceptions import RateLimitConfigError
from quotagate.app.middleware.rate_limit import (
    RATE_LIMIT_EXCEEDED_BODY,
    RateLimitMiddleware,
    RateLimitOverride,
    RateLimitRule,
    RuleSetOverlay,
    get_client_identity,
    make_identity_key,
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
CLIENT_HEADERS = {"X-Forwarded-For": "192.168.1.1"}


def _mock_store(get_value=None, incr_value=1):
    store = AsyncMock()
    store.get.return_value = get_value
    store.incr.return_value = incr_value
    store.expire.return_value = True
    return store


def _build_app(store, **options) -> FastAPI:
    options.setdefault("clock", lambda: NOW)
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, store=store, **options)

    @app.get("/test")
    async def test_endpoint():
        return {"ok": True}

    @app.get("/api/auth")
    async def auth_endpoint():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def _launch_override(**overrides) -> RateLimitOverride:
    options = dict(
        start_time=NOW - timedelta(days=1),
        end_time=NOW + timedelta(days=6),
        rule=RateLimitRule(window_seconds=3600, max_requests=1000),
        endpoints=frozenset({"/api/auth"}),
        criteria=lambda request: request.headers.get("X-User") == "jaycar",
    )
    options.update(overrides)
    return RateLimitOverride(**options)


class TestIdentityKey:
    """Tests for client identity and key construction."""

    def test_forwarded_for_used_verbatim(self, make_request):
        request = make_request(headers={"X-Forwarded-For": "10.0.0.1, 172.16.0.1"})
        assert get_client_identity(request) == "10.0.0.1, 172.16.0.1"

    def test_falls_back_to_peer_address(self, make_request):
        assert get_client_identity(make_request(client=("10.1.2.3", 4000))) == "10.1.2.3"

    def test_unknown_without_client(self, make_request):
        assert get_client_identity(make_request(client=None)) == "unknown"

    def test_key_format(self):
        assert make_identity_key("rl", "192.168.1.1", "/test") == "rl192.168.1.1:/test"
        assert make_identity_key("rl:", "::1", "/api/auth") == "rl:::1:/api/auth"


class TestRateLimitMiddleware:
    """Tests mirroring the host application's expectations."""

    def test_blocks_requests_over_rate_limit(self):
        store = _mock_store(get_value="100")
        client = TestClient(_build_app(store))

        response = client.get("/test", headers=CLIENT_HEADERS)

        assert response.status_code == 429
        assert response.json() == RATE_LIMIT_EXCEEDED_BODY
        assert response.json() == {"error": "Too Many Requests", "message": "Rate limit exceeded"}
        store.incr.assert_not_called()

    def test_authenticated_users_get_higher_limit(self):
        store = _mock_store(get_value="150", incr_value=151)
        client = TestClient(_build_app(store, is_authenticated=lambda request: True))

        response = client.get("/test", headers=CLIENT_HEADERS)

        assert response.status_code == 200
        store.incr.assert_awaited_once_with("rl192.168.1.1:/test")

    def test_endpoint_specific_limit(self):
        store = _mock_store(get_value="49", incr_value=50)
        client = TestClient(_build_app(store))

        response = client.get("/api/auth", headers=CLIENT_HEADERS)

        assert response.status_code == 200

    def test_endpoint_specific_limit_reached(self):
        store = _mock_store(get_value="50")
        client = TestClient(_build_app(store, is_authenticated=lambda request: True))

        response = client.get("/api/auth", headers=CLIENT_HEADERS)

        assert response.status_code == 429

    def test_custom_limits(self):
        store = _mock_store(get_value="6")
        client = TestClient(_build_app(
            store,
            custom_limits=RuleSetOverlay(unauthenticated=RateLimitRule(30, 5)),
        ))

        response = client.get("/test", headers=CLIENT_HEADERS)

        assert response.status_code == 429

    def test_key_prefix(self):
        store = _mock_store(get_value=None, incr_value=1)
        client = TestClient(_build_app(store, key_prefix="rl:"))

        client.get("/test", headers=CLIENT_HEADERS)

        store.get.assert_awaited_once_with("rl:192.168.1.1:/test")
        store.expire.assert_awaited_once_with("rl:192.168.1.1:/test", 3600)

    def test_store_error_fails_open(self):
        store = AsyncMock()
        store.get.side_effect = redis.ConnectionError("connection refused")
        client = TestClient(_build_app(store))

        response = client.get("/test", headers=CLIENT_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_unexpected_error_fails_open(self, monkeypatch, caplog):
        monkeypatch.setattr(logging.getLogger("quotagate"), "propagate", True)

        def broken_predicate(request):
            raise RuntimeError("auth backend exploded")

        store = _mock_store(get_value="100")
        client = TestClient(_build_app(store, is_authenticated=broken_predicate))

        with caplog.at_level(logging.ERROR):
            response = client.get("/test", headers=CLIENT_HEADERS)

        assert response.status_code == 200
        assert any("Rate limiter error" in r.getMessage() for r in caplog.records)

    def test_paths_outside_mount_not_limited(self):
        store = _mock_store(get_value="100000")
        client = TestClient(_build_app(store, mount_path="/api"))

        assert client.get("/health").status_code == 200
        assert client.get("/test").status_code == 200
        store.get.assert_not_called()

        assert client.get("/api/auth").status_code == 429

    def test_invalid_algorithm_rejected_at_construction(self):
        with pytest.raises(RateLimitConfigError):
            RateLimitMiddleware(FastAPI(), store=InMemoryCounterStore(), algorithm="leaky")


class TestEndToEndScenarios:
    """Full request flow against an in-memory shared store."""

    KEY = "rl192.168.1.1:/test"
    AUTH_KEY = "rl192.168.1.1:/api/auth"

    def test_scenario_a_allows_last_request_in_window(self, memory_store):
        asyncio.run(memory_store.set(self.KEY, "99"))
        client = TestClient(_build_app(memory_store))

        response = client.get("/test", headers=CLIENT_HEADERS)

        assert response.status_code == 200
        assert asyncio.run(memory_store.get(self.KEY)) == "100"

    def test_scenario_b_denies_when_window_full(self, memory_store):
        asyncio.run(memory_store.set(self.KEY, "100"))
        client = TestClient(_build_app(memory_store))

        response = client.get("/test", headers=CLIENT_HEADERS)

        assert response.status_code == 429
        assert response.json() == {"error": "Too Many Requests", "message": "Rate limit exceeded"}
        assert asyncio.run(memory_store.get(self.KEY)) == "100"

    def test_scenario_c_active_override_beats_endpoint_rule(self, memory_store):
        asyncio.run(memory_store.set(self.AUTH_KEY, "500"))
        client = TestClient(_build_app(memory_store, overrides=[_launch_override()]))

        response = client.get("/api/auth", headers={**CLIENT_HEADERS, "X-User": "jaycar"})

        assert response.status_code == 200
        assert asyncio.run(memory_store.get(self.AUTH_KEY)) == "501"

    def test_scenario_c_criteria_not_met_uses_endpoint_rule(self, memory_store):
        asyncio.run(memory_store.set(self.AUTH_KEY, "500"))
        client = TestClient(_build_app(memory_store, overrides=[_launch_override()]))

        response = client.get("/api/auth", headers={**CLIENT_HEADERS, "X-User": "someone"})

        assert response.status_code == 429

    def test_scenario_d_expired_override_falls_back(self, memory_store):
        later = NOW + timedelta(days=7)
        client = TestClient(_build_app(
            memory_store,
            overrides=[_launch_override()],
            clock=lambda: later,
        ))
        headers = {**CLIENT_HEADERS, "X-User": "jaycar"}

        asyncio.run(memory_store.set(self.AUTH_KEY, "49"))
        assert client.get("/api/auth", headers=headers).status_code == 200

        response = client.get("/api/auth", headers=headers)
        assert response.status_code == 429
        assert asyncio.run(memory_store.get(self.AUTH_KEY)) == "50"

        asyncio.run(memory_store.set(self.AUTH_KEY, "500"))
        assert client.get("/api/auth", headers=headers).status_code == 429

    def test_different_clients_have_independent_limits(self, memory_store):
        client = TestClient(_build_app(
            memory_store,
            custom_limits=RuleSetOverlay(unauthenticated=RateLimitRule(60, 1)),
        ))

        assert client.get("/test", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
        assert client.get("/test", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
        assert client.get("/test", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200

    def test_sliding_log_end_to_end(self, memory_store):
        clock = [NOW]
        client = TestClient(_build_app(
            memory_store,
            algorithm="sliding_log",
            custom_limits=RuleSetOverlay(unauthenticated=RateLimitRule(60, 2)),
            clock=lambda: clock[0],
        ))

        statuses = []
        for _ in range(4):
            statuses.append(client.get("/test", headers=CLIENT_HEADERS).status_code)
            clock[0] += timedelta(seconds=1)
        assert statuses == [200, 200, 200, 429]

        clock[0] = NOW + timedelta(seconds=61)
        assert client.get("/test", headers=CLIENT_HEADERS).status_code == 200
