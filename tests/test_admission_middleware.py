"""Integration tests for the admission middleware through the FastAPI app.

Apps are built with the in-memory store and a frozen clock, so every test
starts at the beginning of a fresh 15-minute window.
"""

import asyncio
import json
import logging
from unittest.mock import Mock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from admission.adapters.counter_store.base import AbstractCounterStore, CounterSnapshot
from admission.adapters.counter_store.in_memory import InMemoryCounterStore
from admission.core.app_factory import create_app
from admission.core.config import LogSettings, RateLimitSettings, Settings
from admission.core.errors import StoreUnavailableError
from admission.services.response_builder import (
    ERROR_HEADER,
    ERROR_HEADER_VALUE,
    INFO_HEADER,
    RATE_LIMIT_HEADERS,
    SECURITY_HEADERS,
)
from conftest import make_settings

CLIENT_IP = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}


class BrokenCounterStore(AbstractCounterStore):
    """Store whose increment fails with a configurable exception."""

    backend = "broken"

    def __init__(self, error: Exception | None = None, delay_s: float = 0.0) -> None:
        self.error = error
        self.delay_s = delay_s

    async def increment_and_get(self, key: str, window_ms: int) -> CounterSnapshot:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return CounterSnapshot(count=1, ttl_ms=window_ms)

    async def peek(self, key: str) -> int:
        return 0

    async def ping(self) -> bool:
        return False


def _build_app(store: AbstractCounterStore, clock: Mock, **rate_limit_overrides) -> FastAPI:
    app = create_app(
        make_settings(**rate_limit_overrides),
        store=store,
        clock=clock,
        configure_logs=False,
    )

    @app.get("/api/boom")
    async def boom():
        raise RuntimeError("handler failure")

    @app.get("/api/store-down")
    async def store_down():
        raise StoreUnavailableError(code="counter_store_unavailable", message="down")

    @app.get("/dashboard")
    async def dashboard():
        return {"page": "dashboard"}

    @app.api_route("/api/{path:path}", methods=["GET", "POST"])
    async def catch_all(path: str):
        return {"path": path}

    return app


@pytest.fixture
def client(memory_store: InMemoryCounterStore, clock: Mock) -> TestClient:
    return TestClient(_build_app(memory_store, clock))


def _assert_no_rate_limit_headers(response) -> None:
    for name in RATE_LIMIT_HEADERS:
        assert name not in response.headers


class TestStrictEndpoint:
    def test_signin_is_limited_to_twenty_per_window(self, client: TestClient) -> None:
        remaining = []
        for _ in range(20):
            response = client.post("/api/auth/signin", headers=CLIENT_IP)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Limit"] == "20"
            remaining.append(int(response.headers["X-RateLimit-Remaining"]))

        assert remaining == list(range(19, -1, -1))

        rejected = client.post("/api/auth/signin", headers=CLIENT_IP)

        assert rejected.status_code == 429
        assert rejected.headers["Retry-After"] == "900"
        assert rejected.headers["X-RateLimit-Remaining"] == "0"
        assert rejected.headers["X-RateLimit-Reset"] == "1800900"
        body = rejected.json()
        assert body["error"] == "Rate limit exceeded"
        assert body["message"] == "Strict rate limit exceeded for sensitive endpoints"
        assert body["retryAfter"] == 900
        assert body["limit"] == 20
        assert body["remaining"] == 0
        assert body["resetTime"] == 1800900
        assert body["type"] == "RATE_LIMIT_ERROR"

    def test_other_ip_has_its_own_budget(self, client: TestClient) -> None:
        for _ in range(21):
            client.post("/api/auth/signin", headers=CLIENT_IP)

        response = client.post("/api/auth/signin", headers={"X-Forwarded-For": "198.51.100.2"})

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "19"

    def test_violation_is_logged(self, client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            for _ in range(21):
                client.post("/api/auth/signin", headers={**CLIENT_IP, "User-Agent": "pytest-agent"})

        records = [r for r in caplog.records if r.getMessage() == "rate_limit.exceeded"]
        assert len(records) == 1
        record = records[0]
        assert record.identifier == "203.0.113.7"
        assert record.policy == "strict"
        assert record.path == "/api/auth/signin"
        assert record.total_hits == 21
        assert record.limit == 20
        assert record.retry_after_s == 900
        assert record.user_agent == "pytest-agent"

    def test_rejection_carries_request_id(self, client: TestClient) -> None:
        for _ in range(20):
            client.post("/api/auth/signin", headers=CLIENT_IP)

        response = client.post("/api/auth/signin", headers={**CLIENT_IP, "X-Request-ID": "req-429"})

        assert response.status_code == 429
        assert response.headers["X-Request-ID"] == "req-429"


class TestAllowedResponses:
    def test_security_and_info_headers(self, client: TestClient) -> None:
        response = client.get("/api/videos/42", headers=CLIENT_IP)

        assert response.status_code == 200
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value
        assert json.loads(response.headers[INFO_HEADER]) == {
            "limiter": "api",
            "remaining": 99,
            "resetTime": 1800900,
        }
        assert "Retry-After" not in response.headers
        assert ERROR_HEADER not in response.headers

    def test_custom_rule_limits(self, client: TestClient) -> None:
        response = client.get("/api/public/catalog", headers=CLIENT_IP)

        assert response.headers["X-RateLimit-Limit"] == "30"
        assert json.loads(response.headers[INFO_HEADER])["limiter"] == "custom:/api/public"

    def test_bearer_token_switches_to_per_user_policy(self, client: TestClient) -> None:
        response = client.get(
            "/api/videos", headers={**CLIENT_IP, "Authorization": "Bearer user-a-token"}
        )

        assert response.headers["X-RateLimit-Limit"] == "2000"
        assert json.loads(response.headers[INFO_HEADER])["limiter"] == "user_based"

    def test_users_behind_one_ip_are_counted_separately(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, policies={"user_based": {"max_requests": 2}}))

        for _ in range(2):
            client.get("/api/videos", headers={**CLIENT_IP, "Authorization": "Bearer user-a"})
        blocked = client.get("/api/videos", headers={**CLIENT_IP, "Authorization": "Bearer user-a"})
        other = client.get("/api/videos", headers={**CLIENT_IP, "Authorization": "Bearer user-b"})

        assert blocked.status_code == 429
        assert blocked.json()["message"] == "User rate limit exceeded"
        assert other.status_code == 200

    def test_webhooks_ignore_bearer_token(self, client: TestClient) -> None:
        response = client.post(
            "/api/webhooks/stripe", headers={**CLIENT_IP, "Authorization": "Bearer t"}
        )

        assert response.headers["X-RateLimit-Limit"] == "200"

    def test_user_policy_without_token_counts_per_ip(self, client: TestClient) -> None:
        client.post("/api/videos/upload", headers=CLIENT_IP)
        response = client.post("/api/videos/upload", headers=CLIENT_IP)

        assert response.headers["X-RateLimit-Limit"] == "50"
        assert response.headers["X-RateLimit-Remaining"] == "48"


class TestBypass:
    @pytest.mark.parametrize("path", ["/api/health", "/api/status", "/dashboard"])
    def test_unlimited_paths_have_no_headers(self, client: TestClient, path: str) -> None:
        response = client.get(path, headers=CLIENT_IP)

        assert response.status_code == 200
        _assert_no_rate_limit_headers(response)
        assert INFO_HEADER not in response.headers

    def test_whitelisted_ip_is_not_limited(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, whitelisted_ips=["203.0.113.7"]))

        for _ in range(25):
            response = client.post("/api/auth/signin", headers=CLIENT_IP)
            assert response.status_code == 200
        _assert_no_rate_limit_headers(response)
        assert len(memory_store) == 0

    def test_disabled_admission_passes_everything(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, enabled=False))

        for _ in range(25):
            response = client.post("/api/auth/signin", headers=CLIENT_IP)
            assert response.status_code == 200
        _assert_no_rate_limit_headers(response)


class TestFailOpen:
    @pytest.mark.parametrize(
        "store",
        [
            BrokenCounterStore(StoreUnavailableError(code="counter_store_unavailable", message="down")),
            BrokenCounterStore(RuntimeError("unexpected bug")),
            BrokenCounterStore(delay_s=1.0),
        ],
        ids=["store_unavailable", "unexpected_error", "timeout"],
    )
    def test_request_continues_without_limit_headers(self, store, clock) -> None:
        client = TestClient(_build_app(store, clock, store_timeout_ms=20))

        response = client.post("/api/auth/signin", headers=CLIENT_IP)

        assert response.status_code == 200
        assert response.json() == {"path": "auth/signin"}
        assert response.headers[ERROR_HEADER] == ERROR_HEADER_VALUE
        _assert_no_rate_limit_headers(response)

    def test_fail_open_is_logged(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        store = BrokenCounterStore(StoreUnavailableError(code="counter_store_unavailable", message="down"))
        client = TestClient(_build_app(store, clock))

        with caplog.at_level(logging.WARNING):
            client.get("/api/videos", headers=CLIENT_IP)

        records = [r for r in caplog.records if r.getMessage() == "rate_limit.fail_open"]
        assert [r.reason for r in records] == ["counter_store_unavailable"]

    def test_health_reports_degraded_store(self, clock) -> None:
        client = TestClient(_build_app(BrokenCounterStore(), clock))

        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "degraded",
            "counter_store": {"backend": "broken", "reachable": False},
        }


class TestDownstreamErrors:
    def test_handler_exception_is_not_swallowed(self, memory_store, clock, caplog) -> None:
        client = TestClient(_build_app(memory_store, clock), raise_server_exceptions=False)

        with caplog.at_level(logging.WARNING):
            response = client.get("/api/boom", headers=CLIENT_IP)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_server_error"
        assert not any(r.getMessage() == "rate_limit.fail_open" for r in caplog.records)

    def test_handler_app_error_keeps_rate_limit_headers(self, client: TestClient) -> None:
        response = client.get("/api/store-down", headers=CLIENT_IP)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "counter_store_unavailable"
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert ERROR_HEADER not in response.headers


class TestServiceRoutes:
    def test_health_ok_with_memory_store(self, client: TestClient) -> None:
        assert client.get("/api/health").json() == {
            "status": "ok",
            "counter_store": {"backend": "memory", "reachable": True},
        }

    def test_policies_lists_registry(self, client: TestClient) -> None:
        response = client.get("/api/rate-limit/policies", headers=CLIENT_IP)

        assert response.status_code == 200
        policies = {p["name"]: p for p in response.json()}
        assert policies["strict"] == {
            "name": "strict",
            "window_ms": 900_000,
            "max_requests": 20,
            "identity": "ip",
            "message": "Strict rate limit exceeded for sensitive endpoints",
        }
        assert "user_based" in policies
        assert response.headers["X-RateLimit-Limit"] == "100"


class PenaltyStoreDown(InMemoryCounterStore):
    """Window counters work; violation writes fail."""

    async def increment_and_get(self, key: str, window_ms: int) -> CounterSnapshot:
        if key.startswith("violations:"):
            raise StoreUnavailableError(code="counter_store_unavailable", message="down")
        return await super().increment_and_get(key, window_ms)


class TestRepeatOffenders:
    PENALTY = {"penalty_enabled": True, "policies": {"api": {"max_requests": 4}}}

    def test_budget_halves_after_each_violating_window(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, **self.PENALTY))

        statuses = [client.get("/api/videos", headers=CLIENT_IP).status_code for _ in range(6)]
        assert statuses == [200, 200, 200, 200, 429, 429]

        clock.return_value += 900
        second = [client.get("/api/videos", headers=CLIENT_IP) for _ in range(3)]
        assert [r.status_code for r in second] == [200, 200, 429]
        assert second[0].headers["X-RateLimit-Limit"] == "2"
        assert second[2].json()["limit"] == 2

        clock.return_value += 900
        third = client.get("/api/videos", headers=CLIENT_IP)
        assert third.headers["X-RateLimit-Limit"] == "1"

    def test_violation_recorded_once_per_window(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, **self.PENALTY))

        for _ in range(10):
            client.get("/api/videos", headers=CLIENT_IP)

        assert asyncio.run(memory_store.peek("violations:203.0.113.7")) == 1

    def test_other_clients_keep_full_budget(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, **self.PENALTY))
        for _ in range(5):
            client.get("/api/videos", headers=CLIENT_IP)

        clock.return_value += 900
        response = client.get("/api/videos", headers={"X-Forwarded-For": "198.51.100.2"})

        assert response.headers["X-RateLimit-Limit"] == "4"

    def test_penalties_are_off_by_default(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, policies={"api": {"max_requests": 1}}))

        for _ in range(3):
            client.get("/api/videos", headers=CLIENT_IP)

        assert asyncio.run(memory_store.peek("violations:203.0.113.7")) == 0

    def test_rejection_stands_when_violation_cannot_be_stored(self, clock, caplog) -> None:
        client = TestClient(_build_app(PenaltyStoreDown(clock=clock), clock, **self.PENALTY))

        with caplog.at_level(logging.WARNING):
            statuses = [client.get("/api/videos", headers=CLIENT_IP).status_code for _ in range(5)]

        assert statuses[-1] == 429
        assert any(r.getMessage() == "rate_limit.penalty_not_recorded" for r in caplog.records)


class TestAppSettings:
    def test_status_reflects_app_settings(self, memory_store, clock) -> None:
        client = TestClient(_build_app(memory_store, clock, enabled=False, penalty_enabled=True))

        body = client.get("/api/status").json()

        assert body["rate_limiting_enabled"] is False
        assert body["penalties_enabled"] is True
        assert body["algorithm"] == "fixed_window"

    def test_request_id_header_from_app_settings(self, memory_store, clock) -> None:
        cfg = Settings(
            log=LogSettings(request_id_header="X-Correlation-ID"),
            rate_limit=RateLimitSettings(store="memory"),
        )
        client = TestClient(create_app(cfg, store=memory_store, clock=clock, configure_logs=False))

        response = client.get("/api/health", headers={"X-Correlation-ID": "corr-1"})

        assert response.headers["X-Correlation-ID"] == "corr-1"
        assert "X-Request-ID" not in response.headers
