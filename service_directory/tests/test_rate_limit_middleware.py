"""
Unit tests for the Directory admission middleware.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.responses import Response

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_directory.app.ratelimit import RateLimitMiddleware, TokenBucketRateLimiter
from shared.config import ClientIdSource, RateLimitSettings
from shared.logging import add_correlation_context, clear_context, client_id_var
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock


def make_request(path="/api/v1/businesses", host="127.0.0.1", headers=None, query_params=None, user_info=None):
    """Mock FastAPI Request object."""
    request = MagicMock()
    request.url.path = path
    request.client.host = host
    request.headers = headers or {}
    request.query_params = query_params or {}
    request.state = MagicMock(spec=[])
    if user_info is not None:
        request.state.user_info = user_info
    return request


class TestRateLimitMiddleware:
    """Test cases for RateLimitMiddleware."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("directory")

    @pytest.fixture
    def call_next(self):
        return AsyncMock(side_effect=lambda request: Response("ok"))

    def make_middleware(self, clock, metrics=None, **overrides):
        overrides.setdefault("queue_limit", 0)
        limiter = TokenBucketRateLimiter(RateLimitSettings(**overrides), clock=clock, sleep=AsyncMock())
        return RateLimitMiddleware(limiter, metrics)

    @pytest.mark.asyncio
    async def test_admitted_request_carries_quota_headers(self, clock, call_next):
        middleware = self.make_middleware(clock, token_limit=3)

        response = await middleware.dispatch(make_request(), call_next)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "2"
        assert response.headers["X-RateLimit-Client-ID"] == "127.0.0.1"
        assert "Retry-After" not in response.headers
        call_next.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_request_gets_429_body_and_headers(self, clock, call_next):
        middleware = self.make_middleware(clock, token_limit=2, tokens_per_period=1,
                                          replenishment_period_seconds=60)

        await middleware.dispatch(make_request(), call_next)
        await middleware.dispatch(make_request(), call_next)
        response = await middleware.dispatch(make_request(), call_next)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Limit"] == "2"

        body = json.loads(response.body)
        assert body["status"] == 429
        assert body["title"] == "Too Many Requests"
        assert body["detail"] == "API rate limit has been exceeded. Please retry after 60 seconds."
        assert body["retry_after"] == 60
        assert "timestamp" in body
        assert call_next.await_count == 2

    @pytest.mark.asyncio
    async def test_excluded_paths_bypass_limiter(self, clock, call_next):
        middleware = self.make_middleware(clock, token_limit=1)

        for _ in range(5):
            response = await middleware.dispatch(make_request(path="/health"), call_next)
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

        assert middleware.rate_limiter.tracked_clients == 0

    def test_exclusion_is_segment_aware(self, clock):
        middleware = self.make_middleware(clock, excluded_paths=["/health", "/docs/"])

        assert middleware.is_excluded("/health")
        assert middleware.is_excluded("/health/ready")
        assert middleware.is_excluded("/docs/oauth2-redirect")
        assert not middleware.is_excluded("/healthcheck")
        assert not middleware.is_excluded("/api/v1/health")

    @pytest.mark.asyncio
    async def test_whitelisted_client_is_never_limited(self, clock, call_next, metrics):
        middleware = self.make_middleware(clock, metrics, token_limit=1, whitelisted_clients=["10.0.0.9"])

        for _ in range(3):
            response = await middleware.dispatch(make_request(host="10.0.0.9"), call_next)
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

        assert metrics.registry.get_sample_value(
            "rate_limit_decisions_total", {"decision": "bypassed"}) == 3.0

    @pytest.mark.asyncio
    async def test_decisions_are_recorded(self, clock, call_next, metrics):
        middleware = self.make_middleware(clock, metrics, token_limit=1)

        await middleware.dispatch(make_request(), call_next)
        await middleware.dispatch(make_request(), call_next)

        assert metrics.registry.get_sample_value(
            "rate_limit_decisions_total", {"decision": "allowed"}) == 1.0
        assert metrics.registry.get_sample_value(
            "rate_limit_decisions_total", {"decision": "rejected"}) == 1.0
        assert metrics.registry.get_sample_value("rate_limit_tracked_clients") == 1.0
        assert metrics.registry.get_sample_value(
            "errors_total", {"error_type": "RATE_LIMIT_ERROR", "service": "directory"}) == 1.0

    @pytest.mark.asyncio
    async def test_client_id_is_bound_to_log_context(self, clock):
        middleware = self.make_middleware(clock, token_limit=3)
        seen = {}

        async def call_next(request):
            seen.update(add_correlation_context(None, "info", {}))
            return Response("ok")

        clear_context()
        await middleware.dispatch(make_request(host="10.2.3.4"), call_next)

        assert client_id_var.get() == "10.2.3.4"
        assert seen["client_id"] == "10.2.3.4"
        clear_context()
        assert "client_id" not in add_correlation_context(None, "info", {})


class TestClientIdResolution:
    """Test cases for client identity resolution."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    def make_middleware(self, clock, source):
        limiter = TokenBucketRateLimiter(RateLimitSettings(client_id_source=source), clock=clock)
        return RateLimitMiddleware(limiter)

    def test_ip_address(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.IP_ADDRESS)
        assert middleware.resolve_client_id(make_request(host="192.168.1.20")) == "192.168.1.20"

    def test_ip_address_without_client(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.IP_ADDRESS)
        request = make_request()
        request.client = None
        assert middleware.resolve_client_id(request) == "unknown"

    def test_forwarded_headers_are_ignored(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.IP_ADDRESS)
        request = make_request(host="10.1.1.1", headers={"X-Forwarded-For": "203.0.113.7"})
        assert middleware.resolve_client_id(request) == "10.1.1.1"

    def test_api_key_from_authorization_header(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.API_KEY)
        request = make_request(headers={"Authorization": "ApiKey key-abc"})
        assert middleware.resolve_client_id(request) == "key-abc"

    def test_api_key_scheme_is_case_insensitive(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.API_KEY)
        request = make_request(headers={"Authorization": "apikey key-abc"})
        assert middleware.resolve_client_id(request) == "key-abc"

    def test_api_key_from_query_string(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.API_KEY)
        request = make_request(headers={"Authorization": "Bearer something"}, query_params={"api_key": "key-q"})
        assert middleware.resolve_client_id(request) == "key-q"

    def test_missing_api_key_is_unknown(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.API_KEY)
        assert middleware.resolve_client_id(make_request()) == "unknown"

    def test_user_id_from_principal(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.USER_ID)
        request = make_request(user_info={"user_id": "user1", "username": "aminah"})
        assert middleware.resolve_client_id(request) == "aminah"

    def test_anonymous_user_falls_back_to_address(self, clock):
        middleware = self.make_middleware(clock, ClientIdSource.USER_ID)
        assert middleware.resolve_client_id(make_request(host="172.16.0.4")) == "172.16.0.4"

    @pytest.mark.asyncio
    async def test_api_keys_have_separate_budgets(self, clock):
        limiter = TokenBucketRateLimiter(
            RateLimitSettings(client_id_source=ClientIdSource.API_KEY, token_limit=1, queue_limit=0),
            clock=clock,
        )
        middleware = RateLimitMiddleware(limiter)
        call_next = AsyncMock(side_effect=lambda request: Response("ok"))

        first = await middleware.dispatch(make_request(headers={"Authorization": "ApiKey one"}), call_next)
        second = await middleware.dispatch(make_request(headers={"Authorization": "ApiKey two"}), call_next)
        third = await middleware.dispatch(make_request(headers={"Authorization": "ApiKey one"}), call_next)

        assert first.status_code == 200
        assert second.status_code == 200
        assert third.status_code == 429
        assert third.headers["X-RateLimit-Client-ID"] == "one"
