"""
Admission middleware: resolves the client identity, consults the token
bucket limiter and decorates responses with quota headers.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.config import ClientIdSource, RateLimitSettings
from shared.errors import RateLimitError
from shared.logging import get_logger, set_client_context
from shared.metrics import MetricsCollector
from .token_bucket import RateLimitDecision, TokenBucketRateLimiter

LIMIT_HEADER = "X-RateLimit-Limit"
REMAINING_HEADER = "X-RateLimit-Remaining"
CLIENT_ID_HEADER = "X-RateLimit-Client-ID"
RETRY_AFTER_HEADER = "Retry-After"

UNKNOWN_CLIENT = "unknown"


class RateLimitMiddleware:
    """Rate limiting middleware for FastAPI."""

    def __init__(self, rate_limiter: TokenBucketRateLimiter, metrics: Optional[MetricsCollector] = None):
        self.rate_limiter = rate_limiter
        self.settings: RateLimitSettings = rate_limiter.settings
        self.metrics = metrics
        self.logger = get_logger("directory.rate_limit_middleware")
        self._whitelist = set(self.settings.whitelisted_clients)

    async def dispatch(self, request: Request, call_next):
        """Admit or reject the request."""
        if self.is_excluded(request.url.path):
            return await call_next(request)

        client_id = self.resolve_client_id(request)
        set_client_context(client_id)
        if client_id in self._whitelist:
            self._record("bypassed")
            return await call_next(request)

        decision = await self.rate_limiter.acquire(client_id)
        self._record("allowed" if decision.allowed else "rejected")

        if not decision.allowed:
            return self._rejection(decision)

        response = await call_next(request)
        self._apply_headers(response.headers, decision)
        return response

    def resolve_client_id(self, request: Request) -> str:
        """Extract client ID from request using the configured source."""
        source = self.settings.client_id_source
        if source == ClientIdSource.API_KEY:
            return self._get_api_key(request)
        if source == ClientIdSource.USER_ID:
            return self._get_user_id(request)
        return self._get_remote_address(request)

    def is_excluded(self, path: str) -> bool:
        """Segment-aware prefix match against excluded paths."""
        for prefix in self.settings.excluded_paths:
            prefix = prefix.rstrip("/")
            if not prefix:
                continue
            if path == prefix or path.startswith(prefix + "/"):
                return True
        return False

    def _get_remote_address(self, request: Request) -> str:
        client = request.client
        if client and client.host:
            return client.host
        return UNKNOWN_CLIENT

    def _get_api_key(self, request: Request) -> str:
        authorization = request.headers.get("Authorization")
        if isinstance(authorization, str) and authorization[:7].lower() == "apikey ":
            api_key = authorization[7:].strip()
            if api_key:
                return api_key

        api_key = request.query_params.get("api_key")
        if api_key:
            return api_key

        return UNKNOWN_CLIENT

    def _get_user_id(self, request: Request) -> str:
        # Populated by the principal middleware when a valid bearer token is present
        user_info = getattr(request.state, "user_info", None)
        if isinstance(user_info, dict):
            username = user_info.get("username")
            if username:
                return username

        return self._get_remote_address(request)

    def _apply_headers(self, headers, decision: RateLimitDecision) -> None:
        headers[LIMIT_HEADER] = str(decision.limit)
        headers[REMAINING_HEADER] = str(decision.remaining)
        headers[CLIENT_ID_HEADER] = decision.client_id
        if not decision.allowed and decision.retry_after is not None:
            headers[RETRY_AFTER_HEADER] = str(decision.retry_after)

    def _rejection(self, decision: RateLimitDecision) -> JSONResponse:
        retry_after = decision.retry_after
        if retry_after is None:
            retry_after = self.settings.default_retry_after_seconds

        error = RateLimitError(
            f"API rate limit has been exceeded. Please retry after {retry_after} seconds.",
            details={"client_id": decision.client_id, "retry_after": retry_after},
        )
        if self.metrics is not None:
            self.metrics.record_error(error.code)

        body: Dict[str, Any] = {
            "status": error.status_code,
            "title": "Too Many Requests",
            "detail": error.message,
            "retry_after": retry_after,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = JSONResponse(status_code=error.status_code, content=body)
        self._apply_headers(response.headers, decision)
        return response

    def _record(self, decision: str) -> None:
        if self.metrics is not None:
            self.metrics.record_rate_limit_decision(decision, self.rate_limiter.tracked_clients)
