"""
Directory service: admission control and token lifecycle for the
local-business directory API.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import (
    InvalidCredentialsError,
    InvalidRequestError,
    InvalidTokenError,
    LockedOutError,
    UnconfirmedAccountError,
    ValidationError,
)
from .auth import (
    AccountStore,
    InMemoryAccountStore,
    InMemoryTokenDenylist,
    PrincipalMiddleware,
    RedisTokenDenylist,
    TokenDenylist,
    TokenIssuer,
    TokenService,
    get_current_user,
    require_role,
)
from .auth.models import AuthResponse, LoginRequest, RefreshRequest
from .auth.service import token_expiry
from .ratelimit import RateLimitMiddleware, TokenBucketRateLimiter

FAILURE_STATUS = {
    "INVALID_CREDENTIALS": InvalidCredentialsError.status_code,
    "UNCONFIRMED_ACCOUNT": UnconfirmedAccountError.status_code,
    "LOCKED_OUT": LockedOutError.status_code,
    "INVALID_TOKEN": InvalidTokenError.status_code,
    "INVALID_REQUEST": InvalidRequestError.status_code,
}

ADMIN_ROLE = "admin"


class DirectoryService(BaseService):
    """Directory access service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        account_store: Optional[AccountStore] = None,
        denylist: Optional[TokenDenylist] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        super().__init__("directory", 8000, config)

        self.account_store = account_store or self._create_account_store()
        self.denylist = denylist or self._create_denylist()
        self.token_issuer = TokenIssuer(self.config.jwt, self.denylist)
        self.token_service = TokenService(
            self.account_store,
            self.token_issuer,
            self.config.jwt,
            self.config.lockout,
            metrics=self.metrics,
        )
        self.principal_middleware = PrincipalMiddleware(self.token_service)

        self.rate_limiter = TokenBucketRateLimiter(self.config.rate_limit, clock=clock, sleep=sleep)
        self.rate_limit_middleware = RateLimitMiddleware(self.rate_limiter, self.metrics)

        self._setup_directory_routes()

    def _create_account_store(self) -> AccountStore:
        if self.config.account_store == "postgres":
            from .auth.postgres import PostgresAccountStore
            return PostgresAccountStore(self.config.postgres_dsn)
        return InMemoryAccountStore()

    def _create_denylist(self) -> TokenDenylist:
        if self.config.jwt.denylist_backend == "redis":
            return RedisTokenDenylist(self.config.redis_url)
        return InMemoryTokenDenylist()

    def _setup_service_middleware(self):
        """Principal resolution wraps admission control so the limiter can key on the user."""

        @self.app.middleware("http")
        async def admission_control(request: Request, call_next):
            return await self.rate_limit_middleware.dispatch(request, call_next)

        @self.app.middleware("http")
        async def resolve_principal(request: Request, call_next):
            return await self.principal_middleware.dispatch(request, call_next)

    async def _startup(self):
        await self.account_store.start()
        if self.config.seed_accounts_file:
            await self._seed_accounts(self.config.seed_accounts_file)
        self.logger.info(
            "Directory service started",
            account_store=self.config.account_store,
            client_id_source=self.config.rate_limit.client_id_source.value
        )

    async def _shutdown(self):
        await self.account_store.stop()
        await self.denylist.close()

    async def _seed_accounts(self, path: str):
        """Load accounts from a JSON list of {username, email, password, roles, email_confirmed}."""
        with open(path, "r", encoding="utf-8") as handle:
            entries = json.load(handle)

        for entry in entries:
            try:
                await self.token_service.register(
                    username=entry["username"],
                    email=entry["email"],
                    password=entry["password"],
                    roles=entry.get("roles", []),
                    email_confirmed=entry.get("email_confirmed", True),
                    user_id=entry.get("user_id"),
                )
            except ValidationError:
                self.logger.info("Seed account already present", email=entry["email"])

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "token_denylist": "ok" if await self.denylist.ping() else "error",
        }

    def _setup_directory_routes(self):
        """Set up directory-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "directory",
                "message": "Directory Access Layer - Directory Service",
                "version": "1.0.0"
            }

        @self.app.post("/api/v1/auth/login", response_model=AuthResponse)
        async def login(body: LoginRequest):
            """Exchange email and password for an access token and refresh secret."""
            response = await self.token_service.authenticate(body.email, body.password)
            return self._auth_result(response)

        @self.app.post("/api/v1/auth/refresh", response_model=AuthResponse)
        async def refresh(body: RefreshRequest):
            """Rotate the refresh secret and issue a new access token."""
            response = await self.token_service.refresh(body.token, body.refresh_token)
            return self._auth_result(response)

        @self.app.post("/api/v1/auth/revoke")
        async def revoke_own(request: Request, user_info: Dict[str, Any] = Depends(get_current_user)):
            """Sign out: revoke the caller's refresh secret and the presented access token."""
            claims = getattr(request.state, "token_claims", {})
            success = await self.token_service.revoke(
                user_info["user_id"],
                jti=user_info.get("jti"),
                token_expires_at=token_expiry(claims),
            )
            return {"success": success}

        @self.app.post("/api/v1/auth/revoke/{user_id}")
        async def revoke_user(user_id: str, admin: Dict[str, Any] = Depends(require_role(ADMIN_ROLE))):
            """Revoke another account's refresh secret."""
            success = await self.token_service.revoke(user_id)
            self.logger.info("Refresh token revoked by administrator", user_id=user_id, admin_id=admin["user_id"])
            return {"success": success}

        @self.app.get("/api/v1/auth/me")
        async def me(user_info: Dict[str, Any] = Depends(get_current_user)):
            """Describe the authenticated caller."""
            return {
                "user_id": user_info["user_id"],
                "username": user_info["username"],
                "email": user_info["email"],
                "roles": user_info["roles"],
            }

        @self.app.get("/api/v1/ratelimit/stats")
        async def rate_limit_stats(_: Dict[str, Any] = Depends(require_role(ADMIN_ROLE))):
            """Admission controller statistics."""
            return self.rate_limiter.get_stats()

    def _auth_result(self, response: AuthResponse):
        if response.success:
            return response
        status_code = FAILURE_STATUS.get(response.error_code or "", 400)
        return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = DirectoryService(config)
    return service.app


if __name__ == "__main__":
    service = DirectoryService()
    service.run()
