"""
Request principal resolution for the Directory service.
"""

from typing import Any, Callable, Dict, Optional

from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError, DirectoryAccessException, InvalidTokenError
from shared.logging import get_logger, set_user_context
from .service import TokenService
from .tokens import user_info_from_claims


def extract_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization")
    if not isinstance(authorization, str) or authorization[:7].lower() != "bearer ":
        return None
    token = authorization[7:].strip()
    return token or None


class PrincipalMiddleware:
    """Attach the caller's identity to the request when a valid bearer token is present.

    Never rejects a request; routes that need a principal depend on
    ``get_current_user``. Runs before admission control so the rate limiter
    can key on the authenticated user.
    """

    def __init__(self, token_service: TokenService):
        self.token_service = token_service
        self.logger = get_logger("directory.principal_middleware")

    async def dispatch(self, request: Request, call_next):
        token = extract_bearer_token(request)
        if token:
            try:
                claims = await self.token_service.validate_access_token(token)
            except DirectoryAccessException as exc:
                self.logger.info("Bearer token rejected", code=exc.code, details=exc.details)
                request.state.auth_error = exc
            else:
                request.state.user_info = user_info_from_claims(claims)
                request.state.token_claims = claims
                set_user_context(claims.get("sub"))

        return await call_next(request)


async def get_current_user(request: Request) -> Dict[str, Any]:
    """FastAPI dependency for getting current user."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict):
        return user_info

    auth_error = getattr(request.state, "auth_error", None)
    if isinstance(auth_error, InvalidTokenError):
        raise auth_error
    raise AuthenticationError("Authentication required")


def require_role(role: str) -> Callable:
    """Dependency factory that admits only principals holding ``role``."""

    async def dependency(request: Request) -> Dict[str, Any]:
        user_info = await get_current_user(request)
        if role not in user_info.get("roles", []):
            raise AuthorizationError(f"Missing required role '{role}'", details={"roles": user_info.get("roles", [])})
        return user_info

    return dependency
