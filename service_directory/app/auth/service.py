"""
Token lifecycle service: sign-in, refresh, revocation.
"""

import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from shared.config import JwtSettings, LockoutSettings
from shared.errors import (
    DirectoryAccessException,
    InvalidCredentialsError,
    InvalidRequestError,
    InvalidTokenError,
    LockedOutError,
    NotFoundError,
    UnconfirmedAccountError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import AuthResponse, Claim, UserAccount, utcnow
from .passwords import burn_verification, hash_password, verify_password
from .store import AccountStore
from .tokens import TokenIssuer


class TokenService:
    """Issues, validates, refreshes and revokes bearer credentials.

    ``authenticate`` and ``refresh`` never raise for credential problems;
    they return an ``AuthResponse`` with ``success=False``, an error code
    and a message that does not reveal which check failed.
    """

    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        jwt_settings: JwtSettings,
        lockout_settings: LockoutSettings,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.issuer = issuer
        self.jwt_settings = jwt_settings
        self.lockout_settings = lockout_settings
        self.metrics = metrics
        self._clock = clock
        self.logger = get_logger("directory.auth.service")

    async def authenticate(self, email: str, password: str) -> AuthResponse:
        """Sign in with email and password."""
        try:
            response = await self._authenticate(email, password)
        except DirectoryAccessException as exc:
            self._record("login", exc.code.lower())
            return AuthResponse.failure(exc)

        self._record("login", "success")
        return response

    async def _authenticate(self, email: str, password: str) -> AuthResponse:
        account = await self.store.get_by_email(email)
        if account is None:
            burn_verification(password)
            self.logger.warning("Authentication failed: user not found", email=email)
            raise InvalidCredentialsError()

        if self.jwt_settings.require_email_confirmation and not account.email_confirmed:
            self.logger.warning("Authentication failed: email not confirmed", user_id=account.id)
            raise UnconfirmedAccountError()

        now = self._clock()
        if account.is_locked_out(now):
            self.logger.warning(
                "Authentication failed: account locked out",
                user_id=account.id,
                lockout_end=account.lockout_end.isoformat()
            )
            raise LockedOutError(account.lockout_end)

        if not verify_password(password, account.password_hash):
            lockout_end = await self.store.record_access_failure(
                account.id,
                self.lockout_settings.max_failed_access_attempts,
                now + timedelta(minutes=self.lockout_settings.lockout_minutes),
            )
            if lockout_end is not None:
                self.logger.warning(
                    "Authentication failed: account locked after repeated failures",
                    user_id=account.id,
                    lockout_end=lockout_end.isoformat()
                )
                raise LockedOutError(lockout_end)

            self.logger.warning("Authentication failed: invalid password", user_id=account.id)
            raise InvalidCredentialsError()

        roles = _unique(account.roles)
        token = await self._mint_access_token(account, roles)
        refresh_token = self.issuer.generate_refresh_token()
        await self.store.record_successful_login(
            account.id,
            refresh_token,
            self.issuer.refresh_token_expiry(),
            now,
        )

        self.logger.info("User authenticated", user_id=account.id)
        return self._success(account, roles, token, refresh_token)

    async def refresh(self, token: str, refresh_token: str) -> AuthResponse:
        """Exchange an expired access token and its refresh secret for a new pair."""
        try:
            response = await self._refresh(token, refresh_token)
        except DirectoryAccessException as exc:
            self._record("refresh", exc.code.lower())
            return AuthResponse.failure(exc)

        self._record("refresh", "success")
        return response

    async def _refresh(self, token: str, refresh_token: str) -> AuthResponse:
        try:
            claims = self.issuer.decode_expired(token)
        except InvalidTokenError as exc:
            self.logger.warning("Refresh failed: unable to read expired token", error=exc.details.get("error"))
            raise InvalidTokenError() from exc

        user_id = claims["sub"]
        account = await self.store.get_by_id(user_id)
        now = self._clock()

        if account is None:
            self.logger.warning("Refresh failed: user not found", user_id=user_id)
            raise InvalidRequestError()
        if account.refresh_token is None or not hmac.compare_digest(
            account.refresh_token.encode("utf-8"), refresh_token.encode("utf-8")
        ):
            self.logger.warning("Refresh failed: refresh token does not match", user_id=user_id)
            raise InvalidRequestError()
        if account.refresh_token_expiry is None or account.refresh_token_expiry <= now:
            self.logger.warning("Refresh failed: refresh token expired", user_id=user_id)
            raise InvalidRequestError()

        roles = _unique(account.roles)
        new_token = await self._mint_access_token(account, roles)
        new_refresh_token = self.issuer.generate_refresh_token()

        rotated = await self.store.rotate_refresh_token(
            user_id,
            refresh_token,
            new_refresh_token,
            self.issuer.refresh_token_expiry(),
            now,
        )
        if not rotated:
            self.logger.warning("Refresh failed: refresh token already rotated", user_id=user_id)
            raise InvalidRequestError()

        self.logger.info("Token refreshed", user_id=user_id)
        return self._success(account, roles, new_token, new_refresh_token)

    async def revoke(self, user_id: str, jti: Optional[str] = None,
                     token_expires_at: Optional[datetime] = None) -> bool:
        """Invalidate the account's refresh secret and, optionally, one access token."""
        now = self._clock()
        if not await self.store.revoke_refresh_token(user_id, now):
            self.logger.warning("Revoke failed: user not found", user_id=user_id)
            self._record("revoke", "not_found")
            raise NotFoundError(f"User {user_id} not found")

        if jti:
            expires_at = token_expires_at or now + timedelta(minutes=self.jwt_settings.token_validity_minutes)
            await self.issuer.denylist.add(jti, expires_at)

        self.logger.info("Token revoked", user_id=user_id, jti=jti)
        self._record("revoke", "success")
        return True

    async def validate_access_token(self, token: str) -> Dict[str, Any]:
        """Return verified claims for a live, non-revoked access token."""
        return await self.issuer.validate(token)

    async def register(self, username: str, email: str, password: str,
                       roles: Iterable[str] = (), email_confirmed: bool = False,
                       claims: Iterable[Claim] = (), user_id: Optional[str] = None) -> UserAccount:
        """Create an account with a hashed password."""
        account = UserAccount(
            id=user_id or str(uuid.uuid4()),
            username=username,
            email=email.strip(),
            password_hash=hash_password(password),
            email_confirmed=email_confirmed,
            lockout_enabled=self.lockout_settings.allowed_for_new_users,
            created_at=self._clock(),
            roles=_unique(roles),
            claims=list(claims),
        )
        return await self.store.add(account)

    async def _mint_access_token(self, account: UserAccount, roles: List[str]) -> str:
        extra_claims: List[Claim] = []
        for role in roles:
            extra_claims.extend(await self.store.get_role_claims(role))
        extra_claims.extend(account.claims)

        token, _ = self.issuer.create_access_token(account, roles, extra_claims)
        return token

    def _success(self, account: UserAccount, roles: List[str], token: str, refresh_token: str) -> AuthResponse:
        return AuthResponse(
            success=True,
            token=token,
            refresh_token=refresh_token,
            user_id=account.id,
            username=account.username,
            email=account.email,
            roles=roles,
        )

    def _record(self, event: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_auth_event(event, outcome)


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def token_expiry(claims: Dict[str, Any]) -> Optional[datetime]:
    """Expiry of a decoded token as an aware datetime."""
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None
