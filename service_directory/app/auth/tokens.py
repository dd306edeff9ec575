"""
Access token minting and verification.
"""

import base64
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Tuple

from jose import JWTError, jwt

from shared.config import JwtSettings
from shared.errors import InvalidTokenError
from shared.logging import get_logger
from .denylist import TokenDenylist
from .models import Claim, UserAccount, utcnow

ALGORITHM = "HS256"
REFRESH_TOKEN_BYTES = 64

# Claims owned by the issuer; supplementary claims may not override them
RESERVED_CLAIMS = frozenset({"sub", "name", "email", "jti", "iat", "exp", "nbf", "iss", "aud", "roles"})


class TokenIssuer:
    """Mints and verifies HS256 access tokens with a single shared secret."""

    def __init__(self, settings: JwtSettings, denylist: TokenDenylist,
                 clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.denylist = denylist
        self._clock = clock
        self.logger = get_logger("directory.auth.tokens")

    def create_access_token(self, account: UserAccount, roles: Iterable[str],
                            extra_claims: Iterable[Claim] = ()) -> Tuple[str, Dict[str, Any]]:
        """Return the encoded token and the claims it carries."""
        now = self._clock()
        expires = now + timedelta(minutes=self.settings.token_validity_minutes)

        claims: Dict[str, Any] = {
            "sub": account.id,
            "name": account.username,
            "email": account.email,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
            "iss": self.settings.issuer,
            "aud": self.settings.audience,
            "roles": list(roles),
        }
        _merge_claims(claims, extra_claims)

        token = jwt.encode(claims, self.settings.secret, algorithm=ALGORITHM)
        return token, claims

    def generate_refresh_token(self) -> str:
        return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")

    def refresh_token_expiry(self) -> datetime:
        return self._clock() + timedelta(days=self.settings.refresh_token_validity_days)

    def decode_expired(self, token: str) -> Dict[str, Any]:
        """Verify signature, issuer, audience and algorithm but not lifetime."""
        return self._decode(token, verify_exp=False)

    async def validate(self, token: str) -> Dict[str, Any]:
        """Fully validate an access token, including expiry and revocation."""
        claims = self._decode(token, verify_exp=True)

        jti = claims.get("jti")
        if isinstance(jti, str) and await self.denylist.contains(jti):
            raise InvalidTokenError("Token has been revoked")

        return claims

    def _decode(self, token: str, *, verify_exp: bool) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidTokenError(details={"error": str(exc)}) from exc

        if str(header.get("alg", "")).upper() != ALGORITHM:
            raise InvalidTokenError(details={"error": "unexpected signing algorithm"})

        try:
            claims = jwt.decode(
                token,
                self.settings.secret,
                algorithms=[ALGORITHM],
                audience=self.settings.audience,
                issuer=self.settings.issuer,
                options={"verify_exp": verify_exp, "require_aud": True, "require_iss": True},
            )
        except JWTError as exc:
            raise InvalidTokenError(details={"error": str(exc)}) from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError(details={"error": "missing subject claim"})

        return claims


def _merge_claims(claims: Dict[str, Any], extra_claims: Iterable[Claim]) -> None:
    """Add supplementary claims; repeated claim types become lists."""
    for claim_type, value in extra_claims:
        if claim_type in RESERVED_CLAIMS:
            continue

        existing = claims.get(claim_type)
        if existing is None:
            claims[claim_type] = value
        elif isinstance(existing, list):
            if value not in existing:
                existing.append(value)
        elif existing != value:
            claims[claim_type] = [existing, value]


def user_info_from_claims(claims: Dict[str, Any]) -> Dict[str, Any]:
    """Shape verified claims into the request-scoped user info."""
    roles: List[str] = claims.get("roles") or []
    return {
        "user_id": claims.get("sub"),
        "username": claims.get("name"),
        "email": claims.get("email"),
        "roles": list(roles),
        "jti": claims.get("jti"),
        "exp": claims.get("exp"),
        "iat": claims.get("iat"),
    }
