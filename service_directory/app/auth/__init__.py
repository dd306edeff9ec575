"""
Token lifecycle package.

- models: account record and request/response models
- tokens: HS256 access token minting and verification
- denylist: revoked token ids (memory or Redis)
- store / postgres: account persistence with per-account atomic updates
- service: authenticate, refresh, revoke
- principal: bearer-token principal middleware and route dependencies
"""

from .denylist import InMemoryTokenDenylist, RedisTokenDenylist, TokenDenylist
from .models import AuthResponse, UserAccount
from .principal import PrincipalMiddleware, get_current_user, require_role
from .service import TokenService
from .store import AccountStore, InMemoryAccountStore
from .tokens import TokenIssuer

__all__ = [
    "AccountStore",
    "AuthResponse",
    "InMemoryAccountStore",
    "InMemoryTokenDenylist",
    "PrincipalMiddleware",
    "RedisTokenDenylist",
    "TokenDenylist",
    "TokenIssuer",
    "TokenService",
    "UserAccount",
    "get_current_user",
    "require_role",
]
