"""
Denylist of revoked access token ids.

Signed access tokens stay cryptographically valid until they expire, so
logout records the token's ``jti`` here until its natural expiry and
validation consults the list.
"""

import math
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Optional

import redis.asyncio as redis

from shared.errors import DirectoryAccessException
from shared.logging import get_logger
from .models import utcnow


class TokenDenylist(ABC):
    """Short-lived set of revoked token ids."""

    @abstractmethod
    async def add(self, jti: str, expires_at: datetime) -> None:
        ...

    @abstractmethod
    async def contains(self, jti: str) -> bool:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        """Release resources. No-op by default."""


class InMemoryTokenDenylist(TokenDenylist):
    """Process-local denylist; entries are purged lazily once expired."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def add(self, jti: str, expires_at: datetime) -> None:
        with self._lock:
            self._purge(self._clock())
            if expires_at > self._clock():
                self._entries[jti] = expires_at

    async def contains(self, jti: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[jti]
                return False
            return True

    def _purge(self, now: datetime) -> None:
        expired = [jti for jti, expires_at in self._entries.items() if expires_at <= now]
        for jti in expired:
            del self._entries[jti]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisTokenDenylist(TokenDenylist):
    """Denylist shared by every worker through Redis keys with a TTL."""

    def __init__(self, redis_url: str, clock: Callable[[], datetime] = utcnow):
        self.redis_url = redis_url
        self.logger = get_logger("directory.token_denylist")
        self._redis: Optional[redis.Redis] = None
        self._clock = clock

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _make_key(self, jti: str) -> str:
        return f"token_denylist:{jti}"

    async def add(self, jti: str, expires_at: datetime) -> None:
        ttl = math.ceil((expires_at - self._clock()).total_seconds())
        if ttl <= 0:
            return

        try:
            redis_client = await self._get_redis()
            await redis_client.setex(self._make_key(jti), ttl, "1")
        except Exception as e:
            self.logger.error("Denylist write failed", jti=jti, error=str(e))
            raise DirectoryAccessException(
                "DENYLIST_UNAVAILABLE",
                "Token revocation is temporarily unavailable",
                details={"jti": jti},
                status_code=503,
            ) from e

        self.logger.info("Token id denylisted", jti=jti, ttl_seconds=ttl)

    async def contains(self, jti: str) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.exists(self._make_key(jti)))
        except Exception as e:
            # Fails open: an unreachable Redis must not lock every caller out
            self.logger.error("Denylist lookup error", jti=jti, error=str(e))
            return False

    async def ping(self) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except Exception as e:
            self.logger.error("Denylist ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
