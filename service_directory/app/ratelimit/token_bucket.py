"""
In-process token bucket rate limiter for the Directory service.
"""

import asyncio
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from shared.config import RateLimitSettings
from shared.logging import get_logger

Clock = Callable[[], float]


@dataclass
class RateLimitDecision:
    """Outcome of a single admission check."""

    allowed: bool
    client_id: str
    limit: int
    remaining: int
    retry_after: Optional[int] = None
    queued: bool = False


class TokenBucket:
    """Continuously refilling token bucket for one client identity.

    Tokens are replenished lazily from the elapsed time on every access,
    so there is no background task. All state changes happen under the
    bucket's own lock.
    """

    def __init__(self, capacity: int, tokens_per_period: float, period_seconds: float,
                 clock: Clock = time.monotonic):
        self.capacity = float(capacity)
        self.tokens_per_period = float(tokens_per_period)
        self.period_seconds = float(period_seconds)
        self._clock = clock
        self._lock = threading.Lock()

        now = clock()
        self.tokens = self.capacity
        self.last_refill = now
        self.last_access = now
        self.queued = 0

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            added = elapsed * self.tokens_per_period / self.period_seconds
            self.tokens = min(self.capacity, self.tokens + added)
            self.last_refill = now

    def _wait_time(self, permits: float) -> Optional[float]:
        if permits > self.capacity:
            return None
        missing = permits - self.tokens
        if missing <= 0:
            return 0.0
        return missing * self.period_seconds / self.tokens_per_period

    def try_acquire(self, permits: float = 1.0) -> Tuple[bool, Optional[float]]:
        """Withdraw permits if available.

        Returns (acquired, wait_seconds). wait_seconds estimates how long
        until the permits would be available and is None when the request
        can never be satisfied.
        """
        with self._lock:
            now = self._clock()
            self._refill(now)
            self.last_access = now

            if self.tokens >= permits:
                self.tokens -= permits
                return True, 0.0

            return False, self._wait_time(permits)

    def available(self) -> int:
        """Whole tokens currently available."""
        with self._lock:
            self._refill(self._clock())
            return int(math.floor(self.tokens))

    def enter_queue(self, queue_limit: int) -> bool:
        """Reserve a queue slot. False when the queue is full."""
        with self._lock:
            if self.queued >= queue_limit:
                return False
            self.queued += 1
            return True

    def leave_queue(self) -> None:
        with self._lock:
            self.queued = max(0, self.queued - 1)

    def idle_for(self, now: float) -> float:
        return now - self.last_access


class BucketRegistry:
    """Bounded identity -> bucket map with idle eviction.

    Lookups insert a bucket if absent under a single lock. Buckets idle
    longer than ``idle_ttl`` are dropped; once ``max_size`` is reached the
    least recently used bucket is dropped to make room.
    """

    def __init__(self, factory: Callable[[], TokenBucket], max_size: int, idle_ttl: float,
                 clock: Clock = time.monotonic):
        self._factory = factory
        self.max_size = max_size
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0
        self.logger = get_logger("directory.rate_limiter.registry")

    def get_or_create(self, client_id: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(client_id)
            if bucket is not None:
                self._buckets.move_to_end(client_id)
                return bucket

            self._evict(self._clock())
            bucket = self._factory()
            self._buckets[client_id] = bucket
            return bucket

    def get(self, client_id: str) -> Optional[TokenBucket]:
        with self._lock:
            return self._buckets.get(client_id)

    def _evict(self, now: float) -> None:
        # Least recently used buckets sit at the front
        while self._buckets:
            client_id, bucket = next(iter(self._buckets.items()))
            if bucket.idle_for(now) < self.idle_ttl:
                break
            del self._buckets[client_id]
            self.evictions += 1

        while len(self._buckets) >= self.max_size:
            client_id, _ = self._buckets.popitem(last=False)
            self.evictions += 1
            self.logger.warning("Evicted active rate limit bucket", client_id=client_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def __contains__(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._buckets


class TokenBucketRateLimiter:
    """Per-identity token bucket rate limiter.

    Every identity gets its own bucket holding ``token_limit`` tokens,
    replenished at ``tokens_per_period`` per ``replenishment_period_seconds``.
    A request that finds the bucket empty may wait for the next token when
    the identity's queue has room and the wait fits within
    ``max_queue_wait_seconds``; otherwise it is rejected with a retry-after
    estimate.
    """

    def __init__(self, settings: RateLimitSettings, clock: Clock = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.settings = settings
        self.logger = get_logger("directory.rate_limiter")
        self._clock = clock
        self._sleep = sleep
        self._registry = BucketRegistry(
            self._new_bucket,
            max_size=settings.max_tracked_clients,
            idle_ttl=settings.effective_idle_ttl(),
            clock=clock,
        )
        self._counters: Dict[str, int] = {"allowed": 0, "rejected": 0, "queued": 0}
        self._counters_lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self.settings.token_limit

    def _new_bucket(self) -> TokenBucket:
        return TokenBucket(
            self.settings.token_limit,
            self.settings.tokens_per_period,
            self.settings.replenishment_period_seconds,
            clock=self._clock,
        )

    def _count(self, name: str) -> None:
        with self._counters_lock:
            self._counters[name] += 1

    def _retry_after(self, wait: Optional[float]) -> int:
        if wait is None or wait <= 0:
            return self.settings.default_retry_after_seconds
        return int(math.ceil(wait))

    async def acquire(self, client_id: str) -> RateLimitDecision:
        """Take one token for the client, waiting in its queue if allowed."""
        bucket = self._registry.get_or_create(client_id)
        acquired, wait = bucket.try_acquire()
        queued = False

        if not acquired and self._can_queue(wait) and bucket.enter_queue(self.settings.queue_limit):
            queued = True
            self._count("queued")
            try:
                await self._sleep(wait)
                acquired, wait = bucket.try_acquire()
            finally:
                bucket.leave_queue()

        remaining = bucket.available()
        if acquired:
            self._count("allowed")
            return RateLimitDecision(
                allowed=True,
                client_id=client_id,
                limit=self.limit,
                remaining=remaining,
                queued=queued,
            )

        self._count("rejected")
        retry_after = self._retry_after(wait)
        self.logger.warning(
            "Rate limit exceeded",
            client_id=client_id,
            limit=self.limit,
            retry_after=retry_after,
            queued=queued,
        )
        return RateLimitDecision(
            allowed=False,
            client_id=client_id,
            limit=self.limit,
            remaining=remaining,
            retry_after=retry_after,
            queued=queued,
        )

    def _can_queue(self, wait: Optional[float]) -> bool:
        if self.settings.queue_limit <= 0 or wait is None:
            return False
        return wait <= self.settings.max_queue_wait_seconds

    def remaining(self, client_id: str) -> int:
        """Tokens left for a client; a client without a bucket has a full one."""
        bucket = self._registry.get(client_id)
        if bucket is None:
            return self.limit
        return bucket.available()

    @property
    def tracked_clients(self) -> int:
        return len(self._registry)

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of limiter activity."""
        with self._counters_lock:
            counters = dict(self._counters)
        return {
            "tracked_clients": self.tracked_clients,
            "evicted_clients": self._registry.evictions,
            "limit": self.limit,
            "tokens_per_period": self.settings.tokens_per_period,
            "replenishment_period_seconds": self.settings.replenishment_period_seconds,
            **counters,
        }
