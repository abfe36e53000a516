"""
Request level idempotency for mutating agent routes.

A client sends ``Idempotency-Key``; the first 2xx response for that key is
stored for ``IDEMPOTENCY_TTL_SECONDS`` and replayed byte for byte on every
retry, without running the handler again. Keys are namespaced by
organization so the same literal key from two tenants never collides.
"""

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from uuid import UUID

from fastapi import Response, status
from redis.asyncio import Redis
from redis.exceptions import RedisError

from common.exceptions import IdempotencyKeyConflict


logger = logging.getLogger(__name__)

REPLAY_HEADER = "X-Idempotent-Replayed"


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    body: str
    request_fingerprint: str
    expires_at: float

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CachedResponse":
        return cls(**json.loads(raw))


class IdempotencyCache(ABC):
    """Storage for replayable responses keyed by composite idempotency key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CachedResponse]:
        ...

    @abstractmethod
    async def set(self, key: str, response: CachedResponse, ttl_seconds: int) -> None:
        ...

    async def close(self) -> None:
        pass


class InMemoryIdempotencyCache(IdempotencyCache):
    """
    Process local cache. No timers are involved: expiry is checked on read,
    and writes sweep out every expired entry at most once per
    ``sweep_interval`` seconds.

    Args:
        clock: Returns the current time in epoch seconds (injectable for tests)
        sweep_interval: Minimum number of seconds between two sweeps
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = 0.0
        self._entries: Dict[str, Tuple[CachedResponse, float]] = {}

    async def get(self, key: str) -> Optional[CachedResponse]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        response, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return response

    async def set(self, key: str, response: CachedResponse, ttl_seconds: int) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            removed = self.purge_expired()
            if removed:
                logger.debug("Purged %d expired idempotency entries", removed)
            self._next_sweep = now + self._sweep_interval
        self._entries[key] = (response, now + ttl_seconds)

    def purge_expired(self) -> int:
        """Drops expired entries and returns how many were removed."""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisIdempotencyCache(IdempotencyCache):
    """Redis backed cache, entries expire through the key TTL."""

    def __init__(self, redis: Redis, prefix: str = "idempotency:"):
        self.redis = redis
        self.prefix = prefix

    async def get(self, key: str) -> Optional[CachedResponse]:
        raw = await self.redis.get(f"{self.prefix}{key}")
        if not raw:
            return None
        return CachedResponse.from_json(raw)

    async def set(self, key: str, response: CachedResponse, ttl_seconds: int) -> None:
        await self.redis.setex(f"{self.prefix}{key}", ttl_seconds, response.to_json())

    async def close(self) -> None:
        await self.redis.aclose()


class FallbackIdempotencyCache(IdempotencyCache):
    """
    Serves from ``primary`` and degrades to ``fallback`` whenever the primary
    store is unreachable, so an outage never fails the write path.
    """

    def __init__(self, primary: IdempotencyCache, fallback: IdempotencyCache):
        self.primary = primary
        self.fallback = fallback

    async def get(self, key: str) -> Optional[CachedResponse]:
        try:
            cached = await self.primary.get(key)
        except (RedisError, OSError) as e:
            logger.warning("Idempotency store unavailable on read, using fallback: %s", e)
            return await self.fallback.get(key)
        if cached is None:
            # Entries written while the primary was down live in the fallback
            return await self.fallback.get(key)
        return cached

    async def set(self, key: str, response: CachedResponse, ttl_seconds: int) -> None:
        try:
            await self.primary.set(key, response, ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning("Idempotency store unavailable on write, using fallback: %s", e)
            await self.fallback.set(key, response, ttl_seconds)

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()


def composite_key(organization_id: UUID, idempotency_key: str) -> str:
    """Hashes the tenant and the client key into the storage key."""
    return hashlib.sha256(f"{organization_id}:{idempotency_key}".encode()).hexdigest()


def request_fingerprint(method: str, path: str, body: Any) -> str:
    """Stable hash of a request, used to detect a key reused for a different request."""
    canonical = json.dumps(
        {"method": method.upper(), "path": path, "body": body},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class IdempotentRequest:
    """
    Wraps a single mutating request.

    Usage:
        guard = IdempotentRequest(cache, org_id, key, fingerprint, ttl)
        replay = await guard.replay()
        if replay is not None:
            return replay
        ... perform the mutation ...
        return await guard.respond(200, payload)
    """

    def __init__(
        self,
        cache: IdempotencyCache,
        organization_id: UUID,
        idempotency_key: Optional[str],
        fingerprint: str,
        ttl_seconds: int,
    ):
        self.cache = cache
        self.fingerprint = fingerprint
        self.ttl_seconds = ttl_seconds
        self.key = composite_key(organization_id, idempotency_key) if idempotency_key else None

    async def replay(self) -> Optional[Response]:
        """
        Returns the stored response for this key, if any.

        Raises:
            IdempotencyKeyConflict: if the key was used for a different request
        """
        if self.key is None:
            return None
        cached = await self.cache.get(self.key)
        if cached is None:
            return None
        if cached.request_fingerprint != self.fingerprint:
            raise IdempotencyKeyConflict()
        logger.info("Replaying stored response for idempotency key %s", self.key[:12])
        return Response(
            content=cached.body,
            status_code=cached.status_code,
            media_type="application/json",
            headers={REPLAY_HEADER: "true"},
        )

    async def respond(self, status_code: int, payload: Dict[str, Any]) -> Response:
        """Serializes ``payload`` once, stores it when successful and returns it."""
        body = json.dumps(payload, separators=(",", ":"))
        if self.key is not None and status.HTTP_200_OK <= status_code < 300:
            await self._store(status_code, body)
        return Response(content=body, status_code=status_code, media_type="application/json")

    async def _store(self, status_code: int, body: str) -> None:
        entry = CachedResponse(
            status_code=status_code,
            body=body,
            request_fingerprint=self.fingerprint,
            expires_at=time.time() + self.ttl_seconds,
        )
        try:
            await self.cache.set(self.key, entry, self.ttl_seconds)
        except Exception:
            # The mutation is committed; a retry hits the one-shot guards instead
            logger.exception("Failed to store idempotent response for key %s", self.key[:12])


async def run_idempotent(
    guard: IdempotentRequest,
    handler: Callable[[], Awaitable[Tuple[int, Dict[str, Any]]]],
) -> Response:
    """Replays a stored response or runs ``handler`` and stores its result."""
    replay = await guard.replay()
    if replay is not None:
        return replay
    status_code, payload = await handler()
    return await guard.respond(status_code, payload)
