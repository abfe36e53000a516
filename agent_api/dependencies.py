import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Header, Request
from redis.asyncio import Redis

from agent_api.idempotency import (
    FallbackIdempotencyCache,
    IdempotencyCache,
    InMemoryIdempotencyCache,
    RedisIdempotencyCache,
)
from common.config import settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentContext:
    """Caller identity every agent route is scoped by."""
    organization_id: UUID
    actor: str


async def get_agent_context(
    organization_id: UUID = Header(..., alias="X-Organization-Id"),
    agent_name: Optional[str] = Header(None, alias="X-Agent-Name"),
) -> AgentContext:
    """Resolves the tenant and the actor name from request headers."""
    return AgentContext(
        organization_id=organization_id,
        actor=f"agent:{agent_name or 'default'}",
    )


def get_redis() -> Redis:
    """Redis client for the distributed idempotency store."""
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)


def build_idempotency_cache() -> IdempotencyCache:
    """
    Builds the idempotency cache for the service process.

    Redis is used when configured, with an in-process cache taking over
    whenever Redis cannot be reached.
    """
    memory = InMemoryIdempotencyCache()
    if not settings.REDIS_URL:
        logger.info("REDIS_URL not set, idempotency served from process memory")
        return memory
    return FallbackIdempotencyCache(RedisIdempotencyCache(get_redis()), memory)


def get_idempotency_cache(request: Request) -> IdempotencyCache:
    cache = getattr(request.app.state, "idempotency_cache", None)
    if cache is None:
        cache = build_idempotency_cache()
        request.app.state.idempotency_cache = cache
    return cache
