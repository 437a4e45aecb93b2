"""Redis client for idempotency keys.

Escrow creation accepts an Idempotency-Key header; the key is remembered
here together with the escrow it produced, so a retried request returns the
same escrow instead of creating a second one.

Usage:
    from peer_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from peer_escrow.config import get_settings
from peer_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

_KEY_PREFIX = "idempotency:"


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def set_redis(client: aioredis.Redis | None) -> None:
    """Install a client directly (tests, or an externally managed pool)."""
    global _redis_client
    _redis_client = client


def is_redis_ready() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def check_idempotency(key: str) -> str | None:
    """Return the value stored for an idempotency key, or None if new."""
    redis = get_redis()
    return await redis.get(f"{_KEY_PREFIX}{key}")


async def set_idempotency(key: str, value: str = "1") -> bool:
    """Remember an idempotency key with a TTL.

    Returns False when another request stored the key first.
    """
    settings = get_settings()
    redis = get_redis()
    stored = await redis.set(
        f"{_KEY_PREFIX}{key}",
        value,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(stored)
