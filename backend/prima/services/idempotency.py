"""
Idempotency keys for inbound webhook events, stored in Redis.

A key is claimed with ``SET key 1 NX EX ttl``; a second claim of the same
key reports a duplicate.  When Redis is not configured or unreachable the
store falls back to an in-process dict (good enough for a single worker).
"""

from __future__ import annotations

import hashlib
import logging
import time
from datetime import datetime
from typing import Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def _digest(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def inbound_message_key(
    sender: str,
    normalized_text: str,
    received_at: datetime,
    provider_message_id: str | None = None,
    *,
    bucket_seconds: int = 300,
) -> str:
    """Provider id when present, else a hash of sender, text and a coarse time bucket."""
    if provider_message_id:
        return f"msg:{provider_message_id}"
    bucket = int(received_at.timestamp()) // max(bucket_seconds, 1)
    return "msg-hash:" + _digest(sender, normalized_text, str(bucket))


def status_event_key(provider_message_id: str, status: str, timestamp: str | None) -> str:
    return "status:" + _digest(provider_message_id, status, timestamp or "")


class IdempotencyStore:

    def __init__(
        self,
        redis: aioredis.Redis | None = None,
        *,
        ttl_seconds: int = 60 * 60 * 24,
        prefix: str = "prima:idem:",
        clock: Callable[[], float] = time.monotonic,
    ):
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = prefix
        self._clock = clock
        self._memory: dict[str, float] = {}

    def _claim_local(self, key: str) -> bool:
        now = self._clock()
        expired = [k for k, expires in self._memory.items() if expires <= now]
        for k in expired:
            del self._memory[k]
        if key in self._memory:
            return False
        self._memory[key] = now + self._ttl
        return True

    async def claim(self, key: str) -> bool:
        """Return True the first time *key* is seen within the TTL."""
        full_key = self._prefix + key
        if self._redis is not None:
            try:
                return bool(await self._redis.set(full_key, "1", nx=True, ex=self._ttl))
            except RedisError as exc:
                logger.warning("Redis idempotency check failed, using memory: %s", exc)
        return self._claim_local(full_key)

    async def release(self, key: str) -> None:
        """Forget *key* so a redelivery can be processed again."""
        full_key = self._prefix + key
        self._memory.pop(full_key, None)
        if self._redis is not None:
            try:
                await self._redis.delete(full_key)
            except RedisError as exc:
                logger.warning("Redis idempotency release failed: %s", exc)
