"""
Per-patient mutual exclusion for the reply pipeline.

Two replies from the same patient must not both read the same awaiting
context.  With Redis the lock is shared across API workers and renewed
while held, so a slow gateway send cannot outlive it; otherwise an
``asyncio.Lock`` per patient serialises within the process.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from prima.errors import PrimaError

logger = logging.getLogger(__name__)


class PatientLockTimeout(PrimaError):
    """Another worker held the patient's lock for longer than we would wait."""


class PatientLocks:

    def __init__(
        self,
        redis: aioredis.Redis | None = None,
        *,
        timeout: float = 30.0,
        blocking_timeout: float | None = None,
        prefix: str = "prima:lock:patient:",
    ):
        self._redis = redis
        self._timeout = timeout
        self._blocking_timeout = timeout if blocking_timeout is None else blocking_timeout
        self._prefix = prefix
        self._local: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, patient_id) -> AsyncIterator[None]:
        key = str(patient_id)
        if self._redis is not None:
            lock = self._redis.lock(
                self._prefix + key, timeout=self._timeout, blocking_timeout=self._blocking_timeout
            )
            try:
                acquired = await lock.acquire()
            except RedisError as exc:
                logger.warning("Redis lock unavailable for patient %s, using local lock: %s", key, exc)
            else:
                if not acquired:
                    raise PatientLockTimeout(f"Timed out waiting for patient {key}")
                renewer = asyncio.create_task(self._keep_alive(lock, key))
                try:
                    yield
                finally:
                    renewer.cancel()
                    await asyncio.wait({renewer})
                    try:
                        await lock.release()
                    except LockError:
                        logger.warning("Patient lock %s expired before release", key)
                return

        async with self._local_lock(key):
            yield

    async def _keep_alive(self, lock, key: str) -> None:
        # Reset the TTL well before it runs out; stops once the lock is lost.
        interval = self._timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await lock.extend(self._timeout, replace_ttl=True)
            except (LockError, RedisError) as exc:
                logger.warning("Could not extend patient lock %s: %s", key, exc)
                return

    @asynccontextmanager
    async def _local_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._local.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._local.pop(key, None)
