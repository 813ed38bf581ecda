"""Short-TTL mutual exclusion backed by Redis.

Lock key format: lock-process:{key}

``acquire_lock`` is a plain ``SET key value NX EX ttl`` and ``release_lock``
drops the key unconditionally. ``hold`` goes through redis-py's token-owned
``Lock`` and only ever releases its own acquisition. Expiry is the backstop
for a crashed holder.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import LockError

from roomrelay.core.errors import LockNotAcquiredError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lock-process:"
DEFAULT_LOCK_TTL = 5


class LockManager:
    """Acquire and release named locks in the ephemeral cache."""

    def __init__(self, redis: Redis, default_ttl: int = DEFAULT_LOCK_TTL) -> None:
        self._redis = redis
        self._default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{LOCK_KEY_PREFIX}{key}"

    async def acquire_lock(self, key: str, ttl: int | None = None) -> bool:
        """Try once to take the lock. Returns False when someone else holds it."""
        result = await self._redis.set(
            self._key(key),
            str(int(time.time() * 1000)),
            nx=True,
            ex=ttl or self._default_ttl,
        )
        return bool(result)

    async def release_lock(self, key: str) -> bool:
        """Drop the lock whoever holds it. Returns False when it had already expired."""
        return await self._redis.delete(self._key(key)) == 1

    async def is_locked(self, key: str) -> bool:
        return await self._redis.exists(self._key(key)) > 0

    @asynccontextmanager
    async def hold(self, key: str, ttl: int | None = None) -> AsyncIterator[None]:
        """Hold ``key`` for the duration of the block.

        The lock carries a per-acquire token, so a holder whose TTL ran out
        never deletes the lock of the next holder.

        Raises:
            LockNotAcquiredError: the lock is held by a concurrent operation.
        """
        lock = self._redis.lock(self._key(key), timeout=ttl or self._default_ttl, blocking=False)
        if not await lock.acquire():
            logger.info("Lock %s is busy.", key)
            raise LockNotAcquiredError(f"Lock {key} is busy")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Lock %s expired before release.", key)
