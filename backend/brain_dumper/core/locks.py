"""
Per-key async locks, in-process and Redis-backed.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import LockError
import structlog

from ..config import settings
from .exceptions import TransientNetworkError

logger = structlog.get_logger(__name__)


class KeyedLock:
    """
    Serializes work per key while letting different keys run in parallel.

    Entries are reference counted and dropped once the last holder or waiter
    leaves, so the registry never grows with the number of keys seen and no
    lock outlives the event loop that created it.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._refcounts: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
            self._refcounts[key] = 0
        self._refcounts[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def active_keys(self) -> List[Hashable]:
        return list(self._locks)


class RedisKeyedLock:
    """
    Per-key lock shared by every process that talks to the same Redis.

    The in-process ``KeyedLock`` is taken first so coroutines of one process
    queue locally instead of polling Redis. The Redis lock carries a timeout
    so a crashed holder cannot block the key forever.
    """

    def __init__(self, namespace: str, redis_client=None, redis_url: Optional[str] = None,
                 timeout: Optional[float] = None, blocking_timeout: Optional[float] = None):
        self.namespace = namespace
        self.redis_client = redis_client
        self.redis_url = redis_url or settings.REDIS_URL
        self.timeout = timeout if timeout is not None else settings.SYNC_LOCK_TIMEOUT_SECONDS
        self.blocking_timeout = blocking_timeout if blocking_timeout is not None else settings.SYNC_LOCK_WAIT_SECONDS
        self._local = KeyedLock()

    def lock_name(self, key: Tuple[str, ...]) -> str:
        return ":".join([self.namespace, *key])

    @asynccontextmanager
    async def hold(self, key: Tuple[str, ...]):
        async with self._local.hold(key):
            # Celery tasks run each body in a fresh event loop; a pooled client must not outlive it
            client = self.redis_client or redis.from_url(self.redis_url)
            name = self.lock_name(key)
            lock = client.lock(name, timeout=self.timeout, blocking_timeout=self.blocking_timeout)
            try:
                if not await lock.acquire():
                    raise TransientNetworkError(f"Timed out waiting for lock {name}")
                try:
                    yield
                finally:
                    try:
                        await lock.release()
                    except LockError as e:
                        logger.warning("Lock expired before release", lock=name, error=str(e))
            finally:
                if self.redis_client is None:
                    await client.aclose()

    def locked(self, key: Tuple[str, ...]) -> bool:
        return self._local.locked(key)


def cursor_lock(redis_client=None):
    """Lock guarding sync cursor read-fetch-write per (user, calendar)."""
    if redis_client is None and settings.SYNC_LOCK_BACKEND == "local":
        return KeyedLock()
    return RedisKeyedLock("sync-cursor", redis_client=redis_client)
