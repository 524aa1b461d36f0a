"""
Per-slot-key locking for the matching engine
Serialises every operation touching one (provider, date, time) key.
In-memory locks cover a single process; Redis locks cover several workers.
"""

import logging
import os
import time
from contextlib import contextmanager
from threading import Lock
from typing import Optional

import redis
from fastapi import HTTPException
from redis.exceptions import LockError

from .config import REDIS_URL, SLOT_LOCK_BACKEND, SLOT_LOCK_TTL_SECONDS, SLOT_LOCK_WAIT_SECONDS

logger = logging.getLogger(__name__)

# Redis connection
redis_client: Optional[redis.Redis] = None

# In-memory lock registry
# Format: {key: [threading.Lock, holders_and_waiters]}
memory_locks: dict[str, list] = {}
registry_lock = Lock()

LOCK_PREFIX = "slot-lock:"


def get_redis_client() -> redis.Redis:
    """Get or create the Redis client used for shared slot locks"""
    global redis_client

    if redis_client is None:
        logger.info("🔄 Initializing Redis connection for slot locks...")
        if REDIS_URL:
            redis_client = redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=15,
                socket_timeout=30,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=20,
            )
        else:
            redis_host = os.getenv("REDIS_HOST", "localhost")
            redis_port = int(os.getenv("REDIS_PORT", "6379"))
            redis_client = redis.Redis(
                host=redis_host,
                port=redis_port,
                password=os.getenv("REDIS_PASSWORD", None),
                db=int(os.getenv("REDIS_DB", "0")),
                ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
                decode_responses=True,
                socket_connect_timeout=15,
                socket_timeout=30,
                retry_on_timeout=True,
                max_connections=20,
            )
        try:
            redis_client.ping()
            logger.info("✅ Redis connected for slot locks")
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            redis_client = None
            raise

    return redis_client


def _conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail="This time slot is being updated by another request. Please retry.",
    )


class MemoryKeyLock:
    """A named threading.Lock that is dropped from the registry once unused"""

    def __init__(self, key: str):
        self.key = key
        with registry_lock:
            entry = memory_locks.setdefault(key, [Lock(), 0])
            entry[1] += 1
            self._lock = entry[0]

    def acquire(self, wait: float) -> bool:
        acquired = self._lock.acquire(timeout=wait)
        if not acquired:
            self._forget()
        return acquired

    def release(self) -> None:
        self._lock.release()
        self._forget()

    def _forget(self) -> None:
        with registry_lock:
            entry = memory_locks.get(self.key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                memory_locks.pop(self.key, None)


class RedisKeyLock:
    """redis-py Lock with a TTL so a crashed worker cannot hold a key forever"""

    def __init__(self, key: str):
        self.key = key
        self._lock = get_redis_client().lock(
            f"{LOCK_PREFIX}{key}",
            timeout=SLOT_LOCK_TTL_SECONDS,
            blocking=True,
        )

    def acquire(self, wait: float) -> bool:
        return bool(self._lock.acquire(blocking_timeout=wait))

    def release(self) -> None:
        try:
            self._lock.release()
        except LockError as e:
            # TTL expired while we held it; the write already committed or rolled back
            logger.warning(f"⚠️ Slot lock {self.key} expired before release: {e}")


def _make_lock(key: str):
    if SLOT_LOCK_BACKEND == "redis":
        return RedisKeyLock(key)
    return MemoryKeyLock(key)


@contextmanager
def slot_lock(*keys: str, wait: Optional[float] = None):
    """
    Hold the locks for the given slot keys, in the order given.

    Callers must always pass keys in a consistent order (provider-day key,
    then provider key, then ANY key). Raises 409 if a key stays busy for
    longer than SLOT_LOCK_WAIT_SECONDS.
    """
    wait = SLOT_LOCK_WAIT_SECONDS if wait is None else wait
    held = []
    started = time.monotonic()
    try:
        for key in dict.fromkeys(keys):  # de-duplicate, keep order
            lock = _make_lock(key)
            if not lock.acquire(wait):
                logger.warning(f"⚠️ Timed out waiting {wait}s for slot key {key}")
                raise _conflict()
            held.append(lock)
        logger.debug(f"🔒 Locked {list(keys)} in {(time.monotonic() - started) * 1000:.1f}ms")
        yield
    finally:
        for lock in reversed(held):
            lock.release()
