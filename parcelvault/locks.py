"""
Per-location locks that keep two backup runs from rotating the same
location at once.

The in-memory lock covers one process (request handlers plus the scheduler
thread); the Redis lock also covers several processes sharing a database.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class BackupLock(Protocol):
    def acquire(self, location_id: str) -> bool:
        ...

    def release(self, location_id: str) -> None:
        ...


@dataclass
class InMemoryBackupLock:
    """Set of held location ids guarded by a thread lock."""

    held: set[str] = field(default_factory=set)

    def __post_init__(self):
        self._guard = threading.Lock()

    def acquire(self, location_id: str) -> bool:
        with self._guard:
            if location_id in self.held:
                return False
            self.held.add(location_id)
            return True

    def release(self, location_id: str) -> None:
        with self._guard:
            self.held.discard(location_id)


@dataclass
class RedisBackupLock:
    """
    Redis lock per location; the TTL frees it if a process dies mid-run.

    Release checks the token redis-py stored on acquire, so a run that
    outlived its TTL cannot free a lock another process now holds.
    """

    url: str
    key_prefix: str = "parcelvault:backup-lock:"
    ttl_seconds: int = 900
    _held: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)
        self._guard = threading.Lock()

    def _key(self, location_id: str) -> str:
        return f"{self.key_prefix}{location_id}"

    def _lock(self, location_id: str):
        return self.client.lock(
            self._key(location_id),
            timeout=self.ttl_seconds,
            blocking=False,
            thread_local=False,
        )

    def acquire(self, location_id: str) -> bool:
        lock = self._lock(location_id)
        try:
            acquired = lock.acquire()
        except redis_exceptions.ConnectionError:
            # Reconnect once; managed Redis drops idle connections.
            self.client = redis.Redis.from_url(self.url)
            lock = self._lock(location_id)
            acquired = lock.acquire()
        if acquired:
            with self._guard:
                self._held[location_id] = lock
        return bool(acquired)

    def release(self, location_id: str) -> None:
        with self._guard:
            lock = self._held.pop(location_id, None)
        if lock is None:
            return
        try:
            try:
                lock.release()
            except redis_exceptions.ConnectionError:
                self.client = redis.Redis.from_url(self.url)
                retry = self._lock(location_id)
                retry.local.token = lock.local.token
                retry.release()
        except redis_exceptions.LockError as exc:
            logger.warning("Backup lock for %s expired before release: %s", location_id, exc)
