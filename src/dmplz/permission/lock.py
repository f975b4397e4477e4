"""Per-operator mutual exclusion for permission negotiations."""

import asyncio
import os
import time
import uuid
from typing import Optional

from loguru import logger

from ..errors import LockTimeout
from ..store import StateStore
from .models import LockKey

LOCK_TABLE = "permission-lock"
POLL_INTERVAL_SECONDS = 0.2


class LockHandle:
    """Held user lock. `release()` is idempotent and never raises."""

    def __init__(self, store: StateStore, key: LockKey, token: str):
        self._store = store
        self.key = key
        self.token = token
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        # The token may have been cleared as stale and taken by another holder
        record = self._store.read(LOCK_TABLE, str(self.key))
        if record is not None and record.get("token") != self.token:
            logger.warning(f"Permission lock {self.key} is held by another negotiation, not releasing")
            return
        self._store.delete(LOCK_TABLE, str(self.key))
        logger.debug(f"Released permission lock {self.key}")

    async def __aenter__(self) -> "LockHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class UserLock:
    """
    Filesystem token lock keyed by (provider, chat, user).

    Creating the token is exclusive. A token older than the caller's timeout
    belongs to a crashed holder and is force-cleared.
    """

    def __init__(self, store: StateStore, poll_interval: float = POLL_INTERVAL_SECONDS):
        self.store = store
        self.poll_interval = poll_interval

    def try_acquire(self, key: LockKey, stale_after: float) -> Optional[LockHandle]:
        """
        Single acquisition attempt.

        Args:
            key: Operator lock key
            stale_after: Token age (seconds) after which the holder is presumed dead

        Returns:
            LockHandle if acquired, None if another holder exists
        """
        token = uuid.uuid4().hex
        created = self.store.try_create(
            LOCK_TABLE,
            str(key),
            {"created_at": time.time(), "pid": os.getpid(), "token": token},
        )
        if created:
            logger.debug(f"Acquired permission lock {key}")
            return LockHandle(self.store, key, token)

        age = self.store.age(LOCK_TABLE, str(key))
        if age is not None and age > stale_after:
            logger.warning(f"Clearing stale permission lock {key} (age {age:.1f}s)")
            self.store.delete(LOCK_TABLE, str(key))
        return None

    async def acquire(self, key: LockKey, timeout: float, request_id: str = "") -> LockHandle:
        """
        Wait for the lock, polling until acquired or `timeout` elapses.

        Args:
            key: Operator lock key
            timeout: Maximum wait in seconds (also the staleness threshold)
            request_id: Request waiting for the lock, for the timeout error

        Returns:
            LockHandle for the acquired lock

        Raises:
            LockTimeout: If the timeout elapsed before the lock was free
        """
        started = time.monotonic()
        while True:
            handle = self.try_acquire(key, stale_after=timeout)
            if handle is not None:
                return handle

            remaining = timeout - (time.monotonic() - started)
            if remaining <= 0:
                raise LockTimeout(request_id, str(key))
            await asyncio.sleep(min(self.poll_interval, remaining))
