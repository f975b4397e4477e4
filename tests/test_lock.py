"""Tests for the per-operator user lock."""

import asyncio
import os
import time

import pytest

from dmplz.errors import LockTimeout
from dmplz.permission.lock import LOCK_TABLE, UserLock
from dmplz.permission.models import LockKey


def test_lock_key_format():
    assert str(LockKey("telegram", "123")) == "telegram-123"
    assert str(LockKey("discord", "456", "789")) == "discord-456-789"


def test_try_acquire_is_exclusive(state_store, lock_key):
    lock = UserLock(state_store)

    handle = lock.try_acquire(lock_key, stale_after=60)

    assert handle is not None
    assert lock.try_acquire(lock_key, stale_after=60) is None

    handle.release()
    assert lock.try_acquire(lock_key, stale_after=60) is not None


def test_release_is_idempotent(state_store, lock_key):
    handle = UserLock(state_store).try_acquire(lock_key, stale_after=60)

    handle.release()
    handle.release()

    assert handle.released


def test_different_keys_do_not_contend(state_store):
    lock = UserLock(state_store)

    assert lock.try_acquire(LockKey("telegram", "1"), stale_after=60) is not None
    assert lock.try_acquire(LockKey("telegram", "2"), stale_after=60) is not None


def test_stale_token_is_cleared(state_store, lock_key):
    """A token older than the staleness threshold belongs to a dead holder."""
    lock = UserLock(state_store)
    state_store.try_create(LOCK_TABLE, str(lock_key), {"pid": 99999})
    old = time.time() - 120
    os.utime(state_store.path_for(LOCK_TABLE, str(lock_key)), (old, old))

    assert lock.try_acquire(lock_key, stale_after=60) is None
    assert lock.try_acquire(lock_key, stale_after=60) is not None


def test_late_release_keeps_new_holders_token(state_store, lock_key):
    """A holder whose token was cleared as stale must not release its successor."""
    lock = UserLock(state_store)
    old_holder = lock.try_acquire(lock_key, stale_after=60)
    old = time.time() - 120
    os.utime(state_store.path_for(LOCK_TABLE, str(lock_key)), (old, old))
    assert lock.try_acquire(lock_key, stale_after=60) is None
    new_holder = lock.try_acquire(lock_key, stale_after=60)
    assert new_holder is not None

    old_holder.release()

    assert state_store.read(LOCK_TABLE, str(lock_key))["token"] == new_holder.token
    assert lock.try_acquire(lock_key, stale_after=60) is None

    new_holder.release()
    assert state_store.read(LOCK_TABLE, str(lock_key)) is None


@pytest.mark.asyncio
async def test_acquire_waits_for_release(state_store, lock_key):
    lock = UserLock(state_store, poll_interval=0.02)
    first = await lock.acquire(lock_key, timeout=1.0)

    async def release_later():
        await asyncio.sleep(0.1)
        first.release()

    started = time.monotonic()
    releaser = asyncio.create_task(release_later())
    second = await lock.acquire(lock_key, timeout=1.0)
    await releaser

    assert time.monotonic() - started >= 0.09
    second.release()


@pytest.mark.asyncio
async def test_acquire_times_out(state_store, lock_key, monkeypatch):
    lock = UserLock(state_store, poll_interval=0.02)
    await lock.acquire(lock_key, timeout=1.0)
    monkeypatch.setattr(state_store, "age", lambda table, key: 0.0)

    with pytest.raises(LockTimeout) as exc_info:
        await lock.acquire(lock_key, timeout=0.1, request_id="request-2")

    assert exc_info.value.request_id == "request-2"
    assert exc_info.value.lock_key == str(lock_key)


@pytest.mark.asyncio
async def test_handle_as_context_manager(state_store, lock_key):
    lock = UserLock(state_store)

    async with await lock.acquire(lock_key, timeout=1.0) as handle:
        assert not handle.released

    assert handle.released
    assert lock.try_acquire(lock_key, stale_after=60) is not None
