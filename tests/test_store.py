"""Tests for the filesystem state store."""

import os
import time

from dmplz.store import StateStore, safe_key


def test_safe_key_replaces_unsafe_characters():
    assert safe_key("telegram-123/../x y") == "telegram-123____x_y"


def test_write_then_read(tmp_path):
    store = StateStore(tmp_path / "state")

    store.write("session", "s1", {"allowed_tools": ["Bash"]})
    record = store.read("session", "s1")

    assert record["allowed_tools"] == ["Bash"]
    assert isinstance(record["created_at"], float)
    assert store.path_for("session", "s1").name == "dmplz-session-s1.json"


def test_read_missing_is_none(tmp_path):
    assert StateStore(tmp_path).read("session", "absent") is None


def test_read_corrupt_record_is_miss(tmp_path):
    store = StateStore(tmp_path)
    store.path_for("session", "s1").write_text("{not json")

    assert store.read("session", "s1") is None


def test_read_respects_ttl(tmp_path):
    store = StateStore(tmp_path)
    store.write("cascade", "k", {"created_at": time.time() - 10})

    assert store.read("cascade", "k", ttl_seconds=5) is None
    assert store.path_for("cascade", "k").exists()
    assert store.read("cascade", "k", ttl_seconds=60) is not None


def test_read_removes_expired_when_asked(tmp_path):
    store = StateStore(tmp_path)
    store.write("cascade", "k", {"created_at": time.time() - 10})

    assert store.read("cascade", "k", ttl_seconds=5, remove_expired=True) is None
    assert not store.path_for("cascade", "k").exists()


def test_read_without_created_at_is_miss(tmp_path):
    store = StateStore(tmp_path)
    store.path_for("cascade", "k").write_text('{"reason": "x"}')

    assert store.read("cascade", "k", remove_expired=True) is None
    assert not store.path_for("cascade", "k").exists()


def test_try_create_is_exclusive(tmp_path):
    store = StateStore(tmp_path / "state")

    assert store.try_create("lock", "k", {"pid": 1}) is True
    assert store.try_create("lock", "k", {"pid": 2}) is False
    assert store.read("lock", "k")["pid"] == 1


def test_delete(tmp_path):
    store = StateStore(tmp_path)
    store.write("lock", "k", {})

    assert store.delete("lock", "k") is True
    assert store.delete("lock", "k") is False


def test_age(tmp_path):
    store = StateStore(tmp_path)
    assert store.age("lock", "k") is None

    store.write("lock", "k", {})
    old = time.time() - 30
    os.utime(store.path_for("lock", "k"), (old, old))

    assert store.age("lock", "k") >= 29
