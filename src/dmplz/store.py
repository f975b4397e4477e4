"""Filesystem key-value store with per-record validity windows.

Backs the user lock tokens, cascade reject state, session allow-list cache and
the expired-prompt registry. Every table is a set of small JSON files under one
state directory. The store is advisory: a missing, corrupt or expired record is
a miss, and callers must degrade toward re-prompting the operator.
"""

import json
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def safe_key(key: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with '_'."""
    return _UNSAFE_KEY_CHARS.sub("_", key)


class StateStore:
    """
    Tables of JSON records keyed by string, stored one file per record.

    Records always carry a numeric `created_at` (epoch seconds). Reads accept a
    validity window; records older than the window are treated as absent.
    """

    def __init__(self, root: Path, prefix: str = "dmplz"):
        self.root = Path(root)
        self.prefix = prefix

    def path_for(self, table: str, key: str) -> Path:
        return self.root / f"{self.prefix}-{table}-{safe_key(key)}.json"

    def read(
        self,
        table: str,
        key: str,
        ttl_seconds: Optional[float] = None,
        remove_expired: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Read a record if it exists and is still inside its validity window.

        Args:
            table: Table name
            key: Record key
            ttl_seconds: Validity window measured from `created_at` (None = forever)
            remove_expired: Delete records that are expired or lack `created_at`

        Returns:
            The record, or None on miss, corruption or expiry
        """
        path = self.path_for(table, key)
        if not path.exists():
            return None

        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable {table} record {path.name}: {e}")
            return None

        created_at = record.get("created_at") if isinstance(record, dict) else None
        if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
            if remove_expired:
                self.delete(table, key)
            return None

        if ttl_seconds is not None and time.time() - created_at > ttl_seconds:
            if remove_expired:
                self.delete(table, key)
            return None

        return record

    def write(self, table: str, key: str, record: Dict[str, Any]) -> None:
        """
        Replace a record atomically.

        A `created_at` timestamp is added when the record does not carry one.

        Raises:
            OSError: If the state directory cannot be written
        """
        payload = dict(record)
        payload.setdefault("created_at", time.time())

        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(table, key)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def try_create(self, table: str, key: str, record: Dict[str, Any]) -> bool:
        """
        Create a record only if no record exists for the key.

        Returns:
            True if this call created the record, False if it already existed

        Raises:
            OSError: On any failure other than the record already existing
        """
        payload = dict(record)
        payload.setdefault("created_at", time.time())

        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(table, key)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(payload))
        return True

    def delete(self, table: str, key: str) -> bool:
        """
        Remove a record. Removal failures are logged and swallowed.

        Returns:
            True if a record was removed
        """
        path = self.path_for(table, key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to remove {table} record {path.name}: {e}")
            return False

    def age(self, table: str, key: str) -> Optional[float]:
        """Seconds since the record file was last written, or None if absent."""
        try:
            return time.time() - self.path_for(table, key).stat().st_mtime
        except OSError:
            return None
