"""Structured JSON-lines log of rejected permission requests."""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from ..errors import LogWriteError
from .models import RejectReasonSource
from .reason import mask_sensitive_text

LOCK_TIMEOUT_SECONDS = 2.0
LOCK_RETRY_INTERVAL_SECONDS = 0.1
STALE_LOCK_SECONDS = 30.0  # a crashed appender must not block logging forever


@dataclass(frozen=True)
class RejectLogEntry:
    """One rejected request. The reason is masked when serialized."""

    provider: str
    request_id: str
    tool_name: str
    cwd: str
    reason: str
    reason_source: RejectReasonSource
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_record(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "provider": self.provider,
            "decision": "deny",
            "request_id": self.request_id,
            "tool_name": self.tool_name,
            "cwd": self.cwd,
            "reason": mask_sensitive_text(self.reason),
            "reason_source": self.reason_source.value,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_record(), ensure_ascii=False)


class RejectionLog:
    """
    Append-only JSON Lines log of rejections.

    Features:
    - One JSON object per line, ISO 8601 UTC timestamps
    - Secrets masked before they reach disk
    - Size-based rotation into numbered generations (<path>.1 is newest)
    - Sibling lock file serializes rotate-then-append across processes
    """

    def __init__(
        self,
        log_path: Path,
        rotate_bytes: int,
        max_files: int,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS,
        lock_retry_interval: float = LOCK_RETRY_INTERVAL_SECONDS,
    ):
        """
        Args:
            log_path: Active log file
            rotate_bytes: Rotate once the active file grows past this size
            max_files: Rotated generations to keep (<= 0 truncates instead)
            lock_timeout: How long to wait for the append lock
            lock_retry_interval: Delay between lock attempts
        """
        self.log_path = Path(log_path)
        self.rotate_bytes = rotate_bytes
        self.max_files = max_files
        self.lock_timeout = lock_timeout
        self.lock_retry_interval = lock_retry_interval

    @property
    def lock_path(self) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.lock")

    def generation_path(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _rotate_if_needed(self) -> None:
        """Rotate the active log if it exceeds the configured size."""
        if not self.log_path.exists():
            return
        if self.log_path.stat().st_size <= self.rotate_bytes:
            return

        if self.max_files <= 0:
            with open(self.log_path, "w", encoding="utf-8"):
                pass
            logger.debug(f"Truncated rejection log {self.log_path} (retention disabled)")
            return

        oldest = self.generation_path(self.max_files)
        if oldest.exists():
            oldest.unlink()

        for index in range(self.max_files - 1, 0, -1):
            source = self.generation_path(index)
            if source.exists():
                source.replace(self.generation_path(index + 1))

        self.log_path.replace(self.generation_path(1))
        logger.debug(f"Rotated rejection log {self.log_path}")

    def _try_lock(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(int(time.time() * 1000)))
        return True

    def _clear_stale_lock(self) -> None:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except OSError:
            return
        if age > STALE_LOCK_SECONDS:
            logger.warning(f"Removing stale rejection log lock {self.lock_path}")
            try:
                self.lock_path.unlink()
            except OSError:
                pass

    def _release_lock(self) -> None:
        try:
            self.lock_path.unlink()
        except OSError as e:
            logger.debug(f"Rejection log lock release failed: {e}")

    async def append(self, entry: RejectLogEntry, timeout: Optional[float] = None) -> None:
        """
        Rotate if needed, then append one line, under the log lock.

        Args:
            entry: Rejection to record
            timeout: Caller budget for the lock wait, capped at `lock_timeout`

        Raises:
            LogWriteError: If the lock cannot be taken in time or the write fails
        """
        line = entry.to_json_line()
        lock_budget = self.lock_timeout if timeout is None else min(self.lock_timeout, timeout)
        started = time.monotonic()

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            while True:
                if self._try_lock():
                    break
                waited = time.monotonic() - started
                if waited >= lock_budget:
                    raise LogWriteError("Reject log lock timeout")
                self._clear_stale_lock()
                await asyncio.sleep(min(self.lock_retry_interval, lock_budget - waited))
        except OSError as e:
            raise LogWriteError(f"Reject log lock failed: {e}") from e

        try:
            self._rotate_if_needed()
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise LogWriteError(f"Reject log append failed: {e}") from e
        finally:
            self._release_lock()

    def read_entries(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return up to `limit` most recent entries from the active file."""
        if not self.log_path.exists():
            return []

        entries = []
        with open(self.log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries[-limit:] if limit > 0 else entries
