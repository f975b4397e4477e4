"""Per-session allow-list of tools approved "for this session"."""

import time
from typing import Any, Dict, Optional

from loguru import logger

from ..store import StateStore

SESSION_TABLE = "session"
SESSION_VALIDITY_SECONDS = 24 * 60 * 60


class SessionCache:
    """
    Tools pre-approved for the rest of an agent session.

    An optimization, not a security boundary: any failure is a cache miss,
    which re-prompts the operator. Stale records are bypassed, not deleted.
    """

    def __init__(self, store: StateStore, validity_seconds: float = SESSION_VALIDITY_SECONDS):
        self.store = store
        self.validity_seconds = validity_seconds

    def _load(self, session_id: str) -> Optional[Dict[str, Any]]:
        record = self.store.read(SESSION_TABLE, session_id, ttl_seconds=self.validity_seconds)
        if record is None or not isinstance(record.get("allowed_tools"), list):
            return None
        return record

    def is_allowed(self, session_id: str, tool_name: str) -> bool:
        cache = self._load(session_id)
        return cache is not None and tool_name in cache["allowed_tools"]

    def record_allowed(self, session_id: str, tool_name: str) -> None:
        """Add a tool to the session allow-list, creating the record if absent."""
        cache = self._load(session_id)
        if cache is None:
            cache = {"session_id": session_id, "allowed_tools": [], "created_at": time.time()}

        if tool_name not in cache["allowed_tools"]:
            cache["allowed_tools"].append(tool_name)

        try:
            self.store.write(SESSION_TABLE, session_id, cache)
        except OSError as e:
            logger.warning(f"Failed to save session cache for {session_id}: {e}")
