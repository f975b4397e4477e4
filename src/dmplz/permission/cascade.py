"""Short-lived auto-reject state left behind by a rejection."""

from typing import Optional

from loguru import logger

from ..store import StateStore
from .models import CascadeState, LockKey

CASCADE_TABLE = "permission-cascade"


class CascadeStore:
    """
    Cascade reject markers keyed by lock key.

    Only the negotiation holding the user lock for a key may read or write its
    marker. Expired, malformed or unreadable markers mean "no cascade".
    """

    def __init__(self, store: StateStore, window_seconds: float):
        self.store = store
        self.window_seconds = window_seconds

    def read(self, key: LockKey) -> Optional[CascadeState]:
        record = self.store.read(
            CASCADE_TABLE, str(key), ttl_seconds=self.window_seconds, remove_expired=True
        )
        if record is None:
            return None
        try:
            return CascadeState.from_record(record)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed cascade state for {key}: {e}")
            return None

    def write(self, key: LockKey, state: CascadeState) -> None:
        """
        Raises:
            OSError: If the state file cannot be written
        """
        self.store.write(CASCADE_TABLE, str(key), state.to_record())

    def clear(self, key: LockKey) -> None:
        self.store.delete(CASCADE_TABLE, str(key))
