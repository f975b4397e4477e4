"""Data models for permission negotiation."""

import os
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


class RejectReasonSource(str, Enum):
    """Where a rejection reason came from."""

    USER_INPUT = "user_input"
    EXPLICIT_SKIP = "explicit_skip"
    TIMEOUT = "timeout"


class Decision(str, Enum):
    """Terminal decision returned to the hook entry point."""

    APPROVE = "approve"
    APPROVE_SESSION = "approve_session"
    REJECT = "reject"


class NegotiationState(str, Enum):
    """States of one permission negotiation."""

    RECEIVED = "received"
    WAITING_LOCK = "waiting_lock"
    WAITING_DECISION = "waiting_decision"
    WAITING_REASON = "waiting_reason"
    APPROVED = "approved"
    APPROVED_SESSION = "approved_session"
    CASCADE_REJECTED = "cascade_rejected"
    REJECTED_WITH_REASON = "rejected_with_reason"
    REJECTED_NO_REASON = "rejected_no_reason"
    LOCK_TIMEOUT = "lock_timeout"
    EXPIRED = "expired"


TRANSITIONS: Dict[NegotiationState, FrozenSet[NegotiationState]] = {
    NegotiationState.RECEIVED: frozenset(
        {NegotiationState.APPROVED, NegotiationState.WAITING_LOCK}
    ),
    NegotiationState.WAITING_LOCK: frozenset(
        {
            NegotiationState.WAITING_DECISION,
            NegotiationState.CASCADE_REJECTED,
            NegotiationState.LOCK_TIMEOUT,
        }
    ),
    NegotiationState.WAITING_DECISION: frozenset(
        {
            NegotiationState.APPROVED,
            NegotiationState.APPROVED_SESSION,
            NegotiationState.WAITING_REASON,
            NegotiationState.EXPIRED,
        }
    ),
    NegotiationState.WAITING_REASON: frozenset(
        {
            NegotiationState.REJECTED_WITH_REASON,
            NegotiationState.REJECTED_NO_REASON,
            NegotiationState.EXPIRED,
        }
    ),
}

TERMINAL_STATES: FrozenSet[NegotiationState] = frozenset(
    state for state in NegotiationState if state not in TRANSITIONS
)


def can_transition(current: NegotiationState, target: NegotiationState) -> bool:
    """Check whether `current -> target` is a legal transition."""
    return target in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class LockKey:
    """
    Identifies the operator whose decisions must be serialized.

    Attributes:
        provider: Messaging platform
        chat_id: Chat or channel that receives permission prompts
        user_id: Optional per-user id (Discord DM recipient)
    """

    provider: str
    chat_id: str
    user_id: Optional[str] = None

    def __str__(self) -> str:
        user_suffix = f"-{self.user_id}" if self.user_id else ""
        return f"{self.provider}-{self.chat_id}{user_suffix}"


def generate_request_id() -> str:
    """Generate a request id of the form request-<epoch ms>-<8 random chars>."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=8))
    return f"request-{int(time.time() * 1000)}-{suffix}"


def derive_session_id(
    session_id: Optional[str],
    cwd: str,
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Resolve the agent session id.

    Order: explicit id, CLAUDE_SESSION_ID, then a cwd-derived id so repeated
    requests from one working directory share a session.
    """
    if session_id:
        return session_id
    env = os.environ if environ is None else environ
    env_session = env.get("CLAUDE_SESSION_ID")
    if env_session:
        return env_session
    return f"session-{cwd}"


@dataclass
class PermissionRequest:
    """
    One in-flight approval negotiation.

    Attributes:
        request_id: Stable id shared by the chat message trail and the log
        tool_name: Tool the agent wants to run
        tool_input: Tool arguments (rendered into the prompt, never logged)
        cwd: Agent working directory
        session_id: Agent session for the allow-list cache
        deadline: Absolute time.monotonic() value the negotiation must finish by
    """

    request_id: str
    tool_name: str
    tool_input: Dict[str, Any]
    cwd: str
    session_id: str
    deadline: float

    @classmethod
    def create(
        cls,
        tool_name: str,
        tool_input: Optional[Dict[str, Any]],
        cwd: str,
        timeout_seconds: float,
        request_id: Optional[str] = None,
        session_id: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "PermissionRequest":
        """
        Build a request whose deadline is `timeout_seconds` from now.

        Raises:
            ValueError: If tool_name is empty or timeout_seconds <= 0
        """
        if not tool_name or not tool_name.strip():
            raise ValueError("tool_name must not be empty")
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")

        return cls(
            request_id=request_id or generate_request_id(),
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
            cwd=cwd,
            session_id=derive_session_id(session_id, cwd, environ),
            deadline=time.monotonic() + timeout_seconds,
        )

    def remaining(self) -> float:
        """Seconds left until the deadline (never negative)."""
        return max(self.deadline - time.monotonic(), 0.0)

    def is_expired(self) -> bool:
        return time.monotonic() >= self.deadline


@dataclass(frozen=True)
class NegotiationOutcome:
    """
    Terminal decision of a negotiation.

    `reason` is the normalized, unmasked text forwarded to the agent. Only
    REJECT outcomes carry a reason source.
    """

    decision: Decision
    request_id: str
    state: NegotiationState
    reason: str = ""
    reason_source: Optional[RejectReasonSource] = None
    prompted: bool = True

    @property
    def approved(self) -> bool:
        return self.decision in (Decision.APPROVE, Decision.APPROVE_SESSION)


@dataclass
class CascadeState:
    """Auto-reject marker left by a rejection for the same lock key."""

    reason: str
    reason_source: RejectReasonSource
    request_id: str
    tool_name: str
    created_at: float = field(default_factory=time.time)

    def to_record(self) -> Dict[str, Any]:
        return {
            "created_at": self.created_at,
            "reason": self.reason,
            "reason_source": self.reason_source.value,
            "request_id": self.request_id,
            "tool_name": self.tool_name,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CascadeState":
        """
        Raises:
            ValueError: If the record carries an unknown reason source
            KeyError: If a required field is missing
        """
        return cls(
            reason=str(record.get("reason", "")),
            reason_source=RejectReasonSource(record["reason_source"]),
            request_id=str(record.get("request_id", "")),
            tool_name=str(record.get("tool_name", "")),
            created_at=float(record["created_at"]),
        )
