"""Permission negotiation: operator approval of agent tool calls over chat."""

from .models import (
    CascadeState,
    Decision,
    LockKey,
    NegotiationOutcome,
    NegotiationState,
    PermissionRequest,
    RejectReasonSource,
)
from .negotiator import Negotiation, PermissionNegotiator, create_lock_key
from .reject_log import RejectionLog, RejectLogEntry

__all__ = [
    "CascadeState",
    "Decision",
    "LockKey",
    "Negotiation",
    "NegotiationOutcome",
    "NegotiationState",
    "PermissionNegotiator",
    "PermissionRequest",
    "RejectLogEntry",
    "RejectReasonSource",
    "RejectionLog",
    "create_lock_key",
]
