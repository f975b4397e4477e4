"""Rejection reason normalization, masking and agent-facing messages."""

import re
from typing import Iterable

from .models import RejectReasonSource

SECRET_KEY_VALUE_PATTERN = re.compile(
    r"(api[_-]?key|token|password|secret|access[_-]?key|authorization)\s*[:=]\s*([^\s,]+)",
    re.IGNORECASE,
)
LONG_TOKEN_PATTERN = re.compile(r"([A-Fa-f0-9]{32,}|[A-Za-z0-9+/=]{32,})")

MASK_MARKER = "***"


def normalize_reason(reason: str, max_chars: int) -> str:
    """Trim whitespace and truncate to `max_chars` (no ellipsis)."""
    trimmed = (reason or "").strip()
    if len(trimmed) <= max_chars:
        return trimmed
    return trimmed[:max_chars]


def mask_token(token: str) -> str:
    """Keep the first and last 4 characters, or fully mask short values."""
    if len(token) <= 8:
        return MASK_MARKER
    return f"{token[:4]}...{token[-4:]}"


def mask_sensitive_text(text: str) -> str:
    """
    Mask likely secrets before persistence.

    Masks `key=value` / `key: value` pairs with a secret-ish key, then any
    standalone run of 32+ hex or base64-like characters.
    """
    masked = SECRET_KEY_VALUE_PATTERN.sub(
        lambda match: f"{match.group(1)}={mask_token(match.group(2))}", text
    )
    return LONG_TOKEN_PATTERN.sub(lambda match: mask_token(match.group(0)), masked)


def is_no_reason_keyword(text: str, keywords: Iterable[str]) -> bool:
    """Case-insensitive, whitespace-trimmed match against no-reason keywords."""
    normalized = (text or "").strip().lower()
    if not normalized:
        return False
    return any(normalized == keyword.strip().lower() for keyword in keywords)


def resolve_reason_source(
    reason: str, reason_source: RejectReasonSource
) -> RejectReasonSource:
    """Final reason source: an empty typed reason counts as an explicit skip."""
    if reason_source == RejectReasonSource.TIMEOUT:
        return RejectReasonSource.TIMEOUT
    if reason_source == RejectReasonSource.USER_INPUT and not reason:
        return RejectReasonSource.EXPLICIT_SKIP
    return reason_source


def build_deny_message(reason: str, reason_source: RejectReasonSource) -> str:
    """Deny message handed back to the agent (reason is not masked)."""
    if reason_source == RejectReasonSource.TIMEOUT:
        return "User rejected the request. (No reason provided: timeout)"
    if reason_source == RejectReasonSource.EXPLICIT_SKIP or not reason:
        return "User rejected the request. (No reason provided)"
    return f"User rejected the request. Reason: {reason}"


def build_rejection_system_message(reason: str, reason_source: RejectReasonSource) -> str:
    """System message turning the rejection reason into the next instruction."""
    trimmed = (reason or "").strip()

    if reason_source == RejectReasonSource.USER_INPUT and trimmed:
        return "\n".join(
            [
                "The user rejected the permission request.",
                f"Next instruction: {trimmed}",
                "Treat this as a new user request. Stop the current attempt "
                "and re-plan before making further tool calls.",
            ]
        )

    return "\n".join(
        [
            "The user rejected the permission request.",
            "No reason was provided. Stop the current attempt and ask for "
            "the next instruction via AskUserQuestion.",
        ]
    )
