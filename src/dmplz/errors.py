"""Exception hierarchy for DM-Plz."""

from typing import Optional


class DmPlzError(Exception):
    """Base class for all DM-Plz errors."""


class ConfigError(DmPlzError):
    """Raised when environment configuration is missing or invalid."""


class ProviderError(DmPlzError):
    """Raised when a chat platform API call fails.

    Attributes:
        provider: Provider name ("telegram" or "discord")
        status_code: HTTP status code, if the failure came from a response
        description: Platform error description
    """

    def __init__(
        self,
        provider: str,
        description: str,
        status_code: Optional[int] = None,
    ):
        self.provider = provider
        self.description = description
        self.status_code = status_code
        if status_code is not None:
            message = f"{provider} API error ({status_code}): {description}"
        else:
            message = f"{provider} API error: {description}"
        super().__init__(message)


class NoDecision(DmPlzError):
    """Base class for negotiations that ended without an operator decision.

    A non-decision is never an approval and never an explicit rejection.
    Callers decide how to treat it.
    """

    def __init__(self, request_id: str, message: str):
        self.request_id = request_id
        super().__init__(message)


class LockTimeout(NoDecision):
    """Another negotiation for the same operator held the lock past the deadline."""

    def __init__(self, request_id: str, lock_key: str):
        self.lock_key = lock_key
        super().__init__(request_id, f"Timeout waiting for permission lock ({lock_key})")


class DecisionExpired(NoDecision):
    """The operator did not answer the decision prompt before the deadline."""

    def __init__(self, request_id: str):
        super().__init__(request_id, f"Permission request {request_id} expired")


class LogWriteError(DmPlzError):
    """Raised when the rejection log cannot be locked, rotated or appended."""
