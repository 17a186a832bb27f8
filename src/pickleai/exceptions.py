"""Error taxonomy for the PickleAI gateway.

Moderation and quota outcomes are not exceptions; they are returned as
``SecurityResult`` values by the gateway.
"""

from __future__ import annotations


class PickleAIError(Exception):
    """Base class for gateway errors."""


class AuthenticationError(PickleAIError):
    """Missing or invalid identity token."""


class ValidationError(PickleAIError):
    """Malformed request payload."""


class UpstreamError(PickleAIError):
    """Upstream model or content call failed."""

    def __init__(self, message: str = "", retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class UpstreamTimeout(UpstreamError):
    """Upstream call exceeded its timeout."""


class PersistenceError(PickleAIError):
    """Cache or context store I/O failed."""


class BlockedURLError(ValidationError):
    """URL uses a disallowed scheme or resolves to a non-public address."""
