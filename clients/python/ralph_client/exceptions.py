"""
Ralph Client Exceptions
"""

from __future__ import annotations

from typing import Any, Optional


class RalphClientError(Exception):
    """Base exception for Ralph client errors."""
    pass


class TransportError(RalphClientError):
    """Raised when an RPC call fails.

    Covers network failures, non-success HTTP status, unparseable bodies,
    envelope ``error`` fields and envelopes without a ``result``.
    ``retryable`` is whatever the server asserted; this client never
    retries on its own.
    """

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL",
        retryable: bool = False,
        status: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.status = status
        self.details = details

    def __repr__(self) -> str:
        return (
            f"TransportError(code={self.code!r}, message={self.message!r}, "
            f"retryable={self.retryable}, status={self.status})"
        )


class SubscriptionError(RalphClientError):
    """Raised when a stream subscription cannot be established."""

    def __init__(self, message: str, cause: Optional[TransportError] = None):
        super().__init__(message)
        self.cause = cause


class StreamDecodeError(RalphClientError):
    """Raised when an inbound stream frame cannot be decoded."""
    pass
