"""
SPARQL Gateway - Error taxonomy.
Every failure the core raises on purpose is a GatewayError. The `retryable`
flag tells the retry loops (batch loader, update channel) whether another
attempt can change the outcome.
"""

from __future__ import annotations

__all__ = [
    "GatewayError",
    "ParseError",
    "UnsupportedOperationType",
    "TransientStorageError",
    "ExhaustedRetryError",
    "QueryTimeoutError",
    "AuthorizationError",
    "TransactionStateError",
    "is_retryable",
]


class GatewayError(Exception):
    """Base class for all gateway errors."""

    retryable = False


class ParseError(GatewayError):
    """Operation text matched neither the query nor the update grammar."""


class UnsupportedOperationType(GatewayError):
    """A parsed operation has a result shape the gateway does not serve."""


class TransientStorageError(GatewayError):
    """Storage failure presumed recoverable (lock contention, transient I/O)."""

    retryable = True


class ExhaustedRetryError(GatewayError):
    """Retry bound reached for one unit of work."""

    def __init__(self, message: str, attempts: int, last_error: BaseException | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class QueryTimeoutError(GatewayError, TimeoutError):
    """A read exceeded its allotted duration and was aborted."""


class AuthorizationError(GatewayError):
    """Caller lacks a role permitted to submit updates."""


class TransactionStateError(GatewayError):
    """A transaction handle was used outside its open state."""


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are retried; gateway errors only when flagged."""
    if isinstance(exc, GatewayError):
        return exc.retryable
    return True
