"""
Error hierarchy for the dispatch core.

Every error carries a human-readable message and a machine-readable code so
the calling layer can map it to a response without string matching.
"""

from typing import Optional


class DispatchError(Exception):
    """Base class for all dispatch core errors."""

    code: str = "dispatch_error"
    retryable: bool = False

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class InvalidTransition(DispatchError):
    """Requested status change is not permitted from the current state."""

    code = "invalid_transition"

    def __init__(self, from_status: object, to_status: object, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Cannot transition from {_label(from_status)} to {_label(to_status)}"
        )


class NotFound(DispatchError):
    """Referenced request does not exist."""

    code = "not_found"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Delivery request not found: {request_id}")


class RateLimited(DispatchError):
    """The rate limiter denied the action."""

    code = "rate_limited"

    def __init__(self, key: str, retry_after_ms: int):
        self.key = key
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Rate limit exceeded for {key}; retry after {retry_after_ms}ms")


class ConflictError(DispatchError):
    """A concurrent mutation committed first. Fetch fresh state and retry."""

    code = "conflict"
    retryable = True


class InvalidConfig(DispatchError, ValueError):
    """Out-of-domain configuration or parameters. Not retryable."""

    code = "invalid_config"


class PersistenceError(DispatchError):
    """The underlying store failed."""

    code = "persistence_error"


def _label(status: object) -> str:
    return getattr(status, "value", None) or repr(status)
