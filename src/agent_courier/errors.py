"""Exception hierarchy for agent-courier.

A timed-out approval is not an error: ``ApprovalCoordinator.wait`` returns
an ``ApprovalResult`` with ``timed_out=True`` instead of raising.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base class for all agent-courier errors."""


class ConfigurationError(CourierError, ValueError):
    """Raised at startup when configuration is missing or out of range.

    Treat this as fatal: the process should not start with a bad config.
    """


class GatewaySendError(CourierError, RuntimeError):
    """Raised when an outbound chat call fails after all retries.

    The last underlying exception is chained as ``__cause__``.

    Attributes:
        operation: Gateway operation that failed (e.g. "send", "edit").
        attempts: How many attempts were made before giving up.
    """

    def __init__(self, operation: str, attempts: int, message: str) -> None:
        super().__init__(f"{operation} failed after {attempts} attempt(s): {message}")
        self.operation = operation
        self.attempts = attempts


class NotFoundError(CourierError, LookupError):
    """Raised when waiting on an approval id that is unknown, resolved, or swept.

    Recoverable: callers should treat it as "nothing to wait for".
    """


class AlreadyAwaitedError(CourierError, RuntimeError):
    """Raised when a second ``wait()`` targets an approval that already has a waiter."""
