"""Error taxonomy for endpoint calls and reconciliation outcomes.

Endpoint adapters raise the EndpointError subclasses below. The executor
classifies them into transient (retried) and terminal (failed at once)
write errors. Only connectivity and authorization failures during
collection are allowed to abort a run; everything else is absorbed into
per-entry status.
"""

from __future__ import annotations


class EndpointError(Exception):
    """Base class for failures reported by a management endpoint."""

    pass


class ConnectivityError(EndpointError):
    """Raised when the endpoint cannot be reached."""

    pass


class AuthorizationError(EndpointError):
    """Raised when the session is not authenticated or login fails."""

    pass


class NotFoundError(EndpointError):
    """Raised when the addressed entity no longer exists."""

    pass


class ConflictError(EndpointError):
    """Raised when the entity is locked by another task or session."""

    pass


class EndpointPermissionError(EndpointError):
    """Raised when the session lacks the privilege for the operation."""

    pass


class EndpointTimeoutError(EndpointError):
    """Raised when an endpoint call or task does not finish in time."""

    pass


class RateLimitedError(EndpointError):
    """Raised when the endpoint throttles the caller."""

    pass


class InvalidValueError(EndpointError):
    """Raised when the endpoint rejects the value or field."""

    pass


class TransientWriteError(Exception):
    """A write failure worth retrying."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = 0


class TerminalWriteError(Exception):
    """A write failure that retrying cannot fix."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = 0


class UnconfirmedWriteError(TerminalWriteError):
    """A write that timed out and may still land on the endpoint.

    Never retried: a second write could race the first one.
    """

    pass


class VerificationMismatch(Exception):
    """Raised when a re-read value differs from the value written."""

    def __init__(self, entity_id: str, expected: str | None, observed: str | None) -> None:
        super().__init__(
            f"Entity '{entity_id}' reads {observed!r} after write, expected {expected!r}"
        )
        self.entity_id = entity_id
        self.expected = expected
        self.observed = observed


# Errors that a later attempt may not hit again
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    EndpointTimeoutError,
    RateLimitedError,
    ConflictError,
    ConnectivityError,
    TimeoutError,
)

# Errors where the entity, privilege or value is simply wrong
TERMINAL_ERRORS: tuple[type[BaseException], ...] = (
    EndpointPermissionError,
    AuthorizationError,
    NotFoundError,
    InvalidValueError,
)


def classify_write_error(error: BaseException) -> TransientWriteError | TerminalWriteError:
    """Classify an endpoint failure as transient or terminal.

    Unknown exception types are terminal.

    Args:
        error: Exception raised by an endpoint call.

    Returns:
        TransientWriteError or TerminalWriteError wrapping the original.
    """
    if isinstance(error, TransientWriteError | TerminalWriteError):
        return error
    message = f"{type(error).__name__}: {error}"
    if isinstance(error, TRANSIENT_ERRORS):
        return TransientWriteError(message, cause=error)
    return TerminalWriteError(message, cause=error)


def is_fatal_collection_error(error: BaseException) -> bool:
    """Check whether an error during collection must abort the run."""
    return isinstance(error, ConnectivityError | AuthorizationError)
