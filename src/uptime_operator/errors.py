"""Error taxonomy for outbound calls and deletion cleanup.

Remote failures are split by whether a retry can help. Cancellation is kept
apart from remote failures so callers never mistake a shutdown for an API
problem.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ResourceRef

# Error bodies attached to exceptions are truncated to keep logs readable
MAX_ERROR_BODY_CHARS = 500


def _truncate(body: str) -> str:
    body = " ".join(body.split())
    if len(body) > MAX_ERROR_BODY_CHARS:
        return body[:MAX_ERROR_BODY_CHARS] + "..."
    return body


class UptimeOperatorError(Exception):
    """Base class for all operator errors."""

    pass


class RemoteError(UptimeOperatorError):
    """The API answered with an error status."""

    def __init__(self, status_code: int, reason: str = "", body: str = "") -> None:
        self.status_code = status_code
        self.reason = reason
        self.body = body
        status = f"{status_code} {reason}".strip()
        message = f"error code from Uptime Robot API: {status}"
        if body:
            message = f"{message} - {_truncate(body)}"
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class TransientRemoteError(RemoteError):
    """Retryable status (429 or 5xx gateway family)."""

    pass


class PermanentRemoteError(RemoteError):
    """Non-retryable status; surfaced on the first attempt."""

    pass


class TransportError(UptimeOperatorError):
    """No response was received and the failure is not worth retrying."""

    pass


class RequestCancelledError(UptimeOperatorError):
    """The caller's cancel signal or deadline fired before the call finished."""

    pass


class RetriesExhaustedError(UptimeOperatorError):
    """All attempts failed with retryable errors.

    Attributes:
        last_error: The last error observed before giving up.
        attempts: Number of physical attempts made.
    """

    def __init__(self, last_error: Exception, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"max retry attempts exceeded after {attempts} attempts: {last_error}")


class CleanupActionFailedError(UptimeOperatorError):
    """The caller-supplied delete action raised during a cleanup pass."""

    def __init__(self, ref: ResourceRef, cause: Exception) -> None:
        self.ref = ref
        self.cause = cause
        super().__init__(f"cleanup of {ref} failed: {cause}")


class ConflictError(UptimeOperatorError):
    """Optimistic concurrency check failed on a resource update."""

    pass


class ResourceNotFoundError(UptimeOperatorError):
    """The resource record does not exist in the store."""

    pass


class ManifestError(UptimeOperatorError):
    """A stored manifest cannot be read, parsed or validated."""

    pass


def is_not_found(error: BaseException | None) -> bool:
    """Check whether an error means the remote resource is already gone."""
    if error is None:
        return False
    if isinstance(error, RemoteError):
        return error.is_not_found
    if isinstance(error, RetriesExhaustedError):
        return is_not_found(error.last_error)
    return False
