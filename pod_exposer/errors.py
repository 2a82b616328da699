"""Errors raised by the Pod Exposer."""

from typing import Optional

from kubernetes.client.rest import ApiException


class PodExposerError(Exception):
    """Base class for all Pod Exposer errors."""


class RemoteError(PodExposerError):
    """A call against the Kubernetes API failed."""
    
    def __init__(self, op: str, cause: Optional[BaseException] = None):
        self.op = op
        self.cause = cause
        super().__init__(f"{op} failed: {cause}")
    
    @property
    def status(self) -> Optional[int]:
        """HTTP status of the underlying API error, if there was one."""
        return getattr(self.cause, "status", None)


class AlreadyExistsError(RemoteError):
    """The object to create already exists (HTTP 409)."""


class NotFoundError(RemoteError):
    """The object to read or delete does not exist (HTTP 404)."""


class SyncTimeoutError(PodExposerError):
    """The initial listing was not delivered in time."""


class WatchClosedError(PodExposerError):
    """The pod watch was stopped or could not be re-established."""


def to_remote_error(op: str, exc: BaseException) -> RemoteError:
    """
    Wrap an exception raised by the Kubernetes client.
    
    Args:
        op: Name of the failed operation
        exc: The exception raised by the client or transport
    
    Returns:
        RemoteError, or the matching sub-kind for 404 and 409 responses
    """
    if isinstance(exc, ApiException):
        if exc.status == 404:
            return NotFoundError(op, exc)
        if exc.status == 409:
            return AlreadyExistsError(op, exc)
    return RemoteError(op, exc)
