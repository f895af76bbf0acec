"""
Error types raised by the convergence and synchronization engine.

Every error carries enough context to name the resource that triggered it.
Raw transport errors (ApiException, OSError, websocket failures) are always
wrapped into one of these types with ``raise ... from e`` so callers only
ever deal with this taxonomy.
"""

from typing import Optional


class KubesyncError(Exception):
    """Base class for all kubesync errors."""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class ResourceNotFoundError(KubesyncError):
    """The requested cluster object does not exist."""
    pass


class WatchTimeoutError(KubesyncError):
    """A watch deadline elapsed without a matching or terminal event."""
    pass


class TerminalStateError(KubesyncError):
    """An observed object reached a failed, cancelled or error state."""

    def __init__(self, message: str, resource: Optional[str] = None, state: Optional[str] = None):
        super().__init__(message, resource)
        self.state = state


class WatchClosedError(KubesyncError):
    """The event stream closed before any terminal or matching event."""
    pass


class ConflictError(KubesyncError):
    """An update was rejected because the object was modified concurrently."""
    pass


class MalformedInputError(KubesyncError, ValueError):
    """A local precondition was violated before any network call was made."""
    pass


class StreamFailureError(KubesyncError):
    """Pipe, tar or remote exec I/O failed."""
    pass


class RemoteCommandError(StreamFailureError):
    """A remote command ran but exited with a non-zero status."""

    def __init__(self, message: str, resource: Optional[str] = None, exit_code: Optional[int] = None):
        super().__init__(message, resource)
        self.exit_code = exit_code
