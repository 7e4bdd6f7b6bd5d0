"""
Error taxonomy for progress synchronization.

Every network-originating failure is translated into one of these classes
at the SyncClient boundary; nothing above the client sees raw transport
exceptions or server payload shapes.

- ValidationError: required identifiers missing, never queued
- NetworkError: transport failure or timeout, queued and retried
- NotFoundError: lesson not provisioned server-side yet, queued silently
- RecoverableServerError: 5xx, queued and retried
- RateLimitedError: 429, queued, drain paused
- ClientError: other 4xx, optimistic update reverted
"""


class ProgressSyncError(Exception):
    """Base class for all classified progress sync failures."""

    def __init__(
        self, message: str, *, status: int | None = None, code: str | None = None
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    @property
    def recoverable(self) -> bool:
        """Whether the failed write should stay queued for another attempt."""
        return True


class ValidationError(ProgressSyncError):
    """Raised when an update is missing required identifiers."""

    @property
    def recoverable(self) -> bool:
        return False


class NetworkError(ProgressSyncError):
    """Raised when the request never reached the server (or timed out)."""

    pass


class NotFoundError(ProgressSyncError):
    """Raised when the referenced lesson does not exist server-side yet."""

    pass


class RecoverableServerError(ProgressSyncError):
    """Raised on 5xx responses and unparseable success responses."""

    pass


class RateLimitedError(RecoverableServerError):
    """Raised on 429 responses."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = 429,
        code: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status=status, code=code)
        self.retry_after = retry_after


class ClientError(ProgressSyncError):
    """Raised on non-recoverable 4xx responses (anything but 404 and 429)."""

    @property
    def recoverable(self) -> bool:
        return False


class CurriculumConfigError(Exception):
    """Raised when a curriculum definition is malformed."""

    pass
