"""Exception hierarchy for pydrivesync."""

from typing import Optional


class DriveAPIError(Exception):
    """Base exception for Drive API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        # Requests made before giving up, set by DriveClient._request
        self.attempts = 1


class DriveAuthenticationError(DriveAPIError):
    """Raised when the access token is missing, invalid or expired."""


class DriveConfigError(DriveAPIError):
    """Raised when the client is not configured."""


class DriveDownloadError(DriveAPIError):
    """Raised when a download fails."""


class DriveUploadError(DriveAPIError):
    """Raised when an upload fails."""


class DriveFileNotFoundError(DriveAPIError):
    """Raised when a local file to upload does not exist."""

    def __init__(self, file_path: str):
        super().__init__(f"File not found: {file_path}")
        self.file_path = file_path


class DriveInvalidResponseError(DriveAPIError):
    """Raised when the server returns something that is not JSON."""


class DriveNetworkError(DriveAPIError):
    """Raised on connection failures and timeouts."""


class DriveNotFoundError(DriveAPIError):
    """Raised when a remote resource does not exist (HTTP 404)."""


class DrivePermissionError(DriveAPIError):
    """Raised when access is forbidden (HTTP 403)."""


class DriveRateLimitError(DriveAPIError):
    """Raised when the API rate limit is exceeded (HTTP 429)."""


# =============================================================================
# Sync engine errors
# =============================================================================


class SyncError(Exception):
    """Base exception for sync engine errors."""


class ConfigNotFoundError(SyncError):
    """Raised when no sync configuration exists for a local path."""

    def __init__(self, local_path: str):
        super().__init__(f"sync config not found: {local_path}")
        self.local_path = local_path


class ConfigAlreadyExistsError(SyncError):
    """Raised when a sync configuration already exists for a local path."""

    def __init__(self, local_path: str):
        super().__init__(f"sync config already exists for path: {local_path}")
        self.local_path = local_path


class DaemonAlreadyRunningError(SyncError):
    """Raised when a live daemon is already recorded for a sync target."""

    def __init__(self, pid: Optional[int] = None):
        message = "daemon already running"
        if pid:
            message += f" with PID {pid}"
        super().__init__(message)
        self.pid = pid


class DaemonNotRunningError(SyncError):
    """Raised when a daemon is required but none is running."""

    def __init__(self, message: str = "daemon is not running"):
        super().__init__(message)


class CorruptStoreError(SyncError):
    """Raised when the sync database cannot be used. Fatal."""


class TransferError(SyncError):
    """Base class for errors raised while transferring a single item."""

    retryable = False


class TransientTransferError(TransferError):
    """Network errors, rate limiting and server errors. Retried."""

    retryable = True


class PermanentTransferError(TransferError):
    """Errors that will not go away by retrying (permissions, bad paths)."""
