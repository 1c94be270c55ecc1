"""pydrivesync - keep a local directory in two-way sync with Google Drive."""

from .api import DriveClient
from .exceptions import (
    ConfigAlreadyExistsError,
    ConfigNotFoundError,
    CorruptStoreError,
    DaemonAlreadyRunningError,
    DaemonNotRunningError,
    DriveAPIError,
    DriveAuthenticationError,
    DriveConfigError,
    DriveDownloadError,
    DriveFileNotFoundError,
    DriveInvalidResponseError,
    DriveNetworkError,
    DriveNotFoundError,
    DrivePermissionError,
    DriveRateLimitError,
    DriveUploadError,
    PermanentTransferError,
    SyncError,
    TransferError,
    TransientTransferError,
)
from .utils import compute_md5

__all__ = [
    "DriveClient",
    "DriveAPIError",
    "DriveAuthenticationError",
    "DriveConfigError",
    "DriveDownloadError",
    "DriveFileNotFoundError",
    "DriveInvalidResponseError",
    "DriveNetworkError",
    "DriveNotFoundError",
    "DrivePermissionError",
    "DriveRateLimitError",
    "DriveUploadError",
    "SyncError",
    "ConfigAlreadyExistsError",
    "ConfigNotFoundError",
    "CorruptStoreError",
    "DaemonAlreadyRunningError",
    "DaemonNotRunningError",
    "TransferError",
    "TransientTransferError",
    "PermanentTransferError",
    "compute_md5",
]
