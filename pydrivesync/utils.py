"""Utility functions for pydrivesync."""

import hashlib
from datetime import datetime
from pathlib import Path
from typing import Optional

# =============================================================================
# Constants for file operations
# =============================================================================

# Chunk size for resumable uploads (8 MB, must be a multiple of 256 KB)
DEFAULT_CHUNK_SIZE: int = 8 * 1024 * 1024

# Threshold for switching from a multipart to a resumable upload (5 MB)
DEFAULT_RESUMABLE_THRESHOLD: int = 5 * 1024 * 1024

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY: float = 30.0  # seconds

# Page size for folder listings
DEFAULT_PAGE_SIZE: int = 1000

# Read buffer used for hashing
HASH_BUFFER_SIZE: int = 1024 * 1024


# =============================================================================
# Timestamp parsing utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp from the Drive API.

    Args:
        timestamp_str: Timestamp string (e.g., "2025-01-15T10:30:00.000Z")

    Returns:
        Timezone-aware datetime or None if parsing fails
    """
    if not timestamp_str:
        return None

    # The 'Z' suffix indicates UTC time
    if timestamp_str.endswith("Z"):
        timestamp_str = timestamp_str[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(timestamp_str)
    except ValueError:
        return None


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def compute_md5(file_path: Path) -> str:
    """Compute the MD5 hex digest of a file.

    MD5 is what Drive reports as ``md5Checksum``, so local and remote
    content can be compared directly.

    Args:
        file_path: Path to the file

    Returns:
        Lowercase hex digest

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_BUFFER_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def path_key(path: str) -> str:
    """Stable short key for a path, used to name per-target files.

    Examples:
        >>> len(path_key("/home/user/Documents"))
        16
    """
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Drive query helpers
# =============================================================================


def escape_drive_query(value: str) -> str:
    """Escape a string for use inside a quoted Drive query literal.

    Examples:
        >>> escape_drive_query("it's")
        "it\\\\'s"
    """
    return value.replace("\\", "\\\\").replace("'", "\\'")
