"""Directory scanning utilities for sync operations."""

import fnmatch
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..utils import compute_md5
from .state import LocalFingerprint

logger = logging.getLogger(__name__)

# Directory holding the engine's own metadata inside a sync root
METADATA_DIR_NAME = ".pydrivesync"

# Suffix of in-progress downloads
PARTIAL_SUFFIX = ".pydrivesync-part"

# Directory names that are never synced
IGNORED_DIR_NAMES = frozenset({".git", METADATA_DIR_NAME, "node_modules", "__pycache__"})

# File names that are never synced
IGNORED_FILE_NAMES = frozenset({".DS_Store"})


def is_ignored_name(name: str, is_dir: bool = False) -> bool:
    """Check the built-in ignore rules for a single path component.

    Hidden entries, editor backups (``name~``), VCS and dependency
    directories and the engine's own files are ignored.

    Examples:
        >>> is_ignored_name(".git", is_dir=True)
        True
        >>> is_ignored_name("notes.txt~")
        True
        >>> is_ignored_name("report.pdf")
        False
    """
    if name.startswith("."):
        return True
    if name.endswith("~") or name.endswith(PARTIAL_SUFFIX):
        return True
    if is_dir:
        return name in IGNORED_DIR_NAMES
    return name in IGNORED_FILE_NAMES


def is_ignored_path(relative_path: str) -> bool:
    """Apply :func:`is_ignored_name` to every component of a relative path."""
    parts = relative_path.split("/")
    return any(
        is_ignored_name(part, is_dir=i < len(parts) - 1)
        for i, part in enumerate(parts)
    )


@dataclass
class LocalFile:
    """Represents a local file with metadata."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    size: int
    """File size in bytes"""

    mtime: float
    """Last modification time (Unix timestamp)"""

    md5: str
    """MD5 hex digest of the content"""

    @property
    def fingerprint(self) -> LocalFingerprint:
        return LocalFingerprint(size=self.size, mtime=self.mtime, md5=self.md5)


@dataclass
class LocalSnapshot:
    """Result of a local scan."""

    files: list[LocalFile] = field(default_factory=list)
    """Fingerprinted files sorted by relative path"""

    unreadable: list[str] = field(default_factory=list)
    """Relative paths of files and directories that could not be read"""


class DirectoryScanner:
    """Scans a local sync root and fingerprints its files.

    Symlinks are never followed. Content is only re-hashed when a file's
    size or modification time differs from its baseline.

    Examples:
        >>> scanner = DirectoryScanner(ignore_patterns=["*.tmp", "cache/*"])
        >>> files = scanner.scan_local(Path("/sync/folder"))
    """

    def __init__(self, ignore_patterns: Optional[list[str]] = None):
        """Initialize directory scanner.

        Args:
            ignore_patterns: Extra glob patterns matched against the relative
                path and the file name (e.g., ["*.log", "temp/*"])
        """
        self.ignore_patterns = ignore_patterns or []

    def should_ignore(self, path: Path, base_path: Path, is_dir: bool = False) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Path to check
            base_path: Root of the scan
            is_dir: Whether the path is a directory

        Returns:
            True if path should be ignored
        """
        if is_ignored_name(path.name, is_dir=is_dir):
            return True

        relative_path = path.relative_to(base_path).as_posix()
        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(
                path.name, pattern
            ):
                logger.debug(f"Ignoring (pattern {pattern}): {relative_path}")
                return True
        return False

    def scan_local(
        self,
        directory: Path,
        baseline: Optional[Mapping[str, LocalFingerprint]] = None,
    ) -> list[LocalFile]:
        """Recursively scan a local directory.

        Args:
            directory: Sync root to scan
            baseline: Baseline fingerprints by relative path; a file whose
                size and mtime match its baseline reuses the baseline md5

        Returns:
            List of LocalFile objects sorted by relative path

        Raises:
            OSError: If the sync root itself cannot be read
        """
        return self.scan(directory, baseline).files

    def scan(
        self,
        directory: Path,
        baseline: Optional[Mapping[str, LocalFingerprint]] = None,
    ) -> LocalSnapshot:
        """Scan a local directory, reporting what could not be read.

        Entries that fail with an OSError are listed in
        ``LocalSnapshot.unreadable`` instead of the file list, so callers can
        tell them apart from deleted files.

        Raises:
            OSError: If the sync root itself cannot be read
        """
        directory = Path(directory)
        # The root must be readable; failing here aborts the pass
        list(directory.iterdir())

        snapshot = LocalSnapshot()
        self._scan_dir(directory, directory, baseline or {}, snapshot)
        snapshot.files.sort(key=lambda f: f.relative_path)
        snapshot.unreadable.sort()
        return snapshot

    def _scan_dir(
        self,
        directory: Path,
        base_path: Path,
        baseline: Mapping[str, LocalFingerprint],
        snapshot: LocalSnapshot,
    ) -> None:
        try:
            entries = list(directory.iterdir())
        except OSError as e:
            logger.warning(f"Skipping unreadable directory {directory}: {e}")
            snapshot.unreadable.append(directory.relative_to(base_path).as_posix())
            return

        for item in entries:
            if item.is_symlink():
                logger.debug(f"Skipping symlink {item}")
                continue

            is_dir = item.is_dir()
            if self.should_ignore(item, base_path, is_dir=is_dir):
                continue

            if is_dir:
                self._scan_dir(item, base_path, baseline, snapshot)
            elif item.is_file():
                try:
                    snapshot.files.append(self._fingerprint(item, base_path, baseline))
                except OSError as e:
                    logger.warning(f"Skipping unreadable file {item}: {e}")
                    snapshot.unreadable.append(
                        item.relative_to(base_path).as_posix()
                    )

    def _fingerprint(
        self,
        file_path: Path,
        base_path: Path,
        baseline: Mapping[str, LocalFingerprint],
    ) -> LocalFile:
        stat = file_path.stat()
        relative_path = file_path.relative_to(base_path).as_posix()

        base = baseline.get(relative_path)
        if base is not None and base.md5 and base.size == stat.st_size and (
            base.mtime == stat.st_mtime
        ):
            md5 = base.md5
        else:
            md5 = compute_md5(file_path)

        return LocalFile(
            path=file_path,
            relative_path=relative_path,
            size=stat.st_size,
            mtime=stat.st_mtime,
            md5=md5,
        )
