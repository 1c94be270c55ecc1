"""Remote listing for sync operations."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..file_entries_manager import FileEntriesManager
from ..models import FileEntry
from ..utils import parse_iso_timestamp
from .scanner import is_ignored_path
from .state import RemoteFingerprint

logger = logging.getLogger(__name__)


@dataclass
class RemoteFile:
    """Represents a remote file with metadata."""

    entry: FileEntry
    """Remote file entry from API"""

    relative_path: str
    """Relative path in the remote folder"""

    @property
    def id(self) -> str:
        return self.entry.id

    @property
    def size(self) -> int:
        return self.entry.file_size

    @property
    def md5(self) -> str:
        return self.entry.md5_checksum

    @property
    def modified_time(self) -> str:
        return self.entry.modified_time or ""

    @property
    def fingerprint(self) -> RemoteFingerprint:
        return RemoteFingerprint(
            file_id=self.id,
            modified_time=self.modified_time,
            md5=self.md5,
            size=self.size,
        )


@dataclass
class RemoteSnapshot:
    """Complete listing of a remote sync folder."""

    files: dict[str, RemoteFile] = field(default_factory=dict)
    """Files by relative path"""

    folders: dict[str, str] = field(default_factory=dict)
    """Folder IDs by relative path"""


def _is_newer(candidate: FileEntry, current: FileEntry) -> bool:
    candidate_time = parse_iso_timestamp(candidate.modified_time)
    current_time = parse_iso_timestamp(current.modified_time)
    if candidate_time is None:
        return False
    if current_time is None:
        return True
    return candidate_time > current_time


class RemoteLister:
    """Builds a snapshot of a remote folder tree.

    The listing is all or nothing: every page of every folder is fetched
    before the snapshot is returned, and any API error propagates.
    """

    def __init__(self, entries_manager: FileEntriesManager):
        self.entries_manager = entries_manager

    def list(self, drive_folder_id: str, drive_id: Optional[str] = None) -> RemoteSnapshot:
        """List every file below a folder.

        Args:
            drive_folder_id: ID of the sync folder
            drive_id: Shared drive ID (overrides the manager's drive)

        Returns:
            RemoteSnapshot of files and folders keyed by relative path
        """
        if drive_id is not None:
            self.entries_manager.drive_id = drive_id

        entries = self.entries_manager.get_all_recursive(
            drive_folder_id, include_folders=True
        )

        snapshot = RemoteSnapshot()
        skipped_native = 0
        for entry, rel_path in entries:
            if entry.trashed:
                continue
            if is_ignored_path(rel_path):
                continue
            if entry.is_folder:
                snapshot.folders.setdefault(rel_path, entry.id)
                continue
            if entry.is_native:
                # Docs, Sheets and other native types have no binary content
                skipped_native += 1
                continue

            existing = snapshot.files.get(rel_path)
            if existing is not None:
                winner = entry if _is_newer(entry, existing.entry) else existing.entry
                logger.warning(
                    f"Duplicate remote path {rel_path} ({existing.id}, {entry.id}), "
                    f"using {winner.id}"
                )
                if winner is existing.entry:
                    continue
            snapshot.files[rel_path] = RemoteFile(entry=entry, relative_path=rel_path)

        if skipped_native:
            logger.debug(f"Skipped {skipped_native} native Google documents")
        logger.debug(
            f"Remote listing: {len(snapshot.files)} files, "
            f"{len(snapshot.folders)} folders"
        )
        return snapshot
