"""Sync operations wrapper for unified upload/download interface."""

import logging
import os
import threading
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Optional, Protocol

from send2trash import send2trash

from ..models import FileEntry
from ..utils import compute_md5, format_size
from .lister import RemoteFile
from .scanner import PARTIAL_SUFFIX
from .state import LocalFingerprint, RemoteFingerprint

logger = logging.getLogger(__name__)


class RemoteStorage(Protocol):
    """Remote capability the sync engine needs. Implemented by DriveClient."""

    def list_files(
        self,
        parent_id: str,
        page_token: Optional[str] = None,
        page_size: int = ...,
        drive_id: Optional[str] = None,
    ) -> Any: ...

    def find_child(
        self,
        parent_id: str,
        name: str,
        is_folder: bool = False,
        drive_id: Optional[str] = None,
    ) -> Any: ...

    def create_folder(
        self, name: str, parent_id: str, drive_id: Optional[str] = None
    ) -> Any: ...

    def upload_file(
        self,
        file_path: Path,
        name: Optional[str] = None,
        parent_id: Optional[str] = None,
        file_id: Optional[str] = None,
        drive_id: Optional[str] = None,
    ) -> Any: ...

    def download_file(
        self,
        file_id: str,
        output_path: Path,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> Path: ...

    def trash_file(self, file_id: str, drive_id: Optional[str] = None) -> Any: ...


def local_fingerprint(file_path: Path) -> LocalFingerprint:
    """Fingerprint a local file as it is on disk now."""
    stat = file_path.stat()
    return LocalFingerprint(
        size=stat.st_size, mtime=stat.st_mtime, md5=compute_md5(file_path)
    )


class SyncOperations:
    """Upload, download and delete operations for one sync target.

    Paths are relative POSIX paths below the local root and the remote sync
    folder. Folder IDs are cached for the lifetime of the instance (one pass)
    and folder creation is serialized, so parallel uploads into a new
    directory create it only once.
    """

    def __init__(
        self,
        client: RemoteStorage,
        local_root: Path,
        drive_folder_id: str,
        drive_id: str = "",
        use_trash: bool = False,
    ):
        """Initialize sync operations.

        Args:
            client: Remote storage client
            local_root: Local sync root
            drive_folder_id: ID of the remote sync folder
            drive_id: Shared drive ID (empty for My Drive)
            use_trash: Move deleted local files to the system trash
        """
        self.client = client
        self.local_root = Path(local_root)
        self.drive_folder_id = drive_folder_id
        self.drive_id = drive_id
        self.use_trash = use_trash
        self._folder_ids: dict[str, str] = {"": drive_folder_id}
        self._folder_lock = threading.Lock()

    def prime_folders(self, folders: dict[str, str]) -> None:
        """Seed the folder cache from a remote listing."""
        with self._folder_lock:
            self._folder_ids.update(folders)

    def ensure_parent_folders(self, relative_path: str) -> str:
        """Make sure every remote folder above a path exists.

        Args:
            relative_path: Relative path of a file

        Returns:
            ID of the file's parent folder
        """
        parents = PurePosixPath(relative_path).parent.parts
        with self._folder_lock:
            parent_id = self.drive_folder_id
            current = ""
            for name in parents:
                current = f"{current}/{name}" if current else name
                cached = self._folder_ids.get(current)
                if cached is not None:
                    parent_id = cached
                    continue

                existing = self.client.find_child(
                    parent_id, name, is_folder=True, drive_id=self.drive_id or None
                )
                if existing:
                    folder_id = existing["id"]
                else:
                    logger.debug(f"Creating remote folder {current}")
                    created = self.client.create_folder(
                        name, parent_id, drive_id=self.drive_id or None
                    )
                    folder_id = created["id"]
                self._folder_ids[current] = folder_id
                parent_id = folder_id
        return parent_id

    def upload_file(
        self, relative_path: str, file_id: Optional[str] = None
    ) -> tuple[LocalFingerprint, RemoteFingerprint]:
        """Upload a local file.

        Args:
            relative_path: Relative path of the file
            file_id: Remote object to overwrite; when None an existing file of
                the same name is reused, otherwise a new one is created

        Returns:
            (local, remote) fingerprints after the upload
        """
        file_path = self.local_root / relative_path
        before = local_fingerprint(file_path)

        name = PurePosixPath(relative_path).name
        parent_id: Optional[str] = None
        if file_id is None:
            parent_id = self.ensure_parent_folders(relative_path)
            existing = self.client.find_child(
                parent_id, name, is_folder=False, drive_id=self.drive_id or None
            )
            if existing:
                file_id = existing["id"]
                logger.debug(f"Reusing remote file {file_id} for {relative_path}")

        result = self.client.upload_file(
            file_path=file_path,
            name=name,
            parent_id=parent_id,
            file_id=file_id,
            drive_id=self.drive_id or None,
        )
        entry = FileEntry.from_dict(result)
        remote = RemoteFingerprint(
            file_id=entry.id,
            modified_time=entry.modified_time or "",
            md5=entry.md5_checksum or before.md5,
            size=entry.file_size or before.size,
        )
        logger.info(f"Uploaded {relative_path} ({format_size(before.size)})")
        return before, remote

    def download_file(
        self, relative_path: str, remote_file: RemoteFile
    ) -> tuple[LocalFingerprint, RemoteFingerprint]:
        """Download a remote file, replacing the local file atomically.

        The content is written to a hidden ``.pydrivesync-part`` file next
        to the target and renamed over it once complete.

        Args:
            relative_path: Local relative path to write
            remote_file: Remote file to download

        Returns:
            (local, remote) fingerprints after the download
        """
        target = self.local_root / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.parent / f".{target.name}{PARTIAL_SUFFIX}"

        try:
            self.client.download_file(remote_file.id, partial)
            os.replace(partial, target)
        finally:
            if partial.exists():
                partial.unlink()

        local = local_fingerprint(target)
        if remote_file.md5 and local.md5 != remote_file.md5:
            # Changed remotely since the listing; the next pass picks it up
            logger.warning(f"Downloaded content of {relative_path} differs from listing")
        logger.info(f"Downloaded {relative_path} ({format_size(local.size)})")
        return local, remote_file.fingerprint

    def delete_remote(self, file_id: str) -> None:
        """Move a remote file to the Drive trash."""
        self.client.trash_file(file_id, drive_id=self.drive_id or None)
        logger.info(f"Trashed remote file {file_id}")

    def delete_local(self, relative_path: str) -> None:
        """Delete a local file and prune directories left empty.

        Args:
            relative_path: Relative path of the file
        """
        file_path = self.local_root / relative_path
        if file_path.exists():
            if self.use_trash:
                send2trash(str(file_path))
            else:
                file_path.unlink()
            logger.info(f"Deleted local file {relative_path}")

        parent = file_path.parent
        while parent != self.local_root and self.local_root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
