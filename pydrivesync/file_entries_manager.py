"""Manager for fetching Drive file entries with automatic pagination."""

import logging
from typing import Optional

from .api import DriveClient
from .exceptions import DriveInvalidResponseError
from .models import FileEntriesResult, FileEntry
from .utils import DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)


class FileEntriesManager:
    """Manages file entry fetching with automatic pagination.

    API errors are never swallowed here: a listing is either complete or
    the error propagates to the caller.
    """

    def __init__(self, client: DriveClient, drive_id: str = ""):
        """Initialize the file entries manager.

        Args:
            client: Drive API client
            drive_id: Shared drive ID (empty for My Drive)
        """
        self.client = client
        self.drive_id = drive_id

    def get_all_in_folder(
        self,
        folder_id: str,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[FileEntry]:
        """Get all direct children of a folder, following every page.

        Args:
            folder_id: Folder ID to query
            page_size: Number of entries per page

        Returns:
            List of all file entries in the folder

        Raises:
            DriveInvalidResponseError: If Drive flags a page as an
                incomplete search
        """
        all_entries: list[FileEntry] = []
        page_token: Optional[str] = None

        while True:
            result = self.client.list_files(
                folder_id,
                page_token=page_token,
                page_size=page_size,
                drive_id=self.drive_id or None,
            )
            page = FileEntriesResult.from_api_response(result)
            if page.incomplete_search:
                raise DriveInvalidResponseError(
                    f"incomplete listing for folder {folder_id}"
                )
            all_entries.extend(page.entries)

            if not page.next_page_token:
                break
            page_token = page.next_page_token

        return all_entries

    def get_all_recursive(
        self,
        folder_id: str,
        path_prefix: str = "",
        visited: Optional[set[str]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        include_folders: bool = False,
    ) -> list[tuple[FileEntry, str]]:
        """Recursively get all file entries in a folder and subfolders.

        Args:
            folder_id: Folder ID to start from
            path_prefix: Path prefix for nested folders
            visited: Set of visited folder IDs (for cycle detection)
            page_size: Number of entries per page
            include_folders: Also return the folder entries themselves

        Returns:
            List of (FileEntry, relative_path) tuples
        """
        if visited is None:
            visited = set()

        # Prevent infinite recursion
        if folder_id in visited:
            logger.warning(f"Skipping folder {folder_id} already visited")
            return []
        visited.add(folder_id)

        result_entries: list[tuple[FileEntry, str]] = []

        entries = self.get_all_in_folder(folder_id=folder_id, page_size=page_size)

        for entry in entries:
            entry_path = f"{path_prefix}/{entry.name}" if path_prefix else entry.name

            if entry.is_folder:
                if include_folders:
                    result_entries.append((entry, entry_path))
                result_entries.extend(
                    self.get_all_recursive(
                        folder_id=entry.id,
                        path_prefix=entry_path,
                        visited=visited,
                        page_size=page_size,
                        include_folders=include_folders,
                    )
                )
            else:
                result_entries.append((entry, entry_path))

        return result_entries
