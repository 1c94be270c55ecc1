"""Data models for Drive API responses."""

from dataclasses import dataclass, field
from typing import Any, Optional

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# Native Google formats have no binary content and no md5Checksum
NATIVE_MIME_PREFIX = "application/vnd.google-apps."

# Fields requested for every file resource
FILE_FIELDS = "id,name,mimeType,md5Checksum,size,modifiedTime,trashed,parents"


@dataclass
class FileEntry:
    """A file or folder resource returned by the Drive API."""

    id: str
    name: str
    mime_type: str = "application/octet-stream"
    md5_checksum: str = ""
    file_size: int = 0
    modified_time: Optional[str] = None
    trashed: bool = False
    parents: list[str] = field(default_factory=list)

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_native(self) -> bool:
        """True for Docs, Sheets, Slides, shortcuts and other native types."""
        return not self.is_folder and self.mime_type.startswith(NATIVE_MIME_PREFIX)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileEntry":
        """Create a FileEntry from an API file resource.

        Args:
            data: File resource as returned by ``files.list`` or ``files.get``

        Returns:
            FileEntry instance
        """
        size = data.get("size")
        try:
            file_size = int(size) if size is not None else 0
        except (TypeError, ValueError):
            file_size = 0

        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", "application/octet-stream"),
            md5_checksum=data.get("md5Checksum", "") or "",
            file_size=file_size,
            modified_time=data.get("modifiedTime"),
            trashed=bool(data.get("trashed", False)),
            parents=list(data.get("parents") or []),
        )


@dataclass
class FileEntriesResult:
    """One page of a ``files.list`` response."""

    entries: list[FileEntry]
    next_page_token: Optional[str] = None
    incomplete_search: bool = False

    @classmethod
    def from_api_response(cls, data: Any) -> "FileEntriesResult":
        """Parse a ``files.list`` response.

        Args:
            data: Decoded JSON response

        Returns:
            FileEntriesResult with parsed entries
        """
        if not isinstance(data, dict):
            return cls(entries=[])
        entries = [FileEntry.from_dict(item) for item in data.get("files", [])]
        return cls(
            entries=entries,
            next_page_token=data.get("nextPageToken") or None,
            incomplete_search=bool(data.get("incompleteSearch", False)),
        )
