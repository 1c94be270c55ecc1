"""API client for Google Drive (v3 REST API)."""

from __future__ import annotations

import json
import mimetypes
import random
import time
import uuid
from pathlib import Path
from typing import Any, Callable

import httpx

from .config import config
from .exceptions import (
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
)
from .models import FILE_FIELDS, FOLDER_MIME_TYPE
from .utils import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_PAGE_SIZE,
    DEFAULT_RESUMABLE_THRESHOLD,
    escape_drive_query,
)

# 403 reasons that mean "slow down" rather than "forbidden"
RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "sharingRateLimitExceeded"}
)


class DriveClient:
    """Client for the Google Drive REST API.

    The client only consumes a bearer access token; obtaining and refreshing
    it is the job of the authentication layer.
    """

    def __init__(
        self,
        access_token: str | None = None,
        api_url: str | None = None,
        upload_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize Drive API client.

        Args:
            access_token: OAuth bearer token (uses config if not provided)
            api_url: Optional API URL (uses config if not provided)
            upload_url: Optional upload URL (uses config if not provided)
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (uses config if not provided)
            transport: Optional httpx transport (used by tests)
        """
        self.access_token = access_token or config.get_access_token()
        self.api_url = (api_url or config.api_url).rstrip("/")
        self.upload_url = (upload_url or config.upload_url).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout if timeout is not None else config.timeout
        self._transport = transport

        if not self.access_token:
            raise DriveConfigError(
                "Access token not configured. Please set PYDRIVESYNC_ACCESS_TOKEN "
                "or sign in with the account first."
            )

        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> DriveClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(exception, (DriveNetworkError, DriveRateLimitError)):
            return True

        # Retry on server errors (5xx status codes)
        status_code = getattr(exception, "status_code", None)
        return status_code is not None and 500 <= status_code < 600

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, str]:
        """Extract (message, reason) from a Drive error body."""
        try:
            data = response.json()
        except ValueError:
            return "", ""
        if not isinstance(data, dict):
            return "", ""
        error = data.get("error")
        if isinstance(error, dict):
            reason = ""
            errors = error.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                reason = errors[0].get("reason", "")
            return error.get("message", ""), reason
        if isinstance(error, str):
            return error, ""
        return data.get("message", ""), ""

    def _error_for_response(self, response: httpx.Response) -> DriveAPIError:
        """Map a failed HTTP response to the matching exception.

        Args:
            response: Response with a non-success status code

        Returns:
            Exception instance (not raised)
        """
        status_code = response.status_code
        message, reason = self._error_details(response)

        if status_code == 401:
            return DriveAuthenticationError(
                "Invalid or expired access token", status_code
            )
        if status_code == 403:
            if reason in RATE_LIMIT_REASONS:
                return DriveRateLimitError(
                    "Rate limit exceeded - please try again later", status_code
                )
            return DrivePermissionError(
                f"Access forbidden - check your permissions{': ' + message if message else ''}",
                status_code,
            )
        if status_code == 404:
            return DriveNotFoundError(message or "Resource not found", status_code)
        if status_code == 429:
            return DriveRateLimitError(
                "Rate limit exceeded - please try again later", status_code
            )

        error_msg = f"API request failed with status {status_code}"
        if message:
            error_msg = f"{error_msg}: {message}"
        return DriveAPIError(error_msg, status_code)

    def _retry_after(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return float(retry_after)
        return self._calculate_retry_delay(attempt)

    def _request(
        self, method: str, endpoint: str, base_url: str | None = None, **kwargs: Any
    ) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            base_url: Base URL (defaults to the API URL)
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data (empty dict for empty responses)

        Raises:
            DriveAPIError: If the request fails after all retries
        """
        url = f"{base_url or self.api_url}/{endpoint.lstrip('/')}"
        client = self._get_client()
        last_exception: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                error = DriveNetworkError(f"Network error: {e}")
                error.attempts = attempt + 1
                last_exception = error
                if self._should_retry(error, attempt):
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise error from e

            if not response.is_success:
                error = self._error_for_response(response)
                error.attempts = attempt + 1
                last_exception = error
                if self._should_retry(error, attempt):
                    time.sleep(self._retry_after(response, attempt))
                    continue
                raise error

            if not response.content:
                return {}

            content_type = response.headers.get("Content-Type", "")
            if "application/json" not in content_type:
                raise DriveInvalidResponseError(
                    f"Unexpected response type: {content_type}"
                )
            try:
                return response.json()
            except ValueError as e:
                raise DriveInvalidResponseError(
                    "Invalid JSON response from server"
                ) from e

        # If we get here, we've exhausted all retries
        if last_exception:
            raise last_exception
        raise DriveAPIError("Request failed after all retry attempts")

    def _drive_params(self, drive_id: str | None) -> dict[str, Any]:
        """Query parameters needed to reach items on shared drives."""
        params: dict[str, Any] = {"supportsAllDrives": "true"}
        if drive_id:
            params["includeItemsFromAllDrives"] = "true"
            params["corpora"] = "drive"
            params["driveId"] = drive_id
        return params

    # =========================
    # File Listing Operations
    # =========================

    def list_files(
        self,
        parent_id: str,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        drive_id: str | None = None,
        query: str | None = None,
    ) -> Any:
        """List the direct children of a folder (one page).

        Args:
            parent_id: ID of the folder to list
            page_token: Token of the page to fetch (None for the first page)
            page_size: Maximum number of entries per page
            drive_id: Shared drive ID, if the folder lives on a shared drive
            query: Additional query clause ANDed to the parent filter

        Returns:
            Response with 'files' and optionally 'nextPageToken' keys
        """
        q = f"'{escape_drive_query(parent_id)}' in parents and trashed = false"
        if query:
            q = f"{q} and {query}"

        params = self._drive_params(drive_id)
        params.update(
            {
                "q": q,
                "pageSize": page_size,
                "fields": f"nextPageToken,incompleteSearch,files({FILE_FIELDS})",
            }
        )
        if page_token:
            params["pageToken"] = page_token

        return self._request("GET", "/files", params=params)

    def find_child(
        self,
        parent_id: str,
        name: str,
        is_folder: bool = False,
        drive_id: str | None = None,
    ) -> Any:
        """Find a non-trashed child of a folder by exact name.

        Args:
            parent_id: ID of the parent folder
            name: Exact name to look for
            is_folder: Whether to look for a folder or a regular file
            drive_id: Shared drive ID (optional)

        Returns:
            File resource or None if not found
        """
        operator = "=" if is_folder else "!="
        query = (
            f"name = '{escape_drive_query(name)}' "
            f"and mimeType {operator} '{FOLDER_MIME_TYPE}'"
        )
        result = self.list_files(
            parent_id, page_size=1, drive_id=drive_id, query=query
        )
        files = result.get("files", []) if isinstance(result, dict) else []
        return files[0] if files else None

    # =========================
    # Folder Operations
    # =========================

    def create_folder(
        self, name: str, parent_id: str, drive_id: str | None = None
    ) -> Any:
        """Create a new folder.

        Args:
            name: Name of the new folder
            parent_id: ID of the parent folder
            drive_id: Shared drive ID (optional)

        Returns:
            File resource of the created folder
        """
        params = {"supportsAllDrives": "true", "fields": FILE_FIELDS}
        data = {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]}
        return self._request("POST", "/files", params=params, json=data)

    # =========================
    # Upload Operations
    # =========================

    def _detect_mime_type(self, file_path: Path) -> str:
        mime_type, _ = mimetypes.guess_type(str(file_path))
        return mime_type or "application/octet-stream"

    def upload_file(
        self,
        file_path: Path,
        name: str | None = None,
        parent_id: str | None = None,
        file_id: str | None = None,
        drive_id: str | None = None,
        resumable_threshold: int = DEFAULT_RESUMABLE_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> Any:
        """Upload a file, creating a new object or replacing an existing one.

        Small files use a single multipart request; files larger than
        ``resumable_threshold`` use a resumable session uploaded in chunks.

        Args:
            file_path: Local path to the file
            name: Remote file name (defaults to the local name)
            parent_id: Parent folder ID (required when creating)
            file_id: ID of the object to overwrite, None to create a new one
            drive_id: Shared drive ID (optional)
            resumable_threshold: Size above which a resumable upload is used
            chunk_size: Chunk size for resumable uploads
            progress_callback: Optional callback function(bytes_uploaded,
                total_bytes)

        Returns:
            File resource of the uploaded object
        """
        if not file_path.is_file():
            raise DriveFileNotFoundError(str(file_path))
        if file_id is None and parent_id is None:
            raise DriveUploadError("parent_id is required to create a new file")

        metadata: dict[str, Any] = {}
        if file_id is None:
            metadata = {"name": name or file_path.name, "parents": [parent_id]}
        elif name:
            metadata = {"name": name}

        file_size = file_path.stat().st_size
        mime_type = self._detect_mime_type(file_path)

        if file_size > resumable_threshold:
            return self._upload_resumable(
                file_path,
                metadata,
                mime_type,
                file_size,
                file_id=file_id,
                chunk_size=chunk_size,
                progress_callback=progress_callback,
            )

        try:
            content = file_path.read_bytes()
        except OSError as e:
            raise DriveUploadError(f"Failed to read {file_path}: {e}") from e

        boundary = f"pydrivesync-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {mime_type}\r\n\r\n".encode(),
                content,
                f"\r\n--{boundary}--".encode(),
            ]
        )
        params = {
            "uploadType": "multipart",
            "supportsAllDrives": "true",
            "fields": FILE_FIELDS,
        }
        headers = {"Content-Type": f"multipart/related; boundary={boundary}"}

        if file_id is None:
            result = self._request(
                "POST",
                "/files",
                base_url=self.upload_url,
                params=params,
                content=body,
                headers=headers,
            )
        else:
            result = self._request(
                "PATCH",
                f"/files/{file_id}",
                base_url=self.upload_url,
                params=params,
                content=body,
                headers=headers,
            )
        if progress_callback:
            progress_callback(file_size, file_size)
        return result

    def _upload_resumable(
        self,
        file_path: Path,
        metadata: dict[str, Any],
        mime_type: str,
        file_size: int,
        file_id: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> Any:
        """Upload a large file through a resumable session.

        Raises:
            DriveUploadError: If the session cannot be opened or a chunk fails
        """
        params = {
            "uploadType": "resumable",
            "supportsAllDrives": "true",
            "fields": FILE_FIELDS,
        }
        headers = {
            "X-Upload-Content-Type": mime_type,
            "X-Upload-Content-Length": str(file_size),
        }
        client = self._get_client()
        if file_id is None:
            url = f"{self.upload_url}/files"
            method = "POST"
        else:
            url = f"{self.upload_url}/files/{file_id}"
            method = "PATCH"

        try:
            response = client.request(
                method, url, params=params, json=metadata, headers=headers
            )
        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error: {e}") from e
        if not response.is_success:
            raise self._error_for_response(response)

        session_url = response.headers.get("Location")
        if not session_url:
            raise DriveUploadError("Failed to initialize resumable upload")

        bytes_uploaded = 0
        try:
            with open(file_path, "rb") as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk and bytes_uploaded > 0:
                        break
                    end = bytes_uploaded + len(chunk) - 1
                    chunk_headers = {
                        "Content-Length": str(len(chunk)),
                        "Content-Range": f"bytes {bytes_uploaded}-{end}/{file_size}",
                    }
                    response = client.put(
                        session_url, content=chunk, headers=chunk_headers
                    )
                    bytes_uploaded += len(chunk)
                    if progress_callback:
                        progress_callback(bytes_uploaded, file_size)

                    # 308 means "resume incomplete": send the next chunk
                    if response.status_code == 308:
                        continue
                    if not response.is_success:
                        raise self._error_for_response(response)
                    return response.json()
        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error during upload: {e}") from e
        except OSError as e:
            raise DriveUploadError(f"Failed to read {file_path}: {e}") from e

        raise DriveUploadError(
            f"Resumable upload of {file_path.name} ended without a file resource"
        )

    # =========================
    # Download Operations
    # =========================

    def download_file(
        self,
        file_id: str,
        output_path: Path,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> Path:
        """Download the binary content of a file.

        Args:
            file_id: Drive file ID
            output_path: Path where to save the file
            progress_callback: Optional callback function(bytes_downloaded,
                total_bytes)

        Returns:
            Path where the file was saved

        Raises:
            DriveAPIError: If the download fails
        """
        url = f"{self.api_url}/files/{file_id}"
        params = {"alt": "media", "supportsAllDrives": "true"}
        client = self._get_client()

        try:
            with client.stream("GET", url, params=params) as response:
                if not response.is_success:
                    response.read()
                    raise self._error_for_response(response)

                total_size = int(response.headers.get("Content-Length", 0))
                bytes_downloaded = 0

                with open(output_path, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=65536):
                        if chunk:
                            f.write(chunk)
                            bytes_downloaded += len(chunk)
                            if progress_callback:
                                progress_callback(bytes_downloaded, total_size)

                return output_path

        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error during download: {e}") from e
        except OSError as e:
            raise DriveDownloadError(f"Failed to write file: {e}") from e

    # =========================
    # Delete Operations
    # =========================

    def trash_file(self, file_id: str, drive_id: str | None = None) -> Any:
        """Move a file or folder to the trash.

        Args:
            file_id: Drive file ID
            drive_id: Shared drive ID (optional)

        Returns:
            Updated file resource
        """
        params = {"supportsAllDrives": "true", "fields": FILE_FIELDS}
        return self._request(
            "PATCH", f"/files/{file_id}", params=params, json={"trashed": True}
        )
