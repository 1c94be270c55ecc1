"""Shared fixtures: isolated configuration and an in-memory Drive."""

import hashlib
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

import pytest

from pydrivesync.exceptions import DriveNotFoundError
from pydrivesync.models import FOLDER_MIME_TYPE
from pydrivesync.sync import ConflictStrategy, SyncEngine, SyncStore

EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeDrive:
    """In-memory Drive implementing the calls the sync engine makes.

    Files live in a flat table keyed by ID, with parent links like the real
    API. Failures can be injected per (method, file name): ``failures``
    holds exceptions raised once each, ``permanent_failures`` an exception
    raised on every call.
    """

    ROOT_ID = "root-folder"

    def __init__(self, page_size: Optional[int] = None):
        self.page_size = page_size
        self.files: dict[str, dict] = {
            self.ROOT_ID: {
                "id": self.ROOT_ID,
                "name": "Sync",
                "mimeType": FOLDER_MIME_TYPE,
                "parents": [],
                "trashed": False,
            }
        }
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.permanent_failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self._next_id = 0
        self._clock = 0
        self._lock = threading.Lock()

    # === Helpers ===

    def _new_id(self) -> str:
        with self._lock:
            self._next_id += 1
            return f"file-{self._next_id}"

    def _tick(self) -> str:
        with self._lock:
            self._clock += 1
            stamp = EPOCH + timedelta(seconds=self._clock)
        return stamp.strftime("%Y-%m-%dT%H:%M:%S.000Z")

    def _maybe_fail(self, method: str, name: str) -> None:
        key = (method, name)
        if key in self.permanent_failures:
            raise self.permanent_failures[key]
        queued = self.failures.get(key)
        if queued:
            raise queued.pop(0)

    @staticmethod
    def _resource(record: dict) -> dict:
        return {k: v for k, v in record.items() if k != "content"}

    def _children(self, parent_id: str) -> list[dict]:
        children = [
            f
            for f in list(self.files.values())
            if parent_id in f["parents"] and not f["trashed"]
        ]
        return sorted(children, key=lambda f: (f["name"], f["id"]))

    def _set_content(self, record: dict, content: bytes) -> None:
        record["content"] = content
        record["md5Checksum"] = hashlib.md5(content).hexdigest()
        record["size"] = str(len(content))
        record["modifiedTime"] = self._tick()

    def _ensure_folders(self, parts: tuple[str, ...]) -> str:
        parent_id = self.ROOT_ID
        for name in parts:
            existing = self.find_child(parent_id, name, is_folder=True)
            if existing:
                parent_id = existing["id"]
            else:
                parent_id = self.create_folder(name, parent_id)["id"]
        return parent_id

    def lookup(self, relative_path: str) -> Optional[dict]:
        """Record of a non-trashed file by relative path."""
        path = PurePosixPath(relative_path)
        parent_id = self.ROOT_ID
        for name in path.parent.parts:
            folder = self.find_child(parent_id, name, is_folder=True)
            if folder is None:
                return None
            parent_id = folder["id"]
        child = self.find_child(parent_id, path.name)
        return self.files[child["id"]] if child else None

    def put(self, relative_path: str, content: bytes) -> dict:
        """Create or overwrite a file, creating parent folders."""
        path = PurePosixPath(relative_path)
        parent_id = self._ensure_folders(path.parent.parts)
        record = self.lookup(relative_path)
        if record is None:
            record = {
                "id": self._new_id(),
                "name": path.name,
                "mimeType": "text/plain",
                "parents": [parent_id],
                "trashed": False,
            }
            self.files[record["id"]] = record
        self._set_content(record, content)
        return self._resource(record)

    def put_native(self, relative_path: str, mime_type: str) -> dict:
        """Create a native Google document (no content, no md5)."""
        path = PurePosixPath(relative_path)
        parent_id = self._ensure_folders(path.parent.parts)
        record = {
            "id": self._new_id(),
            "name": path.name,
            "mimeType": mime_type,
            "parents": [parent_id],
            "trashed": False,
            "modifiedTime": self._tick(),
        }
        self.files[record["id"]] = record
        return self._resource(record)

    def read(self, relative_path: str) -> bytes:
        record = self.lookup(relative_path)
        assert record is not None, f"{relative_path} not on the fake drive"
        return record["content"]

    def remove(self, relative_path: str) -> None:
        record = self.lookup(relative_path)
        assert record is not None, f"{relative_path} not on the fake drive"
        record["trashed"] = True

    def tree(self, parent_id: str = ROOT_ID, prefix: str = "") -> dict[str, bytes]:
        """Contents of every non-trashed file by relative path."""
        result: dict[str, bytes] = {}
        for child in self._children(parent_id):
            path = f"{prefix}/{child['name']}" if prefix else child["name"]
            if child["mimeType"] == FOLDER_MIME_TYPE:
                result.update(self.tree(child["id"], path))
            elif "content" in child:
                result[path] = child["content"]
        return result

    # === Remote storage API ===

    def list_files(
        self,
        parent_id: str,
        page_token: Optional[str] = None,
        page_size: int = 1000,
        drive_id: Optional[str] = None,
    ) -> dict:
        self.calls.append(("list", parent_id))
        size = self.page_size or page_size
        children = self._children(parent_id)
        start = int(page_token) if page_token else 0
        page = children[start : start + size]
        result: dict = {"files": [self._resource(f) for f in page]}
        if start + size < len(children):
            result["nextPageToken"] = str(start + size)
        return result

    def find_child(
        self,
        parent_id: str,
        name: str,
        is_folder: bool = False,
        drive_id: Optional[str] = None,
    ) -> Optional[dict]:
        for child in self._children(parent_id):
            if child["name"] != name:
                continue
            if (child["mimeType"] == FOLDER_MIME_TYPE) == is_folder:
                return self._resource(child)
        return None

    def create_folder(
        self, name: str, parent_id: str, drive_id: Optional[str] = None
    ) -> dict:
        self.calls.append(("create_folder", name))
        record = {
            "id": self._new_id(),
            "name": name,
            "mimeType": FOLDER_MIME_TYPE,
            "parents": [parent_id],
            "trashed": False,
            "modifiedTime": self._tick(),
        }
        self.files[record["id"]] = record
        return self._resource(record)

    def upload_file(
        self,
        file_path: Path,
        name: Optional[str] = None,
        parent_id: Optional[str] = None,
        file_id: Optional[str] = None,
        drive_id: Optional[str] = None,
    ) -> dict:
        name = name or Path(file_path).name
        self.calls.append(("upload", name))
        self._maybe_fail("upload", name)
        content = Path(file_path).read_bytes()

        if file_id is not None:
            record = self.files.get(file_id)
            if record is None or record["trashed"]:
                raise DriveNotFoundError(f"File not found: {file_id}", 404)
        else:
            record = {
                "id": self._new_id(),
                "name": name,
                "mimeType": "text/plain",
                "parents": [parent_id],
                "trashed": False,
            }
            self.files[record["id"]] = record
        self._set_content(record, content)
        return self._resource(record)

    def download_file(self, file_id: str, output_path: Path, progress_callback=None):
        record = self.files.get(file_id)
        if record is None:
            raise DriveNotFoundError(f"File not found: {file_id}", 404)
        self.calls.append(("download", record["name"]))
        self._maybe_fail("download", record["name"])
        Path(output_path).write_bytes(record["content"])
        return output_path

    def trash_file(self, file_id: str, drive_id: Optional[str] = None) -> dict:
        record = self.files.get(file_id)
        if record is None:
            raise DriveNotFoundError(f"File not found: {file_id}", 404)
        self.calls.append(("trash", record["name"]))
        self._maybe_fail("trash", record["name"])
        record["trashed"] = True
        return self._resource(record)

    def close(self) -> None:
        self.calls.append(("close", ""))


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every configuration path at the test's temporary directory."""
    config_dir = tmp_path / "config"
    runtime_dir = tmp_path / "run"
    monkeypatch.setenv("PYDRIVESYNC_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("PYDRIVESYNC_RUNTIME_DIR", str(runtime_dir))
    for name in (
        "PYDRIVESYNC_ACCESS_TOKEN",
        "PYDRIVESYNC_ACCOUNT",
        "PYDRIVESYNC_API_URL",
        "PYDRIVESYNC_UPLOAD_URL",
        "PYDRIVESYNC_POLL_INTERVAL",
        "PYDRIVESYNC_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    return config_dir


@pytest.fixture
def drive():
    """An empty in-memory Drive."""
    return FakeDrive()


@pytest.fixture
def store(tmp_path):
    """A sync store in the temporary config directory."""
    sync_store = SyncStore(tmp_path / "config" / "sync.db")
    yield sync_store
    sync_store.close()


@pytest.fixture
def sync_root(tmp_path):
    """Local directory being synced."""
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def sync_config(store, sync_root):
    return store.create_config(str(sync_root), FakeDrive.ROOT_ID)


@pytest.fixture
def make_engine(store, drive, sync_config):
    """Factory for engines wired to the fake drive, without retry delays."""

    def _make(strategy: ConflictStrategy = ConflictStrategy.RENAME, **kwargs):
        kwargs.setdefault("max_workers", 2)
        kwargs.setdefault(
            "executor_options", {"sleep": lambda seconds: None, "retry_delay": 0}
        )
        return SyncEngine(
            store, drive, sync_config, conflict_strategy=strategy, **kwargs
        )

    return _make
