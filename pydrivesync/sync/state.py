"""Persistent sync state backed by SQLite.

This module stores sync configurations (one per local directory), the
per-path item state used as the baseline for three-way reconciliation, and
a log of the actions the engine performed. Status counts are always derived
from the item table, never stored.

The database may be shared by a foreground command and a background daemon,
so every operation holds an ``fcntl.flock`` on a sidecar lock file in
addition to the in-process lock.
"""

import fcntl
import json
import logging
import os
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..config import config
from ..exceptions import ConfigAlreadyExistsError, ConfigNotFoundError, CorruptStoreError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Milliseconds SQLite waits on a locked database before failing
BUSY_TIMEOUT_MS = 5000

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_configs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    local_path TEXT NOT NULL UNIQUE,
    drive_folder_id TEXT NOT NULL,
    drive_id TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    last_sync_at TEXT
);

CREATE TABLE IF NOT EXISTS sync_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id INTEGER NOT NULL REFERENCES sync_configs(id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    local_size INTEGER,
    local_mtime REAL,
    local_md5 TEXT,
    remote_id TEXT,
    remote_mtime TEXT,
    remote_md5 TEXT,
    remote_size INTEGER,
    base_local_size INTEGER,
    base_local_mtime REAL,
    base_local_md5 TEXT,
    base_remote_id TEXT,
    base_remote_mtime TEXT,
    base_remote_md5 TEXT,
    base_remote_size INTEGER,
    state TEXT NOT NULL DEFAULT 'pending',
    last_error TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE(config_id, path)
);

CREATE INDEX IF NOT EXISTS idx_sync_items_config ON sync_items(config_id);

CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id INTEGER NOT NULL REFERENCES sync_configs(id) ON DELETE CASCADE,
    action TEXT NOT NULL,
    path TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_log_config ON sync_log(config_id, id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def normalize_local_path(local_path: str) -> str:
    """Expand ``~`` and make a local path absolute.

    Examples:
        >>> normalize_local_path("/tmp/a/../b")
        '/tmp/b'
    """
    return os.path.abspath(os.path.expanduser(str(local_path)))


class ItemState(str, Enum):
    """Reconciliation state of a single path."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass(frozen=True)
class LocalFingerprint:
    """Content fingerprint of a local file."""

    size: int
    mtime: float
    md5: str


@dataclass(frozen=True)
class RemoteFingerprint:
    """Content fingerprint of a remote Drive object."""

    file_id: str
    modified_time: str
    md5: str = ""
    size: int = 0

    @property
    def content_key(self) -> str:
        """Key that changes whenever the remote content changes.

        Objects without an md5 fall back to modification time and size.
        """
        if self.md5:
            return self.md5
        return f"{self.modified_time}:{self.size}"


@dataclass
class SyncConfig:
    """A sync target: one local directory bound to one Drive folder."""

    id: int
    local_path: str
    drive_folder_id: str
    drive_id: str = ""
    created_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncConfig":
        return cls(
            id=row["id"],
            local_path=row["local_path"],
            drive_folder_id=row["drive_folder_id"],
            drive_id=row["drive_id"] or "",
            created_at=_parse_time(row["created_at"]),
            last_sync_at=_parse_time(row["last_sync_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "local_path": self.local_path,
            "drive_folder_id": self.drive_folder_id,
            "drive_id": self.drive_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_sync_at": (
                self.last_sync_at.isoformat() if self.last_sync_at else None
            ),
        }


@dataclass
class SyncItem:
    """Tracked state of one relative path within a sync target."""

    config_id: int
    """ID of the owning sync configuration"""

    path: str
    """Relative POSIX path from the sync root"""

    local: Optional[LocalFingerprint] = None
    """Local fingerprint observed in the latest pass (None when absent)"""

    remote: Optional[RemoteFingerprint] = None
    """Remote fingerprint observed in the latest pass (None when absent)"""

    base_local: Optional[LocalFingerprint] = None
    """Local fingerprint at the end of the last successful transfer"""

    base_remote: Optional[RemoteFingerprint] = None
    """Remote fingerprint at the end of the last successful transfer"""

    state: ItemState = ItemState.PENDING
    last_error: Optional[str] = None

    @property
    def has_baseline(self) -> bool:
        return self.base_local is not None or self.base_remote is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncItem":
        return cls(
            config_id=row["config_id"],
            path=row["path"],
            local=_local_from_row(row, "local_"),
            remote=_remote_from_row(row, "remote_"),
            base_local=_local_from_row(row, "base_local_"),
            base_remote=_remote_from_row(row, "base_remote_"),
            state=ItemState(row["state"]),
            last_error=row["last_error"],
        )


def _local_from_row(row: sqlite3.Row, prefix: str) -> Optional[LocalFingerprint]:
    if row[f"{prefix}size"] is None:
        return None
    return LocalFingerprint(
        size=row[f"{prefix}size"],
        mtime=row[f"{prefix}mtime"],
        md5=row[f"{prefix}md5"] or "",
    )


def _remote_from_row(row: sqlite3.Row, prefix: str) -> Optional[RemoteFingerprint]:
    if row[f"{prefix}id"] is None:
        return None
    return RemoteFingerprint(
        file_id=row[f"{prefix}id"],
        modified_time=row[f"{prefix}mtime"] or "",
        md5=row[f"{prefix}md5"] or "",
        size=row[f"{prefix}size"] or 0,
    )


def _local_columns(fp: Optional[LocalFingerprint]) -> tuple[Any, Any, Any]:
    if fp is None:
        return (None, None, None)
    return (fp.size, fp.mtime, fp.md5)


def _remote_columns(fp: Optional[RemoteFingerprint]) -> tuple[Any, Any, Any, Any]:
    if fp is None:
        return (None, None, None, None)
    return (fp.file_id, fp.modified_time, fp.md5, fp.size)


@dataclass
class SyncStatus:
    """Item counts of a sync target, derived from the item table."""

    config: SyncConfig
    total_items: int = 0
    synced_items: int = 0
    pending_items: int = 0
    conflict_items: int = 0
    error_items: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.config.to_dict(),
            "total_items": self.total_items,
            "synced_items": self.synced_items,
            "pending_items": self.pending_items,
            "conflict_items": self.conflict_items,
            "error_items": self.error_items,
        }


@dataclass
class SyncLogEntry:
    """One entry of the sync log."""

    id: int
    config_id: int
    action: str
    path: str
    timestamp: Optional[datetime] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncLogEntry":
        details = json.loads(row["details"]) if row["details"] else {}
        return cls(
            id=row["id"],
            config_id=row["config_id"],
            action=row["action"],
            path=row["path"],
            timestamp=_parse_time(row["timestamp"]),
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "path": self.path,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "details": self.details,
        }


class SyncStore:
    """SQLite store for sync configurations, items and the sync log.

    A single instance may be shared by the threads of one process. Separate
    processes coordinate through a shared/exclusive ``flock`` on
    ``<db>.lock``.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Open (and if needed create) the sync database.

        Args:
            db_path: Database file. Defaults to ``sync.db`` in the
                configuration directory.

        Raises:
            CorruptStoreError: If the file is not a usable sync database
        """
        if db_path is None:
            config.ensure_dir()
            db_path = config.db_path
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._depth = 0
        self._lock_file = open(f"{self.db_path}.lock", "a+")

        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        try:
            with self._locked(exclusive=True):
                self._conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA foreign_keys=ON")
                self._migrate()
        except (CorruptStoreError, sqlite3.DatabaseError):
            self._conn.close()
            self._lock_file.close()
            raise

    def _migrate(self) -> None:
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            raise CorruptStoreError(
                f"sync database {self.db_path} has schema version {version}, "
                f"newer than supported version {SCHEMA_VERSION}"
            )
        if version < SCHEMA_VERSION:
            logger.debug(f"Creating sync schema version {SCHEMA_VERSION}")
            self._conn.executescript(SCHEMA)
            self._conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")

    def close(self) -> None:
        """Close the database connection and the lock file."""
        with self._lock:
            self._conn.close()
            self._lock_file.close()

    def __enter__(self) -> "SyncStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @contextmanager
    def _locked(self, exclusive: bool = False) -> Iterator[None]:
        """Hold the in-process lock and the cross-process file lock.

        Only the outermost call takes the flock, so nested calls from the
        same thread do not block on themselves.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                fcntl.flock(
                    self._lock_file.fileno(),
                    fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH,
                )
            self._depth += 1
            try:
                yield
            except (sqlite3.IntegrityError, sqlite3.OperationalError):
                raise
            except sqlite3.DatabaseError as e:
                raise CorruptStoreError(f"sync database error: {e}") from e
            finally:
                self._depth -= 1
                if outermost:
                    fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one write transaction, rolled back on error."""
        with self._locked(exclusive=True):
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def check_integrity(self) -> None:
        """Run SQLite's quick integrity check.

        Raises:
            CorruptStoreError: If the check reports a problem
        """
        with self._locked():
            rows = self._conn.execute("PRAGMA quick_check").fetchall()
        results = [row[0] for row in rows]
        if results != ["ok"]:
            raise CorruptStoreError(
                f"sync database {self.db_path} failed integrity check: "
                f"{'; '.join(results)}"
            )

    # === Config operations ===

    def create_config(
        self, local_path: str, drive_folder_id: str, drive_id: str = ""
    ) -> SyncConfig:
        """Register a new sync target.

        Args:
            local_path: Local directory (``~`` expanded, made absolute and
                created when missing)
            drive_folder_id: ID of the remote folder
            drive_id: Shared drive ID (empty for My Drive)

        Returns:
            The created SyncConfig

        Raises:
            ValueError: If the path exists but is not a directory
            ConfigAlreadyExistsError: If the path is already configured
        """
        path = normalize_local_path(local_path)
        if os.path.exists(path) and not os.path.isdir(path):
            raise ValueError(f"path exists but is not a directory: {path}")
        os.makedirs(path, exist_ok=True)

        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO sync_configs "
                    "(local_path, drive_folder_id, drive_id, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (path, drive_folder_id, drive_id or "", _now()),
                )
                config_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConfigAlreadyExistsError(path) from e

        logger.info(f"Created sync config {config_id} for {path}")
        created = self.get_config_by_id(config_id)
        if created is None:
            raise CorruptStoreError(f"sync config {config_id} vanished after insert")
        return created

    def get_config(self, local_path: str) -> Optional[SyncConfig]:
        """Get the config of a local directory, or None."""
        path = normalize_local_path(local_path)
        with self._locked():
            row = self._conn.execute(
                "SELECT * FROM sync_configs WHERE local_path = ?", (path,)
            ).fetchone()
        return SyncConfig.from_row(row) if row else None

    def get_config_by_id(self, config_id: int) -> Optional[SyncConfig]:
        with self._locked():
            row = self._conn.execute(
                "SELECT * FROM sync_configs WHERE id = ?", (config_id,)
            ).fetchone()
        return SyncConfig.from_row(row) if row else None

    def list_configs(self) -> list[SyncConfig]:
        """List all configs, newest first."""
        with self._locked():
            rows = self._conn.execute(
                "SELECT * FROM sync_configs ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [SyncConfig.from_row(row) for row in rows]

    def remove_config(self, local_path: str) -> None:
        """Remove a config together with its items and log entries.

        Raises:
            ConfigNotFoundError: If no config exists for the path
        """
        path = normalize_local_path(local_path)
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_configs WHERE local_path = ?", (path,)
            )
            if cursor.rowcount == 0:
                raise ConfigNotFoundError(path)
        logger.info(f"Removed sync config for {path}")

    def touch_last_sync(self, config_id: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sync_configs SET last_sync_at = ? WHERE id = ?",
                (_now(), config_id),
            )

    # === Status ===

    def get_status(self, config_id: int) -> SyncStatus:
        """Derive item counts for one config.

        Raises:
            ConfigNotFoundError: If the config does not exist
        """
        with self._locked():
            sync_config = self.get_config_by_id(config_id)
            if sync_config is None:
                raise ConfigNotFoundError(str(config_id))
            rows = self._conn.execute(
                "SELECT state, COUNT(*) AS n FROM sync_items "
                "WHERE config_id = ? GROUP BY state",
                (config_id,),
            ).fetchall()

        counts = {row["state"]: row["n"] for row in rows}
        return SyncStatus(
            config=sync_config,
            total_items=sum(counts.values()),
            synced_items=counts.get(ItemState.SYNCED.value, 0),
            pending_items=counts.get(ItemState.PENDING.value, 0),
            conflict_items=counts.get(ItemState.CONFLICT.value, 0),
            error_items=counts.get(ItemState.ERROR.value, 0),
        )

    def list_statuses(self) -> list[SyncStatus]:
        """Status of every config, newest config first."""
        with self._locked():
            return [self.get_status(c.id) for c in self.list_configs()]

    # === Item operations ===

    def get_items(self, config_id: int) -> dict[str, SyncItem]:
        """All tracked items of a config, keyed by relative path."""
        with self._locked():
            rows = self._conn.execute(
                "SELECT * FROM sync_items WHERE config_id = ? ORDER BY path",
                (config_id,),
            ).fetchall()
        return {row["path"]: SyncItem.from_row(row) for row in rows}

    def get_item(self, config_id: int, path: str) -> Optional[SyncItem]:
        with self._locked():
            row = self._conn.execute(
                "SELECT * FROM sync_items WHERE config_id = ? AND path = ?",
                (config_id, path),
            ).fetchone()
        return SyncItem.from_row(row) if row else None

    def save_items(self, items: Iterable[SyncItem]) -> None:
        """Insert or update items in a single transaction."""
        now = _now()
        rows = [
            (
                item.config_id,
                item.path,
                *_local_columns(item.local),
                *_remote_columns(item.remote),
                *_local_columns(item.base_local),
                *_remote_columns(item.base_remote),
                ItemState(item.state).value,
                item.last_error,
                now,
            )
            for item in items
        ]
        if not rows:
            return
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO sync_items (
                    config_id, path,
                    local_size, local_mtime, local_md5,
                    remote_id, remote_mtime, remote_md5, remote_size,
                    base_local_size, base_local_mtime, base_local_md5,
                    base_remote_id, base_remote_mtime, base_remote_md5,
                    base_remote_size,
                    state, last_error, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(config_id, path) DO UPDATE SET
                    local_size = excluded.local_size,
                    local_mtime = excluded.local_mtime,
                    local_md5 = excluded.local_md5,
                    remote_id = excluded.remote_id,
                    remote_mtime = excluded.remote_mtime,
                    remote_md5 = excluded.remote_md5,
                    remote_size = excluded.remote_size,
                    base_local_size = excluded.base_local_size,
                    base_local_mtime = excluded.base_local_mtime,
                    base_local_md5 = excluded.base_local_md5,
                    base_remote_id = excluded.base_remote_id,
                    base_remote_mtime = excluded.base_remote_mtime,
                    base_remote_md5 = excluded.base_remote_md5,
                    base_remote_size = excluded.base_remote_size,
                    state = excluded.state,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                rows,
            )

    def delete_items(self, config_id: int, paths: Iterable[str]) -> None:
        """Forget items that no longer exist on either side."""
        params = [(config_id, path) for path in paths]
        if not params:
            return
        with self._transaction() as conn:
            conn.executemany(
                "DELETE FROM sync_items WHERE config_id = ? AND path = ?", params
            )

    # === Sync log ===

    def add_log_entry(
        self,
        config_id: int,
        action: str,
        path: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append an entry to the sync log.

        Args:
            config_id: Owning config
            action: upload, download, delete_local, delete_remote, conflict
                or error
            path: Relative path the action applied to
            details: Optional JSON-serializable details
        """
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO sync_log (config_id, action, path, timestamp, details) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    config_id,
                    action,
                    path,
                    _now(),
                    json.dumps(details, default=str) if details else None,
                ),
            )

    def get_recent_logs(self, config_id: int, limit: int = 50) -> list[SyncLogEntry]:
        """Most recent log entries of a config, newest first."""
        with self._locked():
            rows = self._conn.execute(
                "SELECT * FROM sync_log WHERE config_id = ? ORDER BY id DESC LIMIT ?",
                (config_id, limit),
            ).fetchall()
        return [SyncLogEntry.from_row(row) for row in rows]
