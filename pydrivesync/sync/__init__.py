"""Sync engine for pydrivesync - two-way sync of a local directory with Drive."""

from .comparator import ChangeType, Reconciler, SyncAction, SyncDecision
from .conflict import (
    ConflictResolver,
    ConflictStrategy,
    TransferJob,
    TransferStep,
    parse_conflict_strategy,
)
from .daemon import (
    DaemonController,
    DaemonStatus,
    get_daemon_status,
    pid_file_path,
    remove_pid_file,
    start_daemon,
    stop_all_daemons,
    stop_daemon,
    write_pid_file,
)
from .engine import EngineState, PassResult, SyncEngine
from .executor import ExecutionReport, TransferExecutor
from .lister import RemoteFile, RemoteLister, RemoteSnapshot
from .operations import RemoteStorage, SyncOperations
from .scanner import DirectoryScanner, LocalFile, LocalSnapshot
from .state import (
    ItemState,
    LocalFingerprint,
    RemoteFingerprint,
    SyncConfig,
    SyncItem,
    SyncLogEntry,
    SyncStatus,
    SyncStore,
)

__all__ = [
    "SyncEngine",
    "EngineState",
    "PassResult",
    "SyncStore",
    "SyncConfig",
    "SyncItem",
    "SyncStatus",
    "SyncLogEntry",
    "ItemState",
    "LocalFingerprint",
    "RemoteFingerprint",
    "DirectoryScanner",
    "LocalFile",
    "LocalSnapshot",
    "RemoteLister",
    "RemoteFile",
    "RemoteSnapshot",
    "Reconciler",
    "ChangeType",
    "SyncAction",
    "SyncDecision",
    "ConflictResolver",
    "ConflictStrategy",
    "parse_conflict_strategy",
    "TransferJob",
    "TransferStep",
    "TransferExecutor",
    "ExecutionReport",
    "SyncOperations",
    "RemoteStorage",
    "DaemonController",
    "DaemonStatus",
    "get_daemon_status",
    "pid_file_path",
    "remove_pid_file",
    "start_daemon",
    "stop_all_daemons",
    "stop_daemon",
    "write_pid_file",
]
