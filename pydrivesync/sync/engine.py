"""Core sync engine: reconciliation passes and the polling loop."""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from ..config import config
from ..exceptions import CorruptStoreError, DriveAPIError
from ..file_entries_manager import FileEntriesManager
from ..output import OutputFormatter
from .comparator import TRANSFER_ACTIONS, Reconciler, SyncAction, SyncDecision, count_actions
from .conflict import ConflictResolver, ConflictStrategy, TransferJob
from .executor import DEFAULT_MAX_WORKERS, ExecutionReport, TransferExecutor
from .lister import RemoteLister
from .operations import RemoteStorage, SyncOperations
from .scanner import DirectoryScanner
from .state import SyncConfig, SyncStore

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """Lifecycle of the polling loop."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    decisions: int = 0
    actions: dict[str, int] = field(default_factory=dict)
    conflicts: int = 0
    report: ExecutionReport = field(default_factory=ExecutionReport)
    duration: float = 0.0


class SyncEngine:
    """Core sync engine that keeps one sync target reconciled."""

    def __init__(
        self,
        store: SyncStore,
        client: RemoteStorage,
        sync_config: SyncConfig,
        conflict_strategy: ConflictStrategy = ConflictStrategy.RENAME,
        interval: Optional[float] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        use_trash: bool = False,
        ignore_patterns: Optional[list[str]] = None,
        executor_options: Optional[dict] = None,
        output: Optional[OutputFormatter] = None,
    ):
        """Initialize sync engine.

        Args:
            store: Sync store
            client: Remote storage client (a DriveClient in production)
            sync_config: Sync target to keep reconciled
            conflict_strategy: How conflicts are resolved
            interval: Seconds between passes (uses config if not provided)
            max_workers: Number of parallel transfers
            use_trash: Move deleted local files to the system trash
            ignore_patterns: Extra glob patterns excluded from the local scan
            executor_options: Extra keyword arguments for TransferExecutor
                (retry settings, sleep function)
            output: Output formatter for pass summaries (optional)
        """
        self.store = store
        self.client = client
        self.sync_config = sync_config
        self.conflict_strategy = conflict_strategy
        self.interval = interval if interval is not None else config.poll_interval
        self.max_workers = max_workers
        self.use_trash = use_trash
        self.scanner = DirectoryScanner(ignore_patterns=ignore_patterns)
        self.executor_options = executor_options or {}
        self.output = output

        self.state = EngineState.STOPPED
        self.last_result: Optional[PassResult] = None
        self._stop_event = threading.Event()

    @property
    def local_root(self) -> Path:
        return Path(self.sync_config.local_path)

    def run_pass(self, stop_event: Optional[threading.Event] = None) -> PassResult:
        """Run one full reconciliation pass.

        Scans the local tree, lists the remote folder, reconciles both with
        the stored baselines, resolves conflicts and executes the transfers.

        Args:
            stop_event: When set, transfers that have not started are skipped

        Returns:
            PassResult

        Raises:
            OSError: If the local root cannot be scanned
            DriveAPIError: If the remote folder cannot be listed
        """
        start = time.time()
        cfg = self.sync_config
        root = self.local_root
        if not root.is_dir():
            raise FileNotFoundError(f"Local sync directory does not exist: {root}")

        items = self.store.get_items(cfg.id)
        baseline = {
            path: item.base_local
            for path, item in items.items()
            if item.base_local is not None
        }
        local_snapshot = self.scanner.scan(root, baseline)
        local_files = {f.relative_path: f for f in local_snapshot.files}

        lister = RemoteLister(FileEntriesManager(self.client, cfg.drive_id))
        snapshot = lister.list(cfg.drive_folder_id)

        decisions = Reconciler(cfg.id).reconcile(
            items, local_files, snapshot.files, unreadable=local_snapshot.unreadable
        )
        self._persist_decisions(decisions, items)

        resolver = ConflictResolver(
            self.conflict_strategy,
            local_root=root,
            taken_paths=set(local_files)
            | set(local_snapshot.unreadable)
            | set(snapshot.files),
        )
        jobs = self._plan_jobs(decisions, resolver)

        operations = SyncOperations(
            self.client,
            root,
            cfg.drive_folder_id,
            drive_id=cfg.drive_id,
            use_trash=self.use_trash,
        )
        operations.prime_folders(snapshot.folders)
        executor = TransferExecutor(
            self.store,
            operations,
            cfg.id,
            max_workers=self.max_workers,
            **self.executor_options,
        )
        report = executor.execute(jobs, stop_event=stop_event)
        if report.skipped == 0:
            self.store.touch_last_sync(cfg.id)
        else:
            logger.info(
                f"Pass over {cfg.local_path} interrupted, "
                f"{report.skipped} transfers left for the next pass"
            )

        result = PassResult(
            decisions=len(decisions),
            actions=count_actions(decisions),
            conflicts=sum(1 for d in decisions if d.action == SyncAction.CONFLICT),
            report=report,
            duration=time.time() - start,
        )
        self.last_result = result
        logger.info(
            f"Pass over {cfg.local_path} done in {result.duration:.2f}s: "
            f"{len(jobs)} transfers, {report.failed} failed"
        )
        self._display_summary(result)
        return result

    def _persist_decisions(self, decisions: list[SyncDecision], items: dict) -> None:
        """Store the items derived by the reconciler before transferring."""
        changed = [
            d.item
            for d in decisions
            if d.item is not None and items.get(d.relative_path) != d.item
        ]
        forgotten = [
            d.relative_path
            for d in decisions
            if d.item is None and d.relative_path in items
        ]
        self.store.save_items(changed)
        self.store.delete_items(self.sync_config.id, forgotten)

    def _plan_jobs(
        self, decisions: list[SyncDecision], resolver: ConflictResolver
    ) -> list[TransferJob]:
        """Build transfer jobs; conflict jobs claim their paths first."""
        conflict_jobs = [
            resolver.resolve(d) for d in decisions if d.action == SyncAction.CONFLICT
        ]
        claimed = {step.relative_path for job in conflict_jobs for step in job.steps}
        plain_jobs = [
            TransferJob.from_decision(d)
            for d in decisions
            if d.action in TRANSFER_ACTIONS and d.relative_path not in claimed
        ]
        return conflict_jobs + plain_jobs

    def _display_summary(self, result: PassResult) -> None:
        if self.output is None or self.output.quiet:
            return
        report = result.report
        self.output.print_summary(
            "Sync Complete",
            [
                ("Uploaded", report.actions.get(SyncAction.UPLOAD.value, 0)),
                ("Downloaded", report.actions.get(SyncAction.DOWNLOAD.value, 0)),
                (
                    "Deleted locally",
                    report.actions.get(SyncAction.DELETE_LOCAL.value, 0),
                ),
                (
                    "Deleted remotely",
                    report.actions.get(SyncAction.DELETE_REMOTE.value, 0),
                ),
                ("Conflicts", result.conflicts),
                ("Errors", report.failed),
            ],
        )

    def start(self, stop_event: Optional[threading.Event] = None, once: bool = False) -> None:
        """Run passes until stopped.

        A pass that fails while scanning or listing is logged and the loop
        waits for the next interval. A stop request is observed between
        passes and is not an error.

        Args:
            stop_event: Event that ends the loop when set
            once: Run a single pass and return

        Raises:
            CorruptStoreError: If the sync database is unusable
        """
        if stop_event is not None:
            self._stop_event = stop_event
        self.state = EngineState.STARTING
        logger.info(
            f"Starting sync of {self.sync_config.local_path} "
            f"(interval {self.interval}s, conflict {self.conflict_strategy.value})"
        )

        try:
            self.store.check_integrity()
            self.state = EngineState.RUNNING

            while not self._stop_event.is_set():
                try:
                    self.run_pass(stop_event=self._stop_event)
                except CorruptStoreError:
                    raise
                except (DriveAPIError, OSError) as e:
                    logger.error(f"Sync pass failed: {e}")
                    self.store.add_log_entry(
                        self.sync_config.id, "error", "", {"error": str(e)}
                    )

                if once or self._stop_event.wait(self.interval):
                    break
        finally:
            self.state = EngineState.STOPPING
            logger.info(f"Stopped sync of {self.sync_config.local_path}")
            self.state = EngineState.STOPPED

    def stop(self) -> None:
        """Request the loop to stop after the current pass."""
        self._stop_event.set()
