"""Parallel execution of transfer jobs with retries and per-item errors."""

import logging
import random
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from ..exceptions import (
    DriveAPIError,
    DriveNetworkError,
    DriveRateLimitError,
    PermanentTransferError,
    TransferError,
    TransientTransferError,
)
from ..utils import DEFAULT_MAX_RETRIES, DEFAULT_MAX_RETRY_DELAY, DEFAULT_RETRY_DELAY
from .comparator import SyncAction
from .conflict import TransferJob, TransferStep
from .operations import SyncOperations
from .state import ItemState, LocalFingerprint, RemoteFingerprint, SyncItem, SyncStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass
class ExecutionReport:
    """Outcome of executing a batch of transfer jobs."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    """Jobs not started because a stop was requested"""

    actions: Counter = field(default_factory=Counter)
    """Successful steps per action name"""

    errors: list[tuple[str, str]] = field(default_factory=list)
    """(relative_path, error message) for every failed job"""

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped


def classify_error(error: Exception) -> TransferError:
    """Map an exception raised by a transfer to a retryable or permanent error.

    Network errors, timeouts, rate limiting and server errors (5xx) are
    transient; other API errors and local filesystem errors are permanent.
    An API error the client already retried is permanent.
    """
    if isinstance(error, TransferError):
        return error
    if isinstance(error, DriveAPIError) and error.attempts > 1:
        return PermanentTransferError(
            f"{error} (gave up after {error.attempts} attempts)"
        )
    if isinstance(error, (DriveNetworkError, DriveRateLimitError)):
        return TransientTransferError(str(error))
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return TransientTransferError(f"Network error: {error}")
    if isinstance(error, DriveAPIError):
        status_code = error.status_code
        if status_code is not None and 500 <= status_code < 600:
            return TransientTransferError(str(error))
        return PermanentTransferError(str(error))
    if isinstance(error, OSError):
        return PermanentTransferError(f"Local file error: {error}")
    return PermanentTransferError(f"{type(error).__name__}: {error}")


class TransferExecutor:
    """Runs transfer jobs on a bounded thread pool.

    Steps of one job run in order. A job that fails after its retries are
    exhausted marks its item as ``error`` and the remaining jobs continue.
    """

    def __init__(
        self,
        store: SyncStore,
        operations: SyncOperations,
        config_id: int,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the executor.

        Args:
            store: Sync store receiving item updates and log entries
            operations: Transfer operations for the sync target
            config_id: ID of the sync config
            max_workers: Number of parallel transfers
            max_retries: Retries per step for transient errors
            retry_delay: Initial delay between retries in seconds
            max_retry_delay: Upper bound of the retry delay in seconds
            sleep: Sleep function (replaced in tests)
        """
        self.store = store
        self.operations = operations
        self.config_id = config_id
        self.max_workers = max(1, max_workers)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep

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
        return min(base_delay + jitter, self.max_retry_delay)

    def execute(
        self,
        jobs: list[TransferJob],
        stop_event: Optional[threading.Event] = None,
    ) -> ExecutionReport:
        """Execute jobs in parallel.

        Args:
            jobs: Jobs to run
            stop_event: When set, jobs that have not started yet are skipped;
                jobs already running finish

        Returns:
            ExecutionReport with the outcome of every job
        """
        report = ExecutionReport()
        if not jobs:
            return report

        logger.debug(f"Executing {len(jobs)} jobs with {self.max_workers} workers")

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self._run_job, job, stop_event): job for job in jobs
            }

            for future in as_completed(futures):
                job = futures[future]
                outcome, error = future.result()
                if outcome == "skipped":
                    report.skipped += 1
                elif outcome == "failed":
                    report.failed += 1
                    report.errors.append((job.relative_path, error))
                else:
                    report.succeeded += 1
                    for step in job.steps:
                        report.actions[step.action.value] += 1

        logger.info(
            f"Transfers: {report.succeeded} succeeded, {report.failed} failed, "
            f"{report.skipped} skipped"
        )
        return report

    def _run_job(
        self, job: TransferJob, stop_event: Optional[threading.Event]
    ) -> tuple[str, str]:
        """Run all steps of a job and persist the outcome.

        Returns:
            (outcome, error message) where outcome is "succeeded", "failed"
            or "skipped"
        """
        if stop_event is not None and stop_event.is_set():
            return "skipped", ""

        start = time.time()
        results: dict[str, tuple[Optional[LocalFingerprint], Optional[RemoteFingerprint]]] = {}
        deleted: list[str] = []

        try:
            for step in job.steps:
                local, remote = self._run_step(step)
                if step.action in (SyncAction.DELETE_LOCAL, SyncAction.DELETE_REMOTE):
                    deleted.append(step.relative_path)
                    results.pop(step.relative_path, None)
                else:
                    results[step.relative_path] = (local, remote)
        except TransferError as e:
            self._record_failure(job, e)
            logger.debug(f"Failed {job.relative_path} in {time.time() - start:.2f}s")
            return "failed", str(e)

        self._record_success(job, results, deleted)
        logger.debug(f"Completed {job.relative_path} in {time.time() - start:.2f}s")
        return "succeeded", ""

    def _run_step(
        self, step: TransferStep
    ) -> tuple[Optional[LocalFingerprint], Optional[RemoteFingerprint]]:
        """Run one step, retrying transient errors.

        Raises:
            TransferError: When the step fails permanently or retries run out
        """
        attempt = 0
        while True:
            try:
                return self._perform(step)
            except Exception as e:
                error = classify_error(e)
                if not error.retryable or attempt >= self.max_retries:
                    if error is e:
                        raise
                    raise error from e
                delay = self._calculate_retry_delay(attempt)
                logger.warning(
                    f"{step.action.value} {step.relative_path} failed "
                    f"(attempt {attempt + 1}/{self.max_retries + 1}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                attempt += 1

    def _perform(
        self, step: TransferStep
    ) -> tuple[Optional[LocalFingerprint], Optional[RemoteFingerprint]]:
        if step.action == SyncAction.UPLOAD:
            return self.operations.upload_file(step.relative_path, file_id=step.file_id)
        if step.action == SyncAction.DOWNLOAD:
            if step.remote_file is None:
                raise PermanentTransferError(
                    f"no remote file to download for {step.relative_path}"
                )
            return self.operations.download_file(step.relative_path, step.remote_file)
        if step.action == SyncAction.DELETE_REMOTE:
            if step.file_id is None:
                raise PermanentTransferError(
                    f"no remote file to delete for {step.relative_path}"
                )
            self.operations.delete_remote(step.file_id)
            return None, None
        if step.action == SyncAction.DELETE_LOCAL:
            self.operations.delete_local(step.relative_path)
            return None, None
        raise PermanentTransferError(f"unsupported transfer action {step.action.value}")

    def _record_success(
        self,
        job: TransferJob,
        results: dict[str, tuple[Optional[LocalFingerprint], Optional[RemoteFingerprint]]],
        deleted: list[str],
    ) -> None:
        items = [
            SyncItem(
                config_id=self.config_id,
                path=path,
                local=local,
                remote=remote,
                base_local=local,
                base_remote=remote,
                state=ItemState.SYNCED,
            )
            for path, (local, remote) in results.items()
        ]
        self.store.save_items(items)
        self.store.delete_items(self.config_id, [p for p in deleted if p not in results])

        if job.is_conflict:
            self.store.add_log_entry(
                self.config_id,
                "conflict",
                job.relative_path,
                {"strategy": job.strategy.value, "resolution": job.resolution},
            )
        for step in job.steps:
            details = {"file_id": step.file_id} if step.file_id else None
            self.store.add_log_entry(
                self.config_id, step.action.value, step.relative_path, details
            )

    def _record_failure(self, job: TransferJob, error: TransferError) -> None:
        message = str(error)
        logger.error(f"Error syncing {job.relative_path}: {message}")

        base = job.decision.item
        item = SyncItem(
            config_id=self.config_id,
            path=job.relative_path,
            local=base.local if base else None,
            remote=base.remote if base else None,
            base_local=base.base_local if base else None,
            base_remote=base.base_remote if base else None,
            state=ItemState.ERROR,
            last_error=message,
        )
        self.store.save_items([item])
        self.store.add_log_entry(
            self.config_id,
            "error",
            job.relative_path,
            {"action": job.decision.action.value, "error": message},
        )
