"""Background daemon lifecycle for sync targets.

Each sync target has its own PID file in the runtime directory, named after
a hash of the absolute local path. A live process behind that file means the
target is being synced; stale files are cleaned up on inspection.

The process syncing a target holds an exclusive flock on the target's lock
file for its whole run. Starting a daemon holds the same lock while it checks
the PID file, spawns the child and records its PID, so two starts of one
target never both succeed.
"""

import fcntl
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..config import config
from ..exceptions import DaemonAlreadyRunningError, DaemonNotRunningError
from ..utils import path_key
from .conflict import ConflictStrategy
from .engine import SyncEngine
from .state import normalize_local_path

logger = logging.getLogger(__name__)

PID_FILE_PREFIX = "sync-"
PID_FILE_SUFFIX = ".pid"
LOCK_FILE_SUFFIX = ".lock"

# Seconds to wait for a daemon to exit after SIGTERM
DEFAULT_STOP_TIMEOUT = 60.0

# Seconds a new sync process waits for a starting daemon to release the lock
DEFAULT_LOCK_TIMEOUT = 5.0


@dataclass
class DaemonStatus:
    """Status of the daemon of one sync target."""

    running: bool = False
    pid: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"running": self.running}
        if self.pid is not None:
            data["pid"] = self.pid
        if self.error:
            data["error"] = self.error
        return data


def pid_file_path(local_path: str) -> Path:
    """PID file of the sync target at a local path."""
    key = path_key(normalize_local_path(local_path))
    return config.runtime_dir / f"{PID_FILE_PREFIX}{key}{PID_FILE_SUFFIX}"


def lock_file_path(local_path: str) -> Path:
    """Lock file held by the process syncing the target at a local path."""
    key = path_key(normalize_local_path(local_path))
    return config.runtime_dir / f"{PID_FILE_PREFIX}{key}{LOCK_FILE_SUFFIX}"


def acquire_target_lock(
    local_path: str, timeout: float = 0.0, poll_interval: float = 0.05
) -> int:
    """Take the exclusive lock of a sync target.

    Args:
        local_path: Local directory of the sync target
        timeout: Seconds to keep trying while another process holds the lock
        poll_interval: Seconds between attempts

    Returns:
        File descriptor holding the lock, for :func:`release_target_lock`

    Raises:
        DaemonAlreadyRunningError: If the lock is still held elsewhere
    """
    path = lock_file_path(local_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return fd
        except BlockingIOError:
            if time.monotonic() >= deadline:
                os.close(fd)
                pid = _read_pid(pid_file_path(local_path))
                raise DaemonAlreadyRunningError(pid) from None
            time.sleep(poll_interval)


def release_target_lock(fd: int) -> None:
    fcntl.flock(fd, fcntl.LOCK_UN)
    os.close(fd)


def is_process_running(pid: int) -> bool:
    """Check whether a process exists by sending it signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


def write_pid_file(local_path: str, pid: Optional[int] = None) -> Path:
    """Record the daemon PID of a sync target.

    Args:
        local_path: Local directory of the sync target
        pid: PID to record (defaults to the current process)

    Returns:
        Path of the PID file
    """
    path = pid_file_path(local_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid if pid is not None else os.getpid()), encoding="utf-8")
    return path


def remove_pid_file(local_path: str, pid: Optional[int] = None) -> None:
    """Remove the PID file of a sync target.

    Args:
        local_path: Local directory of the sync target
        pid: Only remove the file if it records this PID
    """
    _remove_pid_path(pid_file_path(local_path), pid)


def _remove_pid_path(path: Path, pid: Optional[int] = None) -> None:
    if pid is not None and _read_pid(path) != pid:
        return
    path.unlink(missing_ok=True)


def _read_pid(path: Path) -> Optional[int]:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _status_from_file(path: Path) -> DaemonStatus:
    status = DaemonStatus()
    try:
        data = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return status

    try:
        pid = int(data)
    except ValueError:
        status.error = "invalid PID in file"
        return status

    status.pid = pid
    if not is_process_running(pid):
        logger.debug(f"Removing stale PID file {path} (PID {pid})")
        _remove_pid_path(path)
        return status

    status.running = True
    return status


def get_daemon_status(local_path: str) -> DaemonStatus:
    """Status of the daemon of a sync target. Stale PID files are removed."""
    return _status_from_file(pid_file_path(local_path))


def check_not_already_running(local_path: str) -> None:
    """Raise if another live process is recorded for the sync target.

    Raises:
        DaemonAlreadyRunningError: If a live daemon other than this process
            is recorded
    """
    status = get_daemon_status(local_path)
    if status.running and status.pid != os.getpid():
        raise DaemonAlreadyRunningError(status.pid or 0)


def start_daemon(
    local_path: str,
    account: Optional[str] = None,
    conflict_strategy: ConflictStrategy = ConflictStrategy.RENAME,
    interval: Optional[float] = None,
    max_workers: Optional[int] = None,
    use_trash: bool = False,
) -> int:
    """Start the sync daemon of a target in the background.

    The daemon is this package's ``start`` command re-executed in a new
    session with ``--internal-daemon``; its output is appended to the sync
    log file.

    Args:
        local_path: Local directory of the sync target
        account: Account whose token the daemon uses
        conflict_strategy: Conflict strategy passed to the daemon
        interval: Seconds between passes
        max_workers: Number of parallel transfers
        use_trash: Move deleted local files to the system trash

    Returns:
        PID of the daemon process

    Raises:
        DaemonAlreadyRunningError: If the target already has a live daemon
    """
    path = normalize_local_path(local_path)
    lock_fd = acquire_target_lock(path)
    try:
        check_not_already_running(path)
        pid = _spawn_daemon(
            path, account, conflict_strategy, interval, max_workers, use_trash
        )
        write_pid_file(path, pid)
    finally:
        release_target_lock(lock_fd)

    logger.info(f"Started sync daemon for {path} with PID {pid}")
    return pid


def _spawn_daemon(
    path: str,
    account: Optional[str],
    conflict_strategy: ConflictStrategy,
    interval: Optional[float],
    max_workers: Optional[int],
    use_trash: bool,
) -> int:
    cmd = [sys.executable, "-m", "pydrivesync"]
    if account:
        cmd += ["--account", account]
    cmd += [
        "start",
        path,
        "--internal-daemon",
        "--conflict",
        conflict_strategy.value,
    ]
    if interval is not None:
        cmd += ["--interval", str(interval)]
    if max_workers is not None:
        cmd += ["--workers", str(max_workers)]
    if use_trash:
        cmd.append("--trash")

    config.ensure_dir()
    with open(config.log_path, "a", encoding="utf-8") as log_file:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )
    return process.pid


def _terminate(
    pid: int, timeout: float, poll_interval: float, force: bool = False
) -> bool:
    """SIGTERM a process and wait for it to exit.

    Returns:
        True when the process is gone. A process that outlives the timeout
        is sent SIGKILL if ``force``, otherwise it is left running and False
        is returned.
    """
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        time.sleep(poll_interval)
        if not is_process_running(pid):
            return True

    if not force:
        logger.warning(f"Daemon {pid} is still running {timeout}s after SIGTERM")
        return False

    logger.warning(f"Daemon {pid} did not exit after {timeout}s, sending SIGKILL")
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        # Exited in the meantime
        pass
    return True


def stop_daemon(
    local_path: str,
    strict: bool = False,
    timeout: float = DEFAULT_STOP_TIMEOUT,
    force: bool = False,
    poll_interval: float = 0.1,
) -> tuple[bool, Optional[int]]:
    """Stop the daemon of a sync target.

    The daemon finishes its in-flight transfers after SIGTERM, so the wait
    can take as long as the slowest transfer.

    Args:
        local_path: Local directory of the sync target
        strict: Raise instead of returning when no daemon is running
        timeout: Seconds to wait for the daemon to exit after SIGTERM
        force: Send SIGKILL when the daemon outlives the timeout
        poll_interval: Seconds between liveness checks

    Returns:
        (stopped, pid); ``(False, None)`` when no daemon was running and
        ``(False, pid)`` when it is still shutting down after the timeout

    Raises:
        DaemonNotRunningError: If ``strict`` and no daemon is running
    """
    path = pid_file_path(local_path)
    status = _status_from_file(path)
    if not status.running or status.pid is None:
        if strict:
            raise DaemonNotRunningError()
        return False, None

    if not _terminate(status.pid, timeout, poll_interval, force=force):
        return False, status.pid
    _remove_pid_path(path)
    logger.info(f"Stopped sync daemon with PID {status.pid}")
    return True, status.pid


def stop_all_daemons(
    timeout: float = DEFAULT_STOP_TIMEOUT,
    force: bool = False,
    poll_interval: float = 0.1,
) -> list[int]:
    """Stop every daemon recorded in the runtime directory.

    Daemons still shutting down after the timeout are left running and
    logged, unless ``force`` kills them.

    Returns:
        PIDs of the daemons that were stopped
    """
    runtime_dir = config.runtime_dir
    if not runtime_dir.is_dir():
        return []

    stopped = []
    for path in sorted(runtime_dir.glob(f"{PID_FILE_PREFIX}*{PID_FILE_SUFFIX}")):
        status = _status_from_file(path)
        if status.error:
            logger.warning(f"Removing PID file {path}: {status.error}")
            _remove_pid_path(path)
            continue
        if not status.running or status.pid is None:
            continue
        if not _terminate(status.pid, timeout, poll_interval, force=force):
            continue
        _remove_pid_path(path)
        stopped.append(status.pid)
    return stopped


def run_foreground(
    engine: SyncEngine,
    once: bool = False,
    stop_event: Optional[threading.Event] = None,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> None:
    """Run an engine in this process until SIGINT or SIGTERM.

    The target lock is held and the PID file written for the duration of the
    run. The PID file is removed on exit if it still records this process.

    Args:
        engine: Engine of the sync target
        once: Run a single pass
        stop_event: Event that ends the loop when set
        lock_timeout: Seconds to wait for a starting daemon to release the
            target lock

    Raises:
        DaemonAlreadyRunningError: If another process syncs the target
    """
    local_path = engine.sync_config.local_path
    lock_fd = acquire_target_lock(local_path, timeout=lock_timeout)
    try:
        check_not_already_running(local_path)
        _run_locked(engine, local_path, once, stop_event or threading.Event())
    finally:
        release_target_lock(lock_fd)


def _run_locked(
    engine: SyncEngine, local_path: str, once: bool, stop_event: threading.Event
) -> None:
    def signal_handler(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        stop_event.set()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, signal_handler)

    pid = os.getpid()
    write_pid_file(local_path, pid)
    try:
        engine.start(stop_event=stop_event, once=once)
    finally:
        remove_pid_file(local_path, pid)
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class DaemonController:
    """Start, stop and inspect the daemon of one sync target."""

    def __init__(
        self,
        local_path: str,
        account: Optional[str] = None,
        conflict_strategy: ConflictStrategy = ConflictStrategy.RENAME,
    ):
        self.local_path = normalize_local_path(local_path)
        self.account = account
        self.conflict_strategy = conflict_strategy

    def start(
        self,
        daemon: bool = True,
        engine: Optional[SyncEngine] = None,
        once: bool = False,
        **options: Any,
    ) -> int:
        """Start syncing the target.

        With ``daemon`` the loop runs in a background process; keyword
        arguments are passed to :func:`start_daemon`. Otherwise ``engine``
        runs in this process until SIGINT or SIGTERM, or for one pass with
        ``once``.

        Returns:
            PID of the process running the sync loop

        Raises:
            DaemonAlreadyRunningError: If the target already has a live daemon
            ValueError: If a foreground start has no engine
        """
        if daemon:
            return start_daemon(
                self.local_path,
                account=self.account,
                conflict_strategy=self.conflict_strategy,
                **options,
            )
        if engine is None:
            raise ValueError("a foreground start needs an engine")
        run_foreground(engine, once=once)
        return os.getpid()

    def stop(
        self,
        strict: bool = False,
        timeout: float = DEFAULT_STOP_TIMEOUT,
        force: bool = False,
    ) -> tuple[bool, Optional[int]]:
        return stop_daemon(self.local_path, strict=strict, timeout=timeout, force=force)

    def status(self) -> DaemonStatus:
        return get_daemon_status(self.local_path)
