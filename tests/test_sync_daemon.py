"""Tests for daemon lifecycle management."""

import os
import signal
import subprocess
import sys
import threading
from unittest.mock import Mock, patch

import pytest

from pydrivesync.exceptions import DaemonAlreadyRunningError, DaemonNotRunningError
from pydrivesync.sync import daemon
from pydrivesync.sync.conflict import ConflictStrategy
from pydrivesync.sync.daemon import (
    DaemonController,
    acquire_target_lock,
    get_daemon_status,
    lock_file_path,
    pid_file_path,
    release_target_lock,
    remove_pid_file,
    run_foreground,
    start_daemon,
    stop_all_daemons,
    stop_daemon,
    write_pid_file,
)

# Above the largest PID the kernel hands out
DEAD_PID = 99_999_999


class TestPidFiles:
    """Tests for PID file handling."""

    def test_pid_file_in_runtime_dir(self, tmp_path):
        path = pid_file_path("/home/u/Docs")
        assert path.parent == tmp_path / "run"
        assert path.name.startswith("sync-")
        assert path.suffix == ".pid"
        assert pid_file_path("/home/u/Docs/") == path
        assert pid_file_path("/home/u/Music") != path

    def test_write_and_status_of_live_process(self):
        write_pid_file("/home/u/Docs")

        status = get_daemon_status("/home/u/Docs")

        assert status.running is True
        assert status.pid == os.getpid()
        assert status.to_dict() == {"running": True, "pid": os.getpid()}

    def test_never_started(self):
        status = get_daemon_status("/home/u/Docs")
        assert status.running is False
        assert status.pid is None
        assert status.to_dict() == {"running": False}

    def test_stale_pid_file_is_removed(self):
        path = write_pid_file("/home/u/Docs", DEAD_PID)

        status = get_daemon_status("/home/u/Docs")

        assert status.running is False
        assert status.pid == DEAD_PID
        assert not path.exists()

    def test_invalid_pid_file(self):
        path = pid_file_path("/home/u/Docs")
        path.parent.mkdir(parents=True)
        path.write_text("not-a-pid")

        status = get_daemon_status("/home/u/Docs")
        assert status.running is False
        assert status.error == "invalid PID in file"

    def test_remove_only_own_pid(self):
        path = write_pid_file("/home/u/Docs", 1234)

        remove_pid_file("/home/u/Docs", pid=5678)
        assert path.exists()

        remove_pid_file("/home/u/Docs", pid=1234)
        assert not path.exists()

        remove_pid_file("/home/u/Docs")


class TestTargetLock:
    """Tests for the per-target lock held by the syncing process."""

    def test_lock_file_next_to_pid_file(self):
        lock_path = lock_file_path("/home/u/Docs")
        assert lock_path.parent == pid_file_path("/home/u/Docs").parent
        assert lock_path.name.endswith(".lock")

    def test_second_claimant_refused_while_first_holds(self):
        first = acquire_target_lock("/home/u/Docs")
        try:
            write_pid_file("/home/u/Docs", 4321)
            with pytest.raises(DaemonAlreadyRunningError) as exc_info:
                acquire_target_lock("/home/u/Docs")
            assert exc_info.value.pid == 4321
        finally:
            release_target_lock(first)

        second = acquire_target_lock("/home/u/Docs")
        release_target_lock(second)

    def test_targets_lock_independently(self):
        docs = acquire_target_lock("/home/u/Docs")
        music = acquire_target_lock("/home/u/Music")
        release_target_lock(music)
        release_target_lock(docs)

    def test_waits_for_brief_holder(self):
        held = acquire_target_lock("/home/u/Docs")
        timer = threading.Timer(0.1, release_target_lock, args=(held,))
        timer.start()
        try:
            fd = acquire_target_lock("/home/u/Docs", timeout=5.0, poll_interval=0.01)
        finally:
            timer.join()
        release_target_lock(fd)


class TestStartDaemon:
    """Tests for start_daemon."""

    @patch("pydrivesync.sync.daemon.subprocess.Popen")
    def test_launches_background_process(self, mock_popen, isolated_config):
        mock_popen.return_value = Mock(pid=4321)

        pid = start_daemon(
            "/home/u/Docs",
            account="me@example.com",
            conflict_strategy=ConflictStrategy.LOCAL_WINS,
            interval=10.0,
            max_workers=2,
            use_trash=True,
        )

        assert pid == 4321
        cmd = mock_popen.call_args[0][0]
        assert cmd[:3] == [sys.executable, "-m", "pydrivesync"]
        assert cmd[3:5] == ["--account", "me@example.com"]
        assert cmd[5:8] == ["start", "/home/u/Docs", "--internal-daemon"]
        assert "local-wins" in cmd
        assert cmd[cmd.index("--interval") + 1] == "10.0"
        assert cmd[cmd.index("--workers") + 1] == "2"
        assert "--trash" in cmd

        kwargs = mock_popen.call_args[1]
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] == subprocess.DEVNULL
        assert kwargs["stderr"] == subprocess.STDOUT
        assert (isolated_config / "sync.log").exists()

        assert pid_file_path("/home/u/Docs").read_text() == "4321"

    @patch("pydrivesync.sync.daemon.subprocess.Popen")
    def test_second_start_raises(self, mock_popen):
        mock_popen.return_value = Mock(pid=os.getppid())
        start_daemon("/home/u/Docs")

        with pytest.raises(DaemonAlreadyRunningError) as exc_info:
            start_daemon("/home/u/Docs")

        assert exc_info.value.pid == os.getppid()
        assert mock_popen.call_count == 1

    @patch("pydrivesync.sync.daemon.subprocess.Popen")
    def test_refused_while_target_locked(self, mock_popen):
        held = acquire_target_lock("/home/u/Docs")
        try:
            with pytest.raises(DaemonAlreadyRunningError):
                start_daemon("/home/u/Docs")
        finally:
            release_target_lock(held)
        mock_popen.assert_not_called()
        assert not pid_file_path("/home/u/Docs").exists()

    @patch("pydrivesync.sync.daemon.subprocess.Popen")
    def test_stale_pid_does_not_block_start(self, mock_popen):
        write_pid_file("/home/u/Docs", DEAD_PID)
        mock_popen.return_value = Mock(pid=4321)

        assert start_daemon("/home/u/Docs") == 4321


class TestStopDaemon:
    """Tests for stop_daemon and stop_all_daemons."""

    def test_stop_never_started(self):
        assert stop_daemon("/home/u/Docs") == (False, None)

    def test_stop_never_started_strict(self):
        with pytest.raises(DaemonNotRunningError):
            stop_daemon("/home/u/Docs", strict=True)

    @patch("pydrivesync.sync.daemon.time.sleep")
    @patch("pydrivesync.sync.daemon.os.kill")
    def test_stop_sends_sigterm(self, mock_kill, mock_sleep):
        alive = {"value": True}

        def kill(pid, sig):
            if sig == signal.SIGTERM:
                alive["value"] = False
            elif sig == 0 and not alive["value"]:
                raise ProcessLookupError

        mock_kill.side_effect = kill
        path = write_pid_file("/home/u/Docs", 4321)

        stopped, pid = stop_daemon("/home/u/Docs")

        assert (stopped, pid) == (True, 4321)
        mock_kill.assert_any_call(4321, signal.SIGTERM)
        assert (4321, signal.SIGKILL) not in [c[0] for c in mock_kill.call_args_list]
        assert not path.exists()

    @patch("pydrivesync.sync.daemon.os.kill")
    def test_stop_escalates_to_sigkill(self, mock_kill):
        write_pid_file("/home/u/Docs", 4321)

        stopped, _ = stop_daemon(
            "/home/u/Docs", timeout=0.05, force=True, poll_interval=0.01
        )

        assert stopped is True
        mock_kill.assert_any_call(4321, signal.SIGKILL)

    @patch("pydrivesync.sync.daemon.os.kill")
    def test_busy_daemon_left_running_without_force(self, mock_kill):
        path = write_pid_file("/home/u/Docs", 4321)

        stopped, pid = stop_daemon("/home/u/Docs", timeout=0.05, poll_interval=0.01)

        assert (stopped, pid) == (False, 4321)
        sent = [c[0][1] for c in mock_kill.call_args_list]
        assert signal.SIGTERM in sent
        assert signal.SIGKILL not in sent
        assert path.exists()

    @patch("pydrivesync.sync.daemon.os.kill")
    def test_stop_all_skips_busy_daemon_without_force(self, mock_kill):
        path = write_pid_file("/home/u/Docs", 4321)

        assert stop_all_daemons(timeout=0.05, poll_interval=0.01) == []
        assert path.exists()

    @patch("pydrivesync.sync.daemon._terminate")
    @patch("pydrivesync.sync.daemon.is_process_running", return_value=True)
    def test_stop_all(self, mock_running, mock_terminate):
        write_pid_file("/home/u/Docs", 1111)
        write_pid_file("/home/u/Music", 2222)

        stopped = stop_all_daemons()

        assert sorted(stopped) == [1111, 2222]
        assert mock_terminate.call_count == 2
        assert not pid_file_path("/home/u/Docs").exists()

    def test_stop_all_without_runtime_dir(self):
        assert stop_all_daemons() == []


class TestRunForeground:
    """Tests for run_foreground and DaemonController."""

    def test_pid_file_exists_while_running(self):
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"
        seen = {}

        def start(stop_event=None, once=False):
            seen["status"] = get_daemon_status("/home/u/Docs")
            seen["once"] = once

        engine.start.side_effect = start

        run_foreground(engine, once=True)

        assert seen["status"].running is True
        assert seen["status"].pid == os.getpid()
        assert seen["once"] is True
        assert not pid_file_path("/home/u/Docs").exists()

    def test_signal_handlers_restored(self):
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"
        before = signal.getsignal(signal.SIGTERM)

        run_foreground(engine, once=True)

        assert signal.getsignal(signal.SIGTERM) == before

    def test_sigterm_sets_stop_event(self):
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"
        stop_event = threading.Event()

        def start(stop_event=None, once=False):
            handler = signal.getsignal(signal.SIGTERM)
            handler(signal.SIGTERM, None)

        engine.start.side_effect = start

        run_foreground(engine, stop_event=stop_event)
        assert stop_event.is_set()

    def test_refuses_when_other_process_runs(self):
        write_pid_file("/home/u/Docs", os.getppid())
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"

        with pytest.raises(DaemonAlreadyRunningError):
            run_foreground(engine)
        engine.start.assert_not_called()
        assert pid_file_path("/home/u/Docs").exists()

    def test_refuses_while_target_locked(self):
        held = acquire_target_lock("/home/u/Docs")
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"
        try:
            with pytest.raises(DaemonAlreadyRunningError):
                run_foreground(engine, lock_timeout=0)
        finally:
            release_target_lock(held)
        engine.start.assert_not_called()

    def test_holds_target_lock_while_running(self):
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"
        seen = {}

        def start(stop_event=None, once=False):
            with pytest.raises(DaemonAlreadyRunningError) as exc_info:
                acquire_target_lock("/home/u/Docs")
            seen["pid"] = exc_info.value.pid

        engine.start.side_effect = start

        run_foreground(engine, once=True)

        assert seen["pid"] == os.getpid()
        release_target_lock(acquire_target_lock("/home/u/Docs"))

    def test_pid_file_removed_on_error(self):
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"
        engine.start.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            run_foreground(engine)
        assert not pid_file_path("/home/u/Docs").exists()

    def test_controller(self):
        controller = DaemonController("~/Docs", account="me@example.com")
        assert controller.local_path == os.path.expanduser("~/Docs")
        assert controller.status().running is False
        assert controller.stop() == (False, None)

        with patch.object(daemon, "start_daemon", return_value=99) as mock_start:
            assert controller.start(interval=5.0) == 99
        mock_start.assert_called_once_with(
            controller.local_path,
            account="me@example.com",
            conflict_strategy=ConflictStrategy.RENAME,
            interval=5.0,
        )

    def test_controller_foreground_start(self):
        engine = Mock()
        engine.sync_config.local_path = "/home/u/Docs"
        controller = DaemonController("/home/u/Docs")

        with patch.object(daemon, "start_daemon") as mock_start:
            pid = controller.start(daemon=False, engine=engine, once=True)

        assert pid == os.getpid()
        mock_start.assert_not_called()
        assert engine.start.call_args[1]["once"] is True

    def test_controller_foreground_start_needs_engine(self):
        with pytest.raises(ValueError, match="needs an engine"):
            DaemonController("/home/u/Docs").start(daemon=False)
