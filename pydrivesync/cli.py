"""CLI interface for pydrivesync."""

import logging
from typing import Any, Optional

import click

from .api import DriveClient
from .config import config
from .exceptions import (
    ConfigAlreadyExistsError,
    ConfigNotFoundError,
    CorruptStoreError,
    DaemonAlreadyRunningError,
    DriveAPIError,
)
from .output import OutputFormatter
from .sync import (
    DaemonController,
    SyncEngine,
    SyncStore,
    get_daemon_status,
    parse_conflict_strategy,
    stop_all_daemons,
    stop_daemon,
)
from .sync.conflict import ConflictStrategy
from .sync.daemon import DEFAULT_STOP_TIMEOUT
from .sync.executor import DEFAULT_MAX_WORKERS


def _format_time(value: Any) -> str:
    return value.isoformat(timespec="seconds") if value else "-"


def _open_store(ctx: Any) -> SyncStore:
    """Open the sync database or exit with an error."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        return SyncStore()
    except CorruptStoreError as e:
        out.error(str(e))
        ctx.exit(1)


def _parse_conflict(ctx: Any, param: Any, value: Optional[str]) -> ConflictStrategy:
    try:
        return parse_conflict_strategy(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.option(
    "--account",
    "-a",
    envvar="PYDRIVESYNC_ACCOUNT",
    help="Google account whose token is used for Drive access",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pydrivesync")
@click.pass_context
def main(
    ctx: Any,
    account: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """pydrivesync - Keep local directories in two-way sync with Google Drive."""
    # Store settings in context for subcommands to access
    ctx.ensure_object(dict)
    ctx.obj["account"] = account
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    # Configure logging based on verbose flag
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pydrivesync").setLevel(logging.DEBUG)
    else:
        # Set default logging level to WARNING to suppress debug/info messages
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.argument("local_path", type=click.Path(file_okay=True, dir_okay=True))
@click.option(
    "--drive-folder",
    "-f",
    "drive_folder_id",
    required=True,
    help="ID of the Drive folder to sync with",
)
@click.option("--drive-id", default="", help="Shared drive ID (omit for My Drive)")
@click.pass_context
def init(ctx: Any, local_path: str, drive_folder_id: str, drive_id: str) -> None:
    """Register a local directory for sync with a Drive folder.

    LOCAL_PATH: Local directory (created if missing)
    """
    out: OutputFormatter = ctx.obj["out"]
    store = _open_store(ctx)

    try:
        sync_config = store.create_config(local_path, drive_folder_id, drive_id)
    except (ConfigAlreadyExistsError, ValueError) as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        store.close()

    if out.json_output:
        out.output_json({"created": True, **sync_config.to_dict()})
        return

    out.success(f"Sync configured for {sync_config.local_path}")
    out.print_summary(
        "Sync Configuration",
        [
            ("ID", sync_config.id),
            ("Local path", sync_config.local_path),
            ("Drive folder", sync_config.drive_folder_id),
            ("Shared drive", sync_config.drive_id or "-"),
        ],
    )


@main.command("list")
@click.pass_context
def list_configs(ctx: Any) -> None:
    """List sync configurations."""
    out: OutputFormatter = ctx.obj["out"]
    store = _open_store(ctx)
    try:
        configs = store.list_configs()
    finally:
        store.close()

    if out.json_output:
        out.output_json(
            {"configs": [c.to_dict() for c in configs], "count": len(configs)}
        )
        return

    if not configs:
        out.info("No sync configurations")
        return

    out.output_table(
        [
            {
                "id": c.id,
                "local_path": c.local_path,
                "drive_folder_id": c.drive_folder_id,
                "created_at": _format_time(c.created_at),
                "last_sync_at": _format_time(c.last_sync_at),
            }
            for c in configs
        ],
        ["id", "local_path", "drive_folder_id", "created_at", "last_sync_at"],
        {
            "id": "ID",
            "local_path": "LOCAL PATH",
            "drive_folder_id": "DRIVE FOLDER",
            "created_at": "CREATED",
            "last_sync_at": "LAST SYNC",
        },
    )


@main.command()
@click.argument("local_path", type=click.Path())
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def remove(ctx: Any, local_path: str, yes: bool) -> None:
    """Remove a sync configuration and its tracked state.

    Local and remote files are left untouched. A running daemon for the
    directory is stopped first.

    LOCAL_PATH: Local directory of the sync configuration
    """
    out: OutputFormatter = ctx.obj["out"]
    store = _open_store(ctx)

    try:
        sync_config = store.get_config(local_path)
        if sync_config is None:
            raise ConfigNotFoundError(local_path)

        if not yes and not out.json_output:
            if not click.confirm(
                f"Remove sync config for {sync_config.local_path}?", default=False
            ):
                out.warning("Removal cancelled")
                return

        stopped, pid = stop_daemon(sync_config.local_path)
        if stopped:
            out.info(f"Stopped sync daemon (PID {pid})")
        elif pid is not None:
            out.error(
                f"Sync daemon (PID {pid}) is still running, "
                "stop it with 'pydrivesync stop --force' first"
            )
            ctx.exit(1)
        store.remove_config(sync_config.local_path)
    except ConfigNotFoundError as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        store.close()

    if out.json_output:
        out.output_json({"removed": True, "local_path": sync_config.local_path})
    else:
        out.success(f"Removed sync config for {sync_config.local_path}")


@main.command()
@click.pass_context
def status(ctx: Any) -> None:
    """Show sync status and daemon state of every configuration."""
    out: OutputFormatter = ctx.obj["out"]
    store = _open_store(ctx)
    try:
        statuses = store.list_statuses()
    finally:
        store.close()

    daemons = {s.config.id: get_daemon_status(s.config.local_path) for s in statuses}

    if out.json_output:
        out.output_json(
            {
                "statuses": [
                    {**s.to_dict(), "daemon": daemons[s.config.id].to_dict()}
                    for s in statuses
                ],
                "count": len(statuses),
            }
        )
        return

    if not statuses:
        out.info("No sync configurations")
        return

    rows = []
    for s in statuses:
        daemon = daemons[s.config.id]
        rows.append(
            {
                "id": s.config.id,
                "local_path": s.config.local_path,
                "total": s.total_items,
                "synced": s.synced_items,
                "pending": s.pending_items,
                "conflict": s.conflict_items,
                "error": s.error_items,
                "last_sync": _format_time(s.config.last_sync_at),
                "daemon": f"running ({daemon.pid})" if daemon.running else "-",
            }
        )

    out.output_table(
        rows,
        [
            "id",
            "local_path",
            "total",
            "synced",
            "pending",
            "conflict",
            "error",
            "last_sync",
            "daemon",
        ],
        {
            "id": "ID",
            "local_path": "LOCAL PATH",
            "last_sync": "LAST SYNC",
        },
    )


@main.command()
@click.argument("local_path", type=click.Path())
@click.option("--daemon", "-d", is_flag=True, help="Run as background daemon")
@click.option("--internal-daemon", is_flag=True, hidden=True)
@click.option(
    "--conflict",
    "conflict_strategy",
    default="rename",
    callback=_parse_conflict,
    help="Conflict resolution strategy: rename (default), local-wins, remote-wins",
)
@click.option(
    "--interval",
    type=float,
    default=None,
    help="Seconds between sync passes (default: PYDRIVESYNC_POLL_INTERVAL or 30)",
)
@click.option(
    "--workers",
    "-j",
    type=int,
    default=DEFAULT_MAX_WORKERS,
    help=f"Number of parallel transfers (default: {DEFAULT_MAX_WORKERS})",
)
@click.option("--once", is_flag=True, help="Run a single pass and exit")
@click.option(
    "--trash", is_flag=True, help="Move deleted local files to the system trash"
)
@click.pass_context
def start(
    ctx: Any,
    local_path: str,
    daemon: bool,
    internal_daemon: bool,
    conflict_strategy: ConflictStrategy,
    interval: Optional[float],
    workers: int,
    once: bool,
    trash: bool,
) -> None:
    """Start syncing a configured directory.

    Runs in the foreground until interrupted, or in the background with
    --daemon.

    LOCAL_PATH: Local directory of the sync configuration
    """
    out: OutputFormatter = ctx.obj["out"]
    account: Optional[str] = ctx.obj["account"]

    if workers < 1:
        out.error("Workers must be at least 1")
        ctx.exit(1)

    store = _open_store(ctx)
    try:
        sync_config = store.get_config(local_path)
        if sync_config is None:
            out.error(
                f"sync config not found: {local_path} (use 'pydrivesync init' first)"
            )
            ctx.exit(1)

        controller = DaemonController(
            sync_config.local_path, account=account, conflict_strategy=conflict_strategy
        )

        if daemon and not internal_daemon:
            try:
                pid = controller.start(
                    interval=interval, max_workers=workers, use_trash=trash
                )
            except DaemonAlreadyRunningError as e:
                out.error(str(e))
                ctx.exit(1)
            if out.json_output:
                out.output_json({"started": True, "pid": pid})
            else:
                out.success(f"Started sync daemon (PID {pid})")
                out.info(f"Log file: {config.log_path}")
            return

        if internal_daemon:
            logging.basicConfig(
                level=logging.INFO,
                format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                force=True,
            )

        try:
            client = DriveClient(access_token=config.get_access_token(account))
        except DriveAPIError as e:
            out.error(str(e))
            ctx.exit(1)

        engine = SyncEngine(
            store,
            client,
            sync_config,
            conflict_strategy=conflict_strategy,
            interval=interval,
            max_workers=workers,
            use_trash=trash,
            output=None if internal_daemon else out,
        )

        if not internal_daemon:
            out.info(
                f"Starting sync for {sync_config.local_path} -> "
                f"{sync_config.drive_folder_id}"
            )
            if not once:
                out.info("Press Ctrl+C to stop")

        try:
            controller.start(daemon=False, engine=engine, once=once)
        except (DaemonAlreadyRunningError, CorruptStoreError) as e:
            out.error(str(e))
            ctx.exit(1)
        finally:
            client.close()

        if not internal_daemon:
            out.info("Sync stopped")
    finally:
        store.close()


@main.command()
@click.argument("local_path", type=click.Path(), required=False, default=None)
@click.option(
    "--timeout",
    "-t",
    type=float,
    default=DEFAULT_STOP_TIMEOUT,
    show_default=True,
    help="Seconds to wait for the daemon to finish its transfers and exit",
)
@click.option(
    "--force", is_flag=True, help="Kill the daemon if it outlives the timeout"
)
@click.pass_context
def stop(ctx: Any, local_path: Optional[str], timeout: float, force: bool) -> None:
    """Stop the sync daemon of a directory, or every daemon.

    The daemon is asked to finish its in-flight transfers and exit. Without
    --force a daemon that is still busy after the timeout keeps running.

    LOCAL_PATH: Local directory of the sync configuration (optional)
    """
    out: OutputFormatter = ctx.obj["out"]

    if local_path is not None:
        stopped, pid = stop_daemon(local_path, timeout=timeout, force=force)
        if not stopped and pid is not None:
            message = f"daemon (PID {pid}) still running after {timeout}s"
            if out.json_output:
                out.output_json({"stopped": False, "pid": pid, "error": message})
            else:
                out.error(f"{message}, retry with --force to kill it")
            ctx.exit(1)
        pids = [pid] if stopped and pid is not None else []
    else:
        pids = stop_all_daemons(timeout=timeout, force=force)

    if not pids:
        if out.json_output:
            out.output_json({"stopped": False, "error": "daemon not running"})
        else:
            out.info("daemon is not running")
        return

    if out.json_output:
        out.output_json({"stopped": True, "pid": pids[0] if len(pids) == 1 else pids})
        return

    for pid in pids:
        out.success(f"Stopped sync daemon (PID {pid})")


@main.command()
@click.argument("local_path", type=click.Path())
@click.option(
    "--limit", "-n", type=int, default=20, help="Number of entries to show"
)
@click.pass_context
def log(ctx: Any, local_path: str, limit: int) -> None:
    """Show recent sync activity of a directory.

    LOCAL_PATH: Local directory of the sync configuration
    """
    out: OutputFormatter = ctx.obj["out"]
    store = _open_store(ctx)
    try:
        sync_config = store.get_config(local_path)
        if sync_config is None:
            out.error(str(ConfigNotFoundError(local_path)))
            ctx.exit(1)
        entries = store.get_recent_logs(sync_config.id, limit=limit)
    finally:
        store.close()

    if out.json_output:
        out.output_json({"entries": [e.to_dict() for e in entries]})
        return

    if not entries:
        out.info("No sync activity yet")
        return

    out.output_table(
        [
            {
                "timestamp": _format_time(e.timestamp),
                "action": e.action,
                "path": e.path or "-",
                "details": ", ".join(f"{k}={v}" for k, v in e.details.items()),
            }
            for e in entries
        ],
        ["timestamp", "action", "path", "details"],
        {"timestamp": "TIME"},
    )


if __name__ == "__main__":
    main()
