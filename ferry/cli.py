"""CLI entry point for the ferry replicator.

Commands:
    ferry run       — replicate new files to the remote host (periodic or --once)
    ferry status    — queue counts and recent outcomes
    ferry history   — recent audit records
    ferry queue     — recent queue records
"""

import asyncio
import logging
import signal
import sys

import click

from ferry.config import (
    REPLICATION_CONNECT_TIMEOUT_SECONDS,
    REPLICATION_DEDUP_HIGH_WATER_MARK,
    REPLICATION_KNOWN_HOSTS_PATH,
    REPLICATION_MAX_RETRIES,
    REPLICATION_OPERATION_TIMEOUT_SECONDS,
    REPLICATION_RETRY_INTERVAL_SECONDS,
    REPLICATION_SOURCE_REGION,
    REPLICATION_SSH_KEY_PASSPHRASE,
    REPLICATION_SSH_PRIVATE_KEY_BASE64,
    REPLICATION_STORE_DB_PATH,
    REPLICATION_TARGET_BASE_PATH,
    REPLICATION_TARGET_HOST,
    REPLICATION_TARGET_PORT,
    REPLICATION_TARGET_REGION,
    REPLICATION_TARGET_USER,
    REPLICATION_TICK_INTERVAL_SECONDS,
    REPLICATION_WATCH_DIR,
)

_STATUS_CHOICES = ["Pending", "Completed", "Failed"]


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Ferry — one-way replication of new files to a remote host over SFTP."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # paramiko is chatty at INFO (banner, auth negotiation).
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)


# ------------------------------------------------------------------
# ferry run
# ------------------------------------------------------------------


def _validate_replication_config(watch_dir: str, max_retries: int) -> None:
    """Fail loudly if replication config is invalid."""
    missing = []
    if not watch_dir:
        missing.append("REPLICATION_WATCH_DIR")
    if not REPLICATION_TARGET_HOST:
        missing.append("REPLICATION_TARGET_HOST")
    if not REPLICATION_SSH_PRIVATE_KEY_BASE64:
        missing.append("REPLICATION_SSH_PRIVATE_KEY_BASE64")
    if missing:
        click.echo(f"Error: Missing required config: {', '.join(missing)}", err=True)
        click.echo("Set these in secrets/internal.env, via SOPS, or as environment variables.", err=True)
        sys.exit(1)
    if max_retries < 1:
        click.echo(f"Error: --max-retries must be at least 1 (got {max_retries}).", err=True)
        sys.exit(1)


@cli.command()
@click.option(
    "--watch-dir",
    default=REPLICATION_WATCH_DIR,
    show_default=True,
    help="Directory to replicate new files from.",
)
@click.option(
    "--interval",
    default=REPLICATION_TICK_INTERVAL_SECONDS,
    show_default=True,
    type=float,
    help="Seconds between ticks.",
)
@click.option(
    "--max-retries",
    default=REPLICATION_MAX_RETRIES,
    show_default=True,
    type=int,
    help="Transfer attempts per file.",
)
@click.option(
    "--retry-interval",
    default=REPLICATION_RETRY_INTERVAL_SECONDS,
    show_default=True,
    type=float,
    help="Seconds to wait between failed attempts.",
)
@click.option("--once", is_flag=True, help="Run a single tick and exit.")
def run(watch_dir: str, interval: float, max_retries: int, retry_interval: float, once: bool) -> None:
    """Replicate new files from the watched directory to the remote host."""
    _validate_replication_config(watch_dir, max_retries)
    asyncio.run(_run_async(watch_dir, interval, max_retries, retry_interval, once))


async def _run_async(
    watch_dir: str, interval: float, max_retries: int, retry_interval: float, once: bool
) -> None:
    from ferry.replication.dedup import DedupTracker
    from ferry.replication.orchestrator import ReplicationOrchestrator
    from ferry.replication.retry import RetryController
    from ferry.replication.scheduler import run_periodic
    from ferry.replication.store import ReplicationStore
    from ferry.replication.transport import SftpTarget, SftpTransport

    target = SftpTarget(
        host=REPLICATION_TARGET_HOST,
        port=REPLICATION_TARGET_PORT,
        username=REPLICATION_TARGET_USER,
        base_path=REPLICATION_TARGET_BASE_PATH,
        private_key_b64=REPLICATION_SSH_PRIVATE_KEY_BASE64,
        key_passphrase=REPLICATION_SSH_KEY_PASSPHRASE or None,
        known_hosts_path=REPLICATION_KNOWN_HOSTS_PATH or None,
        connect_timeout=REPLICATION_CONNECT_TIMEOUT_SECONDS,
        operation_timeout=REPLICATION_OPERATION_TIMEOUT_SECONDS,
    )
    retry = RetryController(
        SftpTransport(target),
        max_retries=max_retries,
        retry_interval=retry_interval,
    )

    with ReplicationStore(REPLICATION_STORE_DB_PATH) as store:
        orchestrator = ReplicationOrchestrator(
            watch_dir=watch_dir,
            store=store,
            retry=retry,
            tracker=DedupTracker(REPLICATION_DEDUP_HIGH_WATER_MARK),
            source_region=REPLICATION_SOURCE_REGION,
            target_region=REPLICATION_TARGET_REGION,
        )

        if once:
            click.echo(f"Scanning {watch_dir} (once mode)…")
            summary = await orchestrator.tick()
            click.echo(
                f"Done. Files: {summary.discovered}, "
                f"Completed: {summary.completed}, Failed: {summary.failed}, "
                f"Not queued: {summary.not_queued}, Errors: {summary.errors}"
            )
            return

        click.echo(f"Replicating {watch_dir} -> {target.host}:{target.base_path} (Ctrl+C to stop)…")
        click.echo(f"  Interval: {interval:g}s  Retries: {max_retries} x {retry_interval:g}s")

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops.
                pass

        await run_periodic(orchestrator, interval, stop_event=stop_event)
        click.echo("Stopped.")


# ------------------------------------------------------------------
# ferry status
# ------------------------------------------------------------------


@cli.command()
@click.option("--hours", default=24, show_default=True, help="Lookback period in hours.")
def status(hours: int) -> None:
    """Quick overview of the replication queue and recent outcomes."""
    from datetime import UTC, datetime, timedelta

    from ferry.replication.store import ReplicationStore
    from ferry.schemas.replication import ReplicationStatus

    with ReplicationStore(REPLICATION_STORE_DB_PATH) as store:
        counts = store.count_by_status()
        since = datetime.now(UTC) - timedelta(hours=hours)
        records = store.read_audit(since=since)

    completed = sum(1 for r in records if r.status == ReplicationStatus.COMPLETED)
    failed = sum(1 for r in records if r.status == ReplicationStatus.FAILED)

    click.echo("Ferry Status")
    click.echo(f"  Pending:            {counts[ReplicationStatus.PENDING]}")
    click.echo(f"  Completed (total):  {counts[ReplicationStatus.COMPLETED]}")
    click.echo(f"  Failed (total):     {counts[ReplicationStatus.FAILED]}")
    click.echo(f"  Completed ({hours}h):    {completed}")
    click.echo(f"  Failed ({hours}h):       {failed}")


# ------------------------------------------------------------------
# ferry history
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["Completed", "Failed"], case_sensitive=False),
    default=None,
    help="Only show records with this outcome.",
)
@click.option("--hours", default=24, show_default=True, help="Lookback period in hours (0=all).")
@click.option("--limit", "-n", default=20, show_default=True, help="Max records to show.")
def history(status_filter: str | None, hours: int, limit: int) -> None:
    """Show recent audit records."""
    from datetime import UTC, datetime, timedelta

    from ferry.replication.store import ReplicationStore
    from ferry.schemas.replication import ReplicationStatus

    since = datetime.now(UTC) - timedelta(hours=hours) if hours > 0 else None
    status_value = ReplicationStatus(status_filter.capitalize()) if status_filter else None

    with ReplicationStore(REPLICATION_STORE_DB_PATH) as store:
        records = store.read_audit(since=since, status=status_value, limit=limit)

    if not records:
        click.echo("No audit records.")
        return

    for r in records:
        line = (
            f"{r.replication_time:%Y-%m-%d %H:%M:%S} {r.status.value:<9} "
            f"{r.file_name} ({r.file_size} bytes, {r.replication_duration_ms}ms) "
            f"{r.source_region} -> {r.target_region}"
        )
        click.echo(line)
        if r.error_message:
            click.echo(f"    error: {r.error_message}")


# ------------------------------------------------------------------
# ferry queue
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(_STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Only show records in this status.",
)
@click.option("--limit", "-n", default=20, show_default=True, help="Max records to show.")
def queue(status_filter: str | None, limit: int) -> None:
    """Show recent replication queue records, newest first."""
    from ferry.replication.store import ReplicationStore
    from ferry.schemas.replication import ReplicationStatus

    status_value = ReplicationStatus(status_filter.capitalize()) if status_filter else None

    with ReplicationStore(REPLICATION_STORE_DB_PATH) as store:
        records = store.list_queue(status=status_value, limit=limit)

    if not records:
        click.echo("Queue is empty.")
        return

    for r in records:
        click.echo(
            f"#{r.queue_id:<6} {r.status.value:<9} {r.file_name} "
            f"({r.file_size} bytes) created {r.created_date:%Y-%m-%d %H:%M:%S}"
        )
