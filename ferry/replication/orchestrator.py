"""Discovery-and-replicate cycle for the watched directory.

Each tick lists the watched directory (one level, no recursion), drops files
the dedup tracker has already seen, and routes every remaining file through
enqueue -> transfer with retry -> queue update -> audit, one file at a time.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from ferry.replication.dedup import DedupTracker
from ferry.replication.retry import RetryController
from ferry.replication.store import ReplicationStore, StoreError
from ferry.schemas.replication import (
    AuditRecord,
    CandidateFile,
    ReplicationOutcome,
    ReplicationResult,
    ReplicationStatus,
    TickSummary,
    TransferResult,
)

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Raised when the watched directory cannot be listed."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _creation_time(stat_result) -> datetime:
    """Best available creation time: st_birthtime where the OS has it, else st_ctime."""
    ts = getattr(stat_result, "st_birthtime", None) or stat_result.st_ctime
    return datetime.fromtimestamp(ts, UTC)


class ReplicationOrchestrator:
    """Drives newly discovered files through the replication pipeline.

    Usage::

        orchestrator = ReplicationOrchestrator(
            watch_dir=Path("/mnt/ferry/files"),
            store=store,
            retry=RetryController(transport),
            tracker=DedupTracker(),
            source_region="EastUS2",
            target_region="CentralUS",
        )
        summary = await orchestrator.tick()
    """

    def __init__(
        self,
        *,
        watch_dir: str | Path,
        store: ReplicationStore,
        retry: RetryController,
        tracker: DedupTracker,
        source_region: str,
        target_region: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._watch_dir = Path(watch_dir)
        self._store = store
        self._retry = retry
        self._tracker = tracker
        self._source_region = source_region
        self._target_region = target_region
        self._clock = clock
        self._tick_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self) -> list[CandidateFile]:
        """List regular files directly inside the watched directory, sorted by name.

        Raises:
            DiscoveryError: If the directory is missing or cannot be listed.
        """
        if not self._watch_dir.is_dir():
            raise DiscoveryError(f"Watched directory does not exist: {self._watch_dir}")

        try:
            entries = sorted(self._watch_dir.iterdir())
        except OSError as exc:
            raise DiscoveryError(f"Cannot list {self._watch_dir}: {exc}") from exc

        candidates = []
        for item in entries:
            try:
                if not item.is_file():
                    continue
                st = item.stat()
            except OSError as exc:
                # Removed or replaced between listing and stat.
                logger.warning("Skipping %s: %s", item, exc)
                continue
            candidates.append(
                CandidateFile(
                    path=str(item),
                    name=item.name,
                    size_bytes=st.st_size,
                    observed_creation_time=_creation_time(st),
                )
            )
        return candidates

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickSummary:
        """Run one discovery-and-replicate cycle.

        Never raises for per-file problems or an unreachable directory. If a
        tick is already running, returns immediately with ``ran=False``.
        """
        if self._tick_lock.locked():
            logger.warning("Previous tick still running, skipping this one")
            return TickSummary(ran=False)

        async with self._tick_lock:
            return await self._run_tick()

    async def _run_tick(self) -> TickSummary:
        logger.debug("Tick started: watch_dir=%s", self._watch_dir)

        try:
            candidates = await asyncio.to_thread(self.discover)
        except DiscoveryError as exc:
            logger.error("Discovery failed: %s", exc)
            return TickSummary()

        new_files = [c for c in candidates if not self._tracker.seen(c.dedup_key)]
        if not new_files:
            logger.info("No new files detected")
            return TickSummary()

        logger.info("Detected %d new file(s) for replication", len(new_files))
        summary = TickSummary(discovered=len(new_files))

        for candidate in new_files:
            try:
                result = await self.replicate(candidate)
            except Exception:
                summary.errors += 1
                logger.exception("Failed to process file: %s", candidate.path)
                continue

            summary.results.append(result)
            if result.handled:
                self._tracker.mark_seen(candidate.dedup_key)

            if result.outcome == ReplicationOutcome.COMPLETED:
                summary.completed += 1
            elif result.outcome == ReplicationOutcome.FAILED:
                summary.failed += 1
            else:
                summary.not_queued += 1

        self._tracker.maybe_reset()

        logger.info(
            "Tick finished: discovered=%d completed=%d failed=%d not_queued=%d errors=%d",
            summary.discovered,
            summary.completed,
            summary.failed,
            summary.not_queued,
            summary.errors,
        )
        return summary

    # ------------------------------------------------------------------
    # Single file
    # ------------------------------------------------------------------

    async def replicate(self, candidate: CandidateFile) -> ReplicationResult:
        """Route one file through enqueue, transfer, queue update and audit.

        The Pending queue record is written before any transfer attempt. If
        that write fails the file is reported NOT_QUEUED and nothing else
        happens. Failures of the later update/audit writes are logged and
        collected in ``store_errors``; the transfer is not repeated. An unexpected
        error from the transfer step is recorded as a Failed replication.
        """
        upload_time = candidate.observed_creation_time
        start_time = self._clock()

        logger.info("Processing: file=%s size=%d", candidate.name, candidate.size_bytes)

        try:
            queue_id = self._store.insert_queue_record(
                file_name=candidate.name,
                file_size=candidate.size_bytes,
                source_region=self._source_region,
                target_region=self._target_region,
                upload_time=upload_time,
            )
        except StoreError as exc:
            logger.error("Could not enqueue file=%s: %s", candidate.name, exc)
            return ReplicationResult(
                file_name=candidate.name,
                path=candidate.path,
                outcome=ReplicationOutcome.NOT_QUEUED,
                error_message=str(exc),
            )

        try:
            transfer = await self._retry.send(candidate.path, candidate.name)
        except Exception as exc:
            # The Pending row exists; close it out as Failed instead of orphaning it.
            logger.exception(
                "Unexpected transfer error: queue_id=%d file=%s", queue_id, candidate.name
            )
            transfer = TransferResult(remote_path=candidate.name, attempts=0, failure=exc)

        end_time = self._clock()
        duration_ms = max(0, int((end_time - start_time).total_seconds() * 1000))
        status = ReplicationStatus.COMPLETED if transfer.ok else ReplicationStatus.FAILED
        store_errors: list[str] = []

        try:
            self._store.update_queue_record(queue_id, status, start_time, end_time)
        except StoreError as exc:
            logger.error(
                "Queue update failed: queue_id=%d file=%s status=%s error=%s",
                queue_id,
                candidate.name,
                status.value,
                exc,
            )
            store_errors.append(str(exc))

        audit = AuditRecord(
            file_name=candidate.name,
            file_size=candidate.size_bytes,
            status=status,
            source_region=self._source_region,
            target_region=self._target_region,
            upload_time=upload_time,
            replication_time=end_time,
            replication_duration_ms=duration_ms,
            error_message=transfer.error_message,
        )
        try:
            self._store.insert_audit_record(audit)
        except StoreError as exc:
            logger.error(
                "Audit insert failed: queue_id=%d file=%s status=%s error=%s",
                queue_id,
                candidate.name,
                status.value,
                exc,
            )
            store_errors.append(str(exc))

        if transfer.ok:
            logger.info(
                "Replicated: queue_id=%d file=%s duration_ms=%d attempts=%d",
                queue_id,
                candidate.name,
                duration_ms,
                transfer.attempts,
            )
            outcome = ReplicationOutcome.COMPLETED
        else:
            logger.error(
                "Replication failed: queue_id=%d file=%s attempts=%d error=%s",
                queue_id,
                candidate.name,
                transfer.attempts,
                transfer.error_message,
            )
            outcome = ReplicationOutcome.FAILED

        return ReplicationResult(
            file_name=candidate.name,
            path=candidate.path,
            outcome=outcome,
            queue_id=queue_id,
            attempts=transfer.attempts,
            duration_ms=duration_ms,
            error_message=transfer.error_message,
            store_errors=store_errors,
        )
