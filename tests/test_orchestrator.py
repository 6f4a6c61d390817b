"""Tests for the replication orchestrator (tick and per-file pipeline)."""

import asyncio
import logging
import os
import sys
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ferry.replication.dedup import DedupTracker
from ferry.replication.orchestrator import DiscoveryError, ReplicationOrchestrator
from ferry.replication.retry import RetryController
from ferry.replication.store import ReplicationStore, StoreError
from ferry.replication.transport import TransportError
from ferry.schemas.replication import (
    CandidateFile,
    ReplicationOutcome,
    ReplicationStatus,
    TransferResult,
)


class FakeTransport:
    """Transport double. ``fail_names`` fail every attempt; others fail ``failures`` times first."""

    def __init__(self, *, failures: int = 0, fail_names: tuple[str, ...] = ()) -> None:
        self.failures = failures
        self.fail_names = fail_names
        self.calls: list[str] = []
        self._per_file: dict[str, int] = {}

    def destination_for(self, file_name: str) -> str:
        return f"/remote/{file_name}"

    async def upload(self, local_path, remote_path: str) -> None:
        self.calls.append(remote_path)
        name = remote_path.rsplit("/", 1)[-1]
        self._per_file[name] = self._per_file.get(name, 0) + 1
        if name in self.fail_names or self._per_file[name] <= self.failures:
            raise TransportError(
                f"{name} attempt {self._per_file[name]} timed out",
                host="10.20.0.4",
                remote_path=remote_path,
            )


@pytest.fixture
def watch_dir(tmp_path):
    d = tmp_path / "outbound"
    d.mkdir()
    return d


@pytest.fixture
def store(tmp_path):
    with ReplicationStore(tmp_path / "replication.db") as s:
        yield s


def _make_orchestrator(watch_dir, store, transport, *, tracker=None, max_retries=3):
    return ReplicationOrchestrator(
        watch_dir=watch_dir,
        store=store,
        retry=RetryController(
            transport, max_retries=max_retries, retry_interval=10, sleep=AsyncMock()
        ),
        tracker=tracker if tracker is not None else DedupTracker(),
        source_region="EastUS2",
        target_region="CentralUS",
    )


# ------------------------------------------------------------------
# Discovery
# ------------------------------------------------------------------


class TestDiscover:
    def test_lists_files_sorted_without_recursion(self, watch_dir, store):
        (watch_dir / "b.txt").write_bytes(b"bb")
        (watch_dir / "a.dat").write_bytes(b"a")
        sub = watch_dir / "nested"
        sub.mkdir()
        (sub / "deep.txt").write_bytes(b"deep")

        candidates = _make_orchestrator(watch_dir, store, FakeTransport()).discover()

        assert [c.name for c in candidates] == ["a.dat", "b.txt"]
        assert candidates[0].size_bytes == 1
        assert candidates[0].path == str(watch_dir / "a.dat")
        assert candidates[0].dedup_key == candidates[0].path
        assert candidates[0].observed_creation_time.tzinfo is not None

    def test_missing_dir_raises(self, tmp_path, store):
        orchestrator = _make_orchestrator(tmp_path / "missing", store, FakeTransport())
        with pytest.raises(DiscoveryError, match="does not exist"):
            orchestrator.discover()


# ------------------------------------------------------------------
# Scenarios
# ------------------------------------------------------------------


class TestScenarios:
    async def test_a_success_first_try(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"x" * 500)
        tracker = DedupTracker()
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, store, transport, tracker=tracker)

        summary = await orchestrator.tick()

        assert summary.completed == 1
        assert transport.calls == ["/remote/a.txt"]
        [queue_record] = store.list_queue()
        assert queue_record.status == ReplicationStatus.COMPLETED
        assert queue_record.file_size == 500
        assert queue_record.replication_start_time is not None
        assert queue_record.replication_end_time >= queue_record.replication_start_time
        [audit] = store.read_audit()
        assert audit.status == ReplicationStatus.COMPLETED
        assert audit.error_message is None
        assert audit.file_name == "a.txt"
        assert tracker.seen(str(watch_dir / "a.txt"))

    async def test_b_success_after_retries(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"x" * 500)
        transport = FakeTransport(failures=2)
        orchestrator = _make_orchestrator(watch_dir, store, transport, max_retries=3)

        summary = await orchestrator.tick()

        assert len(transport.calls) == 3
        assert summary.completed == 1
        assert summary.results[0].attempts == 3
        assert store.list_queue()[0].status == ReplicationStatus.COMPLETED

    async def test_c_exhausted_retries_then_continue(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"bad")
        (watch_dir / "b.txt").write_bytes(b"good")
        tracker = DedupTracker()
        transport = FakeTransport(fail_names=("a.txt",))
        orchestrator = _make_orchestrator(watch_dir, store, transport, tracker=tracker)

        summary = await orchestrator.tick()

        assert summary.failed == 1
        assert summary.completed == 1
        assert transport.calls.count("/remote/a.txt") == 3
        assert transport.calls.count("/remote/b.txt") == 1

        by_name = {r.file_name: r for r in store.list_queue()}
        assert by_name["a.txt"].status == ReplicationStatus.FAILED
        assert by_name["b.txt"].status == ReplicationStatus.COMPLETED

        failed = store.read_audit(status=ReplicationStatus.FAILED)
        assert len(failed) == 1
        assert failed[0].error_message == "a.txt attempt 3 timed out"
        # Failed files count as handled too
        assert tracker.seen(str(watch_dir / "a.txt"))

    async def test_d_empty_directory(self, watch_dir, store, caplog):
        caplog.set_level(logging.INFO)
        orchestrator = _make_orchestrator(watch_dir, store, FakeTransport())

        summary = await orchestrator.tick()

        assert summary.ran
        assert summary.discovered == 0
        assert store.list_queue() == []
        assert store.read_audit() == []
        messages = [r.getMessage() for r in caplog.records if r.levelno >= logging.INFO]
        assert messages == ["No new files detected"]

    async def test_e_missing_watch_dir(self, tmp_path, store):
        orchestrator = _make_orchestrator(tmp_path / "gone", store, FakeTransport())

        summary = await orchestrator.tick()

        assert summary.discovered == 0
        assert store.list_queue() == []
        assert store.read_audit() == []


# ------------------------------------------------------------------
# Dedup behaviour
# ------------------------------------------------------------------


class TestDedup:
    async def test_unchanged_directory_is_not_resubmitted(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"a")
        (watch_dir / "b.txt").write_bytes(b"b")
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, store, transport)

        for _ in range(4):
            await orchestrator.tick()

        assert sorted(transport.calls) == ["/remote/a.txt", "/remote/b.txt"]
        assert len(store.read_audit()) == 2

    async def test_only_new_files_processed(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"a")
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, store, transport)
        await orchestrator.tick()

        (watch_dir / "b.txt").write_bytes(b"b")
        summary = await orchestrator.tick()

        assert summary.discovered == 1
        assert transport.calls == ["/remote/a.txt", "/remote/b.txt"]

    async def test_reset_after_high_water_mark_exceeded(self, watch_dir, store):
        for name in ("a.txt", "b.txt", "c.txt"):
            (watch_dir / name).write_bytes(b"x")
        tracker = DedupTracker(high_water_mark=2)
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, store, transport, tracker=tracker)

        await orchestrator.tick()
        assert len(tracker) == 0

        # Files still present are re-submitted after the reset
        await orchestrator.tick()
        assert len(transport.calls) == 6

    async def test_no_reset_at_high_water_mark(self, watch_dir, store):
        for name in ("a.txt", "b.txt"):
            (watch_dir / name).write_bytes(b"x")
        tracker = DedupTracker(high_water_mark=2)
        orchestrator = _make_orchestrator(watch_dir, store, FakeTransport(), tracker=tracker)

        await orchestrator.tick()

        assert len(tracker) == 2


# ------------------------------------------------------------------
# Queue / audit pairing and store failures
# ------------------------------------------------------------------


class TestStoreFailures:
    async def test_every_terminal_queue_record_has_one_matching_audit(self, watch_dir, store):
        for name in ("a.txt", "b.txt", "c.txt"):
            (watch_dir / name).write_bytes(b"x")
        orchestrator = _make_orchestrator(
            watch_dir, store, FakeTransport(fail_names=("b.txt",))
        )

        await orchestrator.tick()

        audits = store.read_audit()
        for record in store.list_queue():
            matching = [
                a
                for a in audits
                if a.file_name == record.file_name
                and a.source_region == record.source_region
                and a.target_region == record.target_region
            ]
            assert len(matching) == 1
            assert matching[0].status == record.status

    async def test_enqueue_failure_skips_file_and_leaves_it_unseen(self, watch_dir):
        (watch_dir / "a.txt").write_bytes(b"a")
        store = MagicMock()
        store.insert_queue_record.side_effect = StoreError("database is locked")
        tracker = DedupTracker()
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, store, transport, tracker=tracker)

        summary = await orchestrator.tick()

        assert summary.not_queued == 1
        assert summary.results[0].outcome == ReplicationOutcome.NOT_QUEUED
        assert transport.calls == []
        store.update_queue_record.assert_not_called()
        store.insert_audit_record.assert_not_called()
        assert not tracker.seen(str(watch_dir / "a.txt"))

    async def test_update_failure_still_writes_audit(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"a")
        wrapped = MagicMock(wraps=store)
        wrapped.update_queue_record.side_effect = StoreError("disk I/O error")
        tracker = DedupTracker()
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, wrapped, transport, tracker=tracker)

        summary = await orchestrator.tick()

        result = summary.results[0]
        assert result.outcome == ReplicationOutcome.COMPLETED
        assert result.store_errors == ["disk I/O error"]
        assert len(store.read_audit()) == 1
        # Not retried on the next tick
        assert tracker.seen(str(watch_dir / "a.txt"))
        await orchestrator.tick()
        assert transport.calls == ["/remote/a.txt"]

    async def test_audit_failure_is_logged_not_raised(self, watch_dir, store, caplog):
        (watch_dir / "a.txt").write_bytes(b"a")
        wrapped = MagicMock(wraps=store)
        wrapped.insert_audit_record.side_effect = StoreError("disk full")
        orchestrator = _make_orchestrator(watch_dir, wrapped, FakeTransport())

        with caplog.at_level(logging.ERROR, logger="ferry.replication.orchestrator"):
            summary = await orchestrator.tick()

        assert summary.completed == 1
        assert store.list_queue()[0].status == ReplicationStatus.COMPLETED
        assert any("Audit insert failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.skipif(sys.platform != "linux", reason="needs byte-oriented file names")
    async def test_undecodable_file_name_is_not_queued(self, watch_dir, store):
        (watch_dir / "good.txt").write_bytes(b"a")
        bad_path = watch_dir / os.fsdecode(b"bad\xff.txt")
        bad_path.write_bytes(b"b")
        tracker = DedupTracker()
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, store, transport, tracker=tracker)

        summary = await orchestrator.tick()

        assert summary.completed == 1
        assert summary.not_queued == 1
        assert summary.errors == 0
        assert transport.calls == ["/remote/good.txt"]
        assert [r.file_name for r in store.list_queue()] == ["good.txt"]
        assert not tracker.seen(str(bad_path))


# ------------------------------------------------------------------
# Robustness and timing
# ------------------------------------------------------------------


class TestRobustness:
    async def test_unexpected_transfer_error_closes_out_as_failed(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"a")
        (watch_dir / "b.txt").write_bytes(b"b")
        retry = MagicMock()
        retry.send = AsyncMock(
            side_effect=[
                RuntimeError("bug"),
                TransferResult(remote_path="/remote/b.txt", attempts=1),
            ]
        )
        tracker = DedupTracker()
        orchestrator = ReplicationOrchestrator(
            watch_dir=watch_dir,
            store=store,
            retry=retry,
            tracker=tracker,
            source_region="EastUS2",
            target_region="CentralUS",
        )

        summary = await orchestrator.tick()

        assert summary.errors == 0
        assert summary.failed == 1
        assert summary.completed == 1
        assert retry.send.await_count == 2
        queue = {r.file_name: r for r in store.list_queue()}
        assert queue["a.txt"].status == ReplicationStatus.FAILED
        [audit] = store.read_audit(status=ReplicationStatus.FAILED)
        assert audit.file_name == "a.txt"
        assert audit.error_message == "bug"

        # No second Pending row for the same file
        assert tracker.seen(str(watch_dir / "a.txt"))
        await orchestrator.tick()
        assert len(store.list_queue()) == 2
        assert store.count_by_status()[ReplicationStatus.PENDING] == 0

    async def test_unexpected_error_before_enqueue_does_not_abort_tick(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"a")
        (watch_dir / "b.txt").write_bytes(b"b")
        wrapped = MagicMock(wraps=store)

        def insert(**kwargs):
            if kwargs["file_name"] == "a.txt":
                raise RuntimeError("bug")
            return store.insert_queue_record(**kwargs)

        wrapped.insert_queue_record.side_effect = insert
        tracker = DedupTracker()
        transport = FakeTransport()
        orchestrator = _make_orchestrator(watch_dir, wrapped, transport, tracker=tracker)

        summary = await orchestrator.tick()

        assert summary.errors == 1
        assert transport.calls == ["/remote/b.txt"]
        assert summary.completed == 1
        assert not tracker.seen(str(watch_dir / "a.txt"))

    async def test_concurrent_tick_is_skipped(self, watch_dir, store):
        (watch_dir / "a.txt").write_bytes(b"a")
        gate = asyncio.Event()

        class BlockingTransport(FakeTransport):
            async def upload(self, local_path, remote_path):
                await gate.wait()
                await super().upload(local_path, remote_path)

        transport = BlockingTransport()
        orchestrator = _make_orchestrator(watch_dir, store, transport)

        first = asyncio.create_task(orchestrator.tick())
        await asyncio.sleep(0)
        second = await orchestrator.tick()
        gate.set()
        first_summary = await first

        assert second.ran is False
        assert first_summary.completed == 1
        assert transport.calls == ["/remote/a.txt"]

    async def test_duration_and_timestamps_from_clock(self, watch_dir, store):
        start = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)
        ticks = iter([start, start + timedelta(milliseconds=2500)])
        orchestrator = ReplicationOrchestrator(
            watch_dir=watch_dir,
            store=store,
            retry=RetryController(FakeTransport(), sleep=AsyncMock()),
            tracker=DedupTracker(),
            source_region="EastUS2",
            target_region="CentralUS",
            clock=lambda: next(ticks),
        )
        created = datetime(2026, 10, 17, 11, 59, tzinfo=UTC)
        candidate = CandidateFile(
            path=str(watch_dir / "a.txt"),
            name="a.txt",
            size_bytes=500,
            observed_creation_time=created,
        )

        result = await orchestrator.replicate(candidate)

        assert result.duration_ms == 2500
        queue_record = store.get_queue_record(result.queue_id)
        assert queue_record.upload_time == created
        assert queue_record.replication_start_time == start
        assert queue_record.replication_end_time == start + timedelta(milliseconds=2500)
        audit = store.read_audit()[0]
        assert audit.replication_duration_ms == 2500
        assert audit.upload_time == created
