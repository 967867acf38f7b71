"""Tests for the read-through benchmark snapshot store."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from peer_benchmarking.config import SchedulerConfig
from peer_benchmarking.exceptions import TransientComputeError, ValidationError
from peer_benchmarking.inflight import InFlightRegistry
from peer_benchmarking.jobs.models import BenchmarkUpdatePayload, JobPriority
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.snapshots import BenchmarkSnapshotStore
from peer_benchmarking.storage.repos import BenchmarkRecordDTO
from peer_benchmarking.storage.store import BenchmarkStore

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class RecordingCompute:
    """compute_fn double that records calls."""

    def __init__(self, record_factory, error: Exception | None = None) -> None:
        self._record_factory = record_factory
        self.error = error
        self.calls: list[str] = []

    async def __call__(self, address: str) -> BenchmarkRecordDTO:
        self.calls.append(address)
        if self.error is not None:
            raise self.error
        return self._record_factory(address, overall_percentile=72.0, last_updated=NOW)


@pytest.fixture
def snapshots(store: BenchmarkStore, queue: JobQueue, inflight: InFlightRegistry) -> BenchmarkSnapshotStore:
    config = SchedulerConfig(stale_threshold_seconds=1000)
    return BenchmarkSnapshotStore(
        store,
        queue,
        inflight,
        config_source=lambda: config,
        inflight_wait_seconds=0.5,
    )


@pytest.fixture
def compute(record_factory) -> RecordingCompute:
    return RecordingCompute(record_factory)


class TestIsStale:
    """Tests for the staleness rule."""

    def test_threshold(self, snapshots: BenchmarkSnapshotStore, record_factory) -> None:
        fresh = record_factory(last_updated=NOW - timedelta(seconds=900))
        old = record_factory(last_updated=NOW - timedelta(seconds=1100))

        assert not snapshots.is_stale(fresh, NOW)
        assert snapshots.is_stale(old, NOW)

    def test_flag_wins(self, snapshots: BenchmarkSnapshotStore, record_factory) -> None:
        flagged = record_factory(last_updated=NOW, is_stale=True)
        assert snapshots.is_stale(flagged, NOW)


class TestGetOrRefresh:
    """Tests for read-through refresh."""

    @pytest.mark.asyncio
    async def test_fresh_record_served_without_compute(
        self, snapshots: BenchmarkSnapshotStore, store: BenchmarkStore, compute, record_factory, address: str
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, last_updated=NOW - timedelta(seconds=900)))

        record = await snapshots.get_or_refresh(address, compute, now=NOW)

        assert record.overall_percentile == 45.0
        assert compute.calls == []

    @pytest.mark.asyncio
    async def test_miss_computes_and_stores(
        self,
        snapshots: BenchmarkSnapshotStore,
        store: BenchmarkStore,
        inflight: InFlightRegistry,
        compute,
        address: str,
    ) -> None:
        record = await snapshots.get_or_refresh(address, compute, now=NOW)

        assert record.overall_percentile == 72.0
        assert compute.calls == [address]
        stored = await store.get_benchmark_record(address)
        assert stored is not None
        assert stored.overall_percentile == 72.0
        assert not await inflight.is_held(address)

    @pytest.mark.asyncio
    async def test_stale_record_recomputed(
        self, snapshots: BenchmarkSnapshotStore, store: BenchmarkStore, compute, record_factory, address: str
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, last_updated=NOW - timedelta(seconds=1100)))

        record = await snapshots.get_or_refresh(address, compute, now=NOW)

        assert record.overall_percentile == 72.0
        assert compute.calls == [address]

    @pytest.mark.asyncio
    async def test_stale_record_served_when_job_pending(
        self,
        snapshots: BenchmarkSnapshotStore,
        store: BenchmarkStore,
        queue: JobQueue,
        compute,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, last_updated=NOW - timedelta(seconds=1100)))
        await queue.create(BenchmarkUpdatePayload(address=address), JobPriority.LOW)

        record = await snapshots.get_or_refresh(address, compute, now=NOW)

        assert record.overall_percentile == 45.0
        assert compute.calls == []

    @pytest.mark.asyncio
    async def test_stale_record_served_while_in_flight(
        self,
        snapshots: BenchmarkSnapshotStore,
        store: BenchmarkStore,
        inflight: InFlightRegistry,
        compute,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, last_updated=NOW - timedelta(seconds=1100)))
        await inflight.acquire(address)

        record = await snapshots.get_or_refresh(address, compute, now=NOW)

        assert record.overall_percentile == 45.0
        assert compute.calls == []

    @pytest.mark.asyncio
    async def test_miss_while_in_flight_times_out(
        self, snapshots: BenchmarkSnapshotStore, inflight: InFlightRegistry, compute, address: str
    ) -> None:
        await inflight.acquire(address)

        with pytest.raises(TransientComputeError, match="still being computed"):
            await snapshots.get_or_refresh(address, compute, now=NOW)
        assert compute.calls == []

    @pytest.mark.asyncio
    async def test_miss_waits_for_concurrent_computation(
        self,
        snapshots: BenchmarkSnapshotStore,
        store: BenchmarkStore,
        inflight: InFlightRegistry,
        compute,
        record_factory,
        address: str,
    ) -> None:
        token = await inflight.acquire(address)
        assert token is not None

        async def finish_elsewhere() -> None:
            await asyncio.sleep(0.01)
            await store.upsert_benchmark_record(record_factory(address, overall_percentile=61.0, last_updated=NOW))
            await inflight.release(address, token)

        task = asyncio.create_task(finish_elsewhere())
        record = await snapshots.get_or_refresh(address, compute, now=NOW)
        await task

        assert record.overall_percentile == 61.0
        assert compute.calls == []

    @pytest.mark.asyncio
    async def test_first_computation_failure_propagates(
        self,
        snapshots: BenchmarkSnapshotStore,
        queue: JobQueue,
        inflight: InFlightRegistry,
        record_factory,
        address: str,
    ) -> None:
        failing = RecordingCompute(record_factory, error=TransientComputeError("upstream down"))

        with pytest.raises(TransientComputeError):
            await snapshots.get_or_refresh(address, failing, now=NOW)

        assert await queue.has_open_job(BenchmarkUpdatePayload(address=address))
        assert not await inflight.is_held(address)

    @pytest.mark.asyncio
    async def test_refresh_failure_serves_stale(
        self,
        snapshots: BenchmarkSnapshotStore,
        store: BenchmarkStore,
        queue: JobQueue,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, last_updated=NOW - timedelta(seconds=1100)))
        failing = RecordingCompute(record_factory, error=TransientComputeError("upstream down"))

        record = await snapshots.get_or_refresh(address, failing, now=NOW)

        assert record.overall_percentile == 45.0
        (job,) = await queue.dequeue(10)
        assert job.priority == JobPriority.LOW
        assert job.payload == BenchmarkUpdatePayload(address=address)


class TestUpdate:
    """Tests for merge-upsert."""

    @pytest.mark.asyncio
    async def test_merges_into_existing(
        self, snapshots: BenchmarkSnapshotStore, store: BenchmarkStore, record_factory, address: str
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, last_updated=NOW))

        record = await snapshots.update(address, {"is_stale": True}, now=NOW)

        assert record.is_stale
        assert record.overall_percentile == 45.0
        assert record.peer_group_id == "veteran_active"

    @pytest.mark.asyncio
    async def test_creates_missing_record(self, snapshots: BenchmarkSnapshotStore, address: str) -> None:
        record = await snapshots.update(
            address, {"peer_group_id": "defi_native", "overall_percentile": 33.3}, now=NOW
        )

        assert record.peer_group_id == "defi_native"
        assert record.last_updated == NOW
        assert record.update_frequency_seconds == 300

    @pytest.mark.asyncio
    async def test_missing_record_needs_required_fields(self, snapshots: BenchmarkSnapshotStore, address: str) -> None:
        with pytest.raises(ValidationError, match="requires"):
            await snapshots.update(address, {"overall_percentile": 33.3}, now=NOW)

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, snapshots: BenchmarkSnapshotStore, address: str) -> None:
        with pytest.raises(ValidationError):
            await snapshots.update(address, {"favourite_colour": "blue"}, now=NOW)

    @pytest.mark.asyncio
    async def test_rejects_future_last_updated(self, snapshots: BenchmarkSnapshotStore, address: str) -> None:
        with pytest.raises(ValidationError, match="future"):
            await snapshots.update(
                address,
                {"peer_group_id": "defi_native", "overall_percentile": 33.3, "last_updated": NOW + timedelta(hours=1)},
                now=NOW,
            )
