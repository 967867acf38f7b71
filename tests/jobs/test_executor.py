"""Tests for the benchmark job executor."""

from datetime import UTC, datetime, timedelta

import pytest

from peer_benchmarking.calculator import BenchmarkCalculator
from peer_benchmarking.config import SchedulerConfig
from peer_benchmarking.exceptions import TransientComputeError, UnknownPeerGroupError
from peer_benchmarking.inflight import InFlightRegistry
from peer_benchmarking.jobs.executor import BenchmarkJobExecutor
from peer_benchmarking.jobs.models import (
    BenchmarkUpdatePayload,
    JobPriority,
    JobType,
    PeerGroupRefreshPayload,
    PercentileRecalcPayload,
    UpdateReason,
)
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.peers.catalog import PeerGroupCatalog
from peer_benchmarking.peers.models import ScoreDistribution
from peer_benchmarking.storage.repos import PeerGroupSnapshotDTO
from peer_benchmarking.storage.store import BenchmarkStore

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
REFERENCE_DISTRIBUTION = ScoreDistribution(min=300, p25=500, p50=650, p75=800, p90=900, max=950)


async def _pending_jobs(queue: JobQueue, job_type: JobType) -> list:
    jobs = await queue.dequeue(100, now=NOW + timedelta(days=1))
    return [job for job in jobs if job.job_type == job_type]


# ============================================================================
# BENCHMARK_UPDATE
# ============================================================================


class TestUpdateAddress:
    """Tests for recomputing a single address."""

    @pytest.mark.asyncio
    async def test_first_computation(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        scheduler_config: SchedulerConfig,
        address: str,
    ) -> None:
        update = await executor.update_address(address, config=scheduler_config, now=NOW)

        assert update is not None
        assert update.previous_percentile is None
        assert update.percentile_change == 0.0
        assert update.new_percentile == 45.0
        assert update.peer_group_id == "veteran_active"

        record = await store.get_benchmark_record(address)
        assert record is not None
        assert record.overall_percentile == 45.0
        assert record.overall_score == 700.0
        assert record.classification_confidence == pytest.approx(62.5)
        assert record.last_updated == NOW
        assert record.update_frequency_seconds == scheduler_config.update_frequency_seconds
        assert set(record.component_percentiles) == {
            "transaction_volume",
            "transaction_frequency",
            "consistency_score",
            "risk_score",
        }

    @pytest.mark.asyncio
    async def test_skips_when_in_flight(
        self,
        executor: BenchmarkJobExecutor,
        inflight: InFlightRegistry,
        data_source,
        scheduler_config: SchedulerConfig,
        address: str,
    ) -> None:
        token = await inflight.acquire(address)
        assert token is not None

        assert await executor.update_address(address, config=scheduler_config, now=NOW) is None
        assert data_source.calls == []

    @pytest.mark.asyncio
    async def test_releases_marker_after_failure(
        self,
        executor: BenchmarkJobExecutor,
        inflight: InFlightRegistry,
        data_source,
        scheduler_config: SchedulerConfig,
        address: str,
    ) -> None:
        data_source.error = ConnectionError("rpc down")

        with pytest.raises(TransientComputeError):
            await executor.update_address(address, config=scheduler_config, now=NOW)
        assert not await inflight.is_held(address)

    @pytest.mark.asyncio
    async def test_score_update_shift_schedules_group_refresh(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        queue: JobQueue,
        scheduler_config: SchedulerConfig,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, overall_percentile=30.0))

        update = await executor.update_address(
            address, config=scheduler_config, reason=UpdateReason.SCORE_UPDATE, now=NOW
        )
        await store.upsert_benchmark_record(record_factory(address, overall_percentile=30.0))
        await executor.update_address(address, config=scheduler_config, reason=UpdateReason.SCORE_UPDATE, now=NOW)

        assert update is not None
        assert update.percentile_change == 15.0
        assert update.update_reason == UpdateReason.SCORE_UPDATE
        assert update.component_changes == {"transaction_volume": pytest.approx(-0.1)}
        refreshes = await _pending_jobs(queue, JobType.PEER_GROUP_REFRESH)
        assert len(refreshes) == 1
        assert refreshes[0].priority == JobPriority.MEDIUM
        assert refreshes[0].payload == PeerGroupRefreshPayload(peer_group_id="veteran_active")

    @pytest.mark.asyncio
    async def test_scheduled_update_schedules_nothing(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        queue: JobQueue,
        scheduler_config: SchedulerConfig,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, overall_percentile=10.0))

        update = await executor.update_address(address, config=scheduler_config, now=NOW)

        assert update is not None
        assert update.update_reason == UpdateReason.SCHEDULED
        assert update.percentile_change == 35.0
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_small_shift_schedules_nothing(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        queue: JobQueue,
        scheduler_config: SchedulerConfig,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, overall_percentile=44.0))

        update = await executor.update_address(
            address, config=scheduler_config, reason=UpdateReason.SCORE_UPDATE, now=NOW
        )

        assert update is not None
        assert update.percentile_change == 1.0
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_peer_group_change_reason(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        scheduler_config: SchedulerConfig,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address, peer_group_id="new_active"))

        update = await executor.update_address(address, config=scheduler_config, now=NOW)

        assert update is not None
        assert update.update_reason == UpdateReason.PEER_GROUP_CHANGE
        assert update.previous_peer_group_id == "new_active"
        assert update.peer_group_id == "veteran_active"


# ============================================================================
# PEER_GROUP_REFRESH
# ============================================================================


class TestRefreshPeerGroup:
    """Tests for writing peer group snapshots."""

    @pytest.mark.asyncio
    async def test_nominal_snapshot_for_small_groups(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        queue: JobQueue,
        catalog: PeerGroupCatalog,
        scheduler_config: SchedulerConfig,
    ) -> None:
        snapshot_id = await executor.refresh_peer_group("veteran_active", config=scheduler_config, now=NOW)

        snapshot = await store.get_latest_active_snapshot("veteran_active")
        group = catalog.get("veteran_active")
        assert snapshot is not None
        assert snapshot.id == snapshot_id
        assert snapshot.score_distribution == group.score_range
        assert snapshot.member_count == group.member_count

        recalcs = await _pending_jobs(queue, JobType.PERCENTILE_RECALC)
        assert [job.priority for job in recalcs] == [JobPriority.LOW]

    @pytest.mark.asyncio
    async def test_empirical_snapshot(
        self,
        calculator: BenchmarkCalculator,
        store: BenchmarkStore,
        queue: JobQueue,
        inflight: InFlightRegistry,
        catalog: PeerGroupCatalog,
        scheduler_config: SchedulerConfig,
        record_factory,
    ) -> None:
        executor = BenchmarkJobExecutor(
            calculator, store, queue, inflight, catalog, min_members_for_distribution=5
        )
        for i, score in enumerate((100, 200, 300, 400, 500)):
            address = "0x" + f"{i:02x}" * 20
            await store.upsert_benchmark_record(record_factory(address, overall_score=float(score)))
        await store.upsert_benchmark_record(record_factory("0x" + "ff" * 20, overall_score=None))

        await executor.refresh_peer_group("veteran_active", config=scheduler_config, now=NOW)

        snapshot = await store.get_latest_active_snapshot("veteran_active")
        assert snapshot is not None
        assert snapshot.member_count == 5
        assert snapshot.average_score == 300.0
        assert snapshot.score_distribution.values() == pytest.approx((100, 200, 300, 400, 460, 500))

    @pytest.mark.asyncio
    async def test_retention(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        queue: JobQueue,
        scheduler_config: SchedulerConfig,
    ) -> None:
        for minute in range(7):
            await executor.refresh_peer_group(
                "defi_native", config=scheduler_config, now=NOW + timedelta(minutes=minute)
            )

        snapshots = await store.list_peer_group_snapshots("defi_native")
        active = [s for s in snapshots if s.is_active]
        assert len(snapshots) == 7
        assert len(active) == scheduler_config.snapshot_retention
        latest = await store.get_latest_active_snapshot("defi_native")
        assert latest is not None
        assert latest.snapshot_timestamp == NOW + timedelta(minutes=6)
        assert len(await _pending_jobs(queue, JobType.PERCENTILE_RECALC)) == 1

    @pytest.mark.asyncio
    async def test_unknown_group(self, executor: BenchmarkJobExecutor, scheduler_config: SchedulerConfig) -> None:
        with pytest.raises(UnknownPeerGroupError):
            await executor.execute(PeerGroupRefreshPayload(peer_group_id="martians"), config=scheduler_config)


# ============================================================================
# PERCENTILE_RECALC
# ============================================================================


class TestRecalculatePercentiles:
    """Tests for re-ranking stored members."""

    @pytest.mark.asyncio
    async def test_reranks_against_latest_snapshot(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        record_factory,
        address: str,
        other_address: str,
    ) -> None:
        last_updated = NOW - timedelta(hours=1)
        await store.upsert_benchmark_record(record_factory(address, last_updated=last_updated))
        await store.upsert_benchmark_record(record_factory(other_address, overall_score=None))
        await store.insert_peer_group_snapshot(
            PeerGroupSnapshotDTO(
                peer_group_id="veteran_active",
                member_count=1000,
                average_score=640.0,
                score_distribution=REFERENCE_DISTRIBUTION,
                snapshot_timestamp=NOW,
            )
        )

        processed, updated = await executor.recalculate_percentiles("veteran_active", now=NOW)

        assert (processed, updated) == (2, 1)
        record = await store.get_benchmark_record(address)
        assert record is not None
        assert record.overall_percentile == 58.3
        assert record.benchmark_timestamp == NOW
        assert record.last_updated == last_updated
        untouched = await store.get_benchmark_record(other_address)
        assert untouched is not None
        assert untouched.overall_percentile == 45.0


# ============================================================================
# Dispatch
# ============================================================================


class TestExecute:
    """Tests for payload dispatch."""

    @pytest.mark.asyncio
    async def test_benchmark_update_result(
        self, executor: BenchmarkJobExecutor, scheduler_config: SchedulerConfig, address: str
    ) -> None:
        result = await executor.execute(
            BenchmarkUpdatePayload(address=address), config=scheduler_config, job_ids=[3, 4], now=NOW
        )

        assert result.success
        assert result.job_ids == (3, 4)
        assert result.processed_addresses == 1
        assert result.updated_benchmarks == 1

    @pytest.mark.asyncio
    async def test_percentile_recalc_result(
        self,
        executor: BenchmarkJobExecutor,
        store: BenchmarkStore,
        scheduler_config: SchedulerConfig,
        record_factory,
        address: str,
    ) -> None:
        await store.upsert_benchmark_record(record_factory(address))

        result = await executor.execute(
            PercentileRecalcPayload(peer_group_id="veteran_active"), config=scheduler_config, now=NOW
        )

        assert result.processed_addresses == 1
        assert result.updated_benchmarks == 1

    @pytest.mark.asyncio
    async def test_data_source_errors_become_transient(
        self, executor: BenchmarkJobExecutor, data_source, scheduler_config: SchedulerConfig, address: str
    ) -> None:
        data_source.error = RuntimeError("indexer timeout")

        with pytest.raises(TransientComputeError, match="indexer timeout"):
            await executor.execute(BenchmarkUpdatePayload(address=address), config=scheduler_config, now=NOW)
