"""Job handlers for the three benchmark job types.

This module provides the BenchmarkJobExecutor class that runs one payload
to completion. Handlers raise on failure; the scheduler decides whether
the owning jobs are requeued or terminally failed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime

import numpy as np

from peer_benchmarking.calculator import BenchmarkCalculator
from peer_benchmarking.config import SchedulerConfig
from peer_benchmarking.exceptions import BenchmarkError, TransientComputeError
from peer_benchmarking.inflight import InFlightRegistry
from peer_benchmarking.jobs.models import (
    BenchmarkJobResult,
    BenchmarkUpdate,
    BenchmarkUpdatePayload,
    JobPayload,
    JobPriority,
    PeerGroupRefreshPayload,
    PercentileRecalcPayload,
    UpdateReason,
)
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.peers.catalog import PeerGroupCatalog
from peer_benchmarking.peers.models import BREAKPOINT_PERCENTILES, ScoreDistribution
from peer_benchmarking.storage.repos import PeerGroupSnapshotDTO
from peer_benchmarking.storage.store import BenchmarkStore

logger = logging.getLogger(__name__)

# Default values
DEFAULT_MIN_MEMBERS_FOR_DISTRIBUTION = 20


class BenchmarkJobExecutor:
    """Executes benchmark job payloads.

    Job types:
        BENCHMARK_UPDATE: recompute one address under its in-flight marker.
            Scheduled updates never create follow-up jobs.
        PEER_GROUP_REFRESH: write a new snapshot, then deactivate all but the
            newest ``snapshot_retention`` snapshots, then schedule a LOW
            percentile recalculation.
        PERCENTILE_RECALC: re-rank stored members of a group against its
            latest active snapshot.

    Example:
        ```python
        executor = BenchmarkJobExecutor(calculator, store, queue, inflight, catalog)
        result = await executor.execute(PeerGroupRefreshPayload("defi_native"), config=config)
        ```
    """

    def __init__(
        self,
        calculator: BenchmarkCalculator,
        store: BenchmarkStore,
        queue: JobQueue,
        inflight: InFlightRegistry,
        catalog: PeerGroupCatalog,
        *,
        min_members_for_distribution: int = DEFAULT_MIN_MEMBERS_FOR_DISTRIBUTION,
    ) -> None:
        """Initialize the executor.

        Args:
            calculator: Benchmark calculator.
            store: Backing store.
            queue: Job queue for follow-up jobs.
            inflight: Per-address in-flight markers.
            catalog: Peer group catalog.
            min_members_for_distribution: Scored members needed before a
                snapshot uses empirical quantiles instead of nominal stats.
        """
        self._calculator = calculator
        self._store = store
        self._queue = queue
        self._inflight = inflight
        self._catalog = catalog
        self._min_members = min_members_for_distribution

    async def execute(
        self,
        payload: JobPayload,
        *,
        config: SchedulerConfig,
        job_ids: Sequence[int] = (),
        now: datetime | None = None,
    ) -> BenchmarkJobResult:
        """Run one payload.

        Raises:
            BenchmarkError: On any failure. Errors outside the taxonomy are
                wrapped as TransientComputeError.
        """
        started = time.monotonic()
        processed = 0
        updated = 0
        try:
            if isinstance(payload, BenchmarkUpdatePayload):
                update = await self.update_address(payload.address, config=config, now=now)
                processed = 1
                updated = 1 if update is not None else 0
            elif isinstance(payload, PeerGroupRefreshPayload):
                await self.refresh_peer_group(payload.peer_group_id, config=config, now=now)
            elif isinstance(payload, PercentileRecalcPayload):
                processed, updated = await self.recalculate_percentiles(payload.peer_group_id, now=now)
            else:
                raise TransientComputeError(f"Unsupported job payload: {payload!r}")
        except BenchmarkError:
            raise
        except Exception as e:
            raise TransientComputeError(f"{payload.job_type.value} job for {payload.target} failed: {e}") from e

        return BenchmarkJobResult(
            job_ids=tuple(job_ids),
            success=True,
            processed_addresses=processed,
            updated_benchmarks=updated,
            processing_time_ms=round((time.monotonic() - started) * 1000, 3),
        )

    async def update_address(
        self,
        address: str,
        *,
        config: SchedulerConfig,
        reason: UpdateReason = UpdateReason.SCHEDULED,
        now: datetime | None = None,
    ) -> BenchmarkUpdate | None:
        """Recompute and persist one address.

        With ``reason=SCORE_UPDATE`` a percentile shift of at least the
        medium threshold schedules a MEDIUM peer group refresh.

        Returns:
            The percentile movement, or None if another computation holds
            the address's in-flight marker.
        """
        ts = now or datetime.now(UTC)
        async with self._inflight.hold(address) as acquired:
            if not acquired:
                logger.debug("Skipping %s; computation already in flight", address)
                return None
            previous = await self._store.get_benchmark_record(address)
            computation = await self._calculator.compute(
                address,
                update_frequency_seconds=config.update_frequency_seconds,
                now=ts,
            )
            await self._store.upsert_benchmark_record(computation.record)

        record = computation.record
        from_score_update = reason is UpdateReason.SCORE_UPDATE
        if previous is not None and previous.peer_group_id != record.peer_group_id:
            reason = UpdateReason.PEER_GROUP_CHANGE
        component_changes: dict[str, float] = {}
        if previous is not None:
            for name, value in record.component_percentiles.items():
                before = previous.component_percentiles.get(name)
                if before is not None:
                    component_changes[name] = round(value - before, 1)

        update = BenchmarkUpdate(
            address=address,
            previous_percentile=previous.overall_percentile if previous else None,
            new_percentile=record.overall_percentile,
            component_changes=component_changes,
            update_timestamp=ts,
            update_reason=reason,
            peer_group_id=record.peer_group_id,
            previous_peer_group_id=previous.peer_group_id if previous else None,
        )
        # Only live score updates feed back into scheduling
        if from_score_update:
            await self._react_to_shift(update, config, now=ts)
        return update

    async def _react_to_shift(self, update: BenchmarkUpdate, config: SchedulerConfig, *, now: datetime) -> None:
        change = abs(update.percentile_change)
        thresholds = config.priority_thresholds
        if change >= thresholds.high and change > 0:
            logger.info(
                "Significant percentile shift for %s: %.1f -> %.1f",
                update.address,
                update.previous_percentile,
                update.new_percentile,
            )
        if change >= thresholds.medium and change > 0 and update.peer_group_id:
            payload = PeerGroupRefreshPayload(peer_group_id=update.peer_group_id)
            if not await self._queue.has_open_job(payload):
                await self._queue.create(payload, JobPriority.MEDIUM, now=now)

    async def refresh_peer_group(
        self,
        peer_group_id: str,
        *,
        config: SchedulerConfig,
        now: datetime | None = None,
    ) -> int:
        """Write a new snapshot for a peer group.

        Returns:
            The new snapshot id.
        """
        ts = now or datetime.now(UTC)
        group = self._catalog.get(peer_group_id)

        records = await self._store.list_records_by_peer_group(group.id)
        scores = [r.overall_score for r in records if r.overall_score is not None]
        if len(scores) >= self._min_members:
            values = np.asarray(scores, dtype=float)
            quantiles = np.percentile(values, BREAKPOINT_PERCENTILES)
            distribution = ScoreDistribution(*(float(q) for q in quantiles))
            member_count = len(scores)
            average_score = round(float(values.mean()), 2)
        else:
            distribution = group.score_range
            member_count = group.member_count
            average_score = group.average_score

        snapshot_id = await self._store.insert_peer_group_snapshot(
            PeerGroupSnapshotDTO(
                peer_group_id=group.id,
                member_count=member_count,
                average_score=average_score,
                score_distribution=distribution,
                snapshot_timestamp=ts,
            )
        )
        # Insert first so the group always has an active snapshot
        deactivated = await self._store.deactivate_older_than(group.id, config.snapshot_retention)
        logger.info(
            "Peer group %s snapshot %d written (%d members, %d deactivated)",
            group.id,
            snapshot_id,
            member_count,
            deactivated,
        )

        recalc = PercentileRecalcPayload(peer_group_id=group.id)
        if not await self._queue.has_open_job(recalc):
            await self._queue.create(recalc, JobPriority.LOW, now=ts)
        return snapshot_id

    async def recalculate_percentiles(
        self,
        peer_group_id: str,
        *,
        now: datetime | None = None,
    ) -> tuple[int, int]:
        """Re-rank stored members of a peer group.

        last_updated is left unchanged; only percentiles and the benchmark
        timestamp move.

        Returns:
            (members processed, members updated)
        """
        ts = now or datetime.now(UTC)
        group = self._catalog.get(peer_group_id)
        snapshot = await self._store.get_latest_active_snapshot(group.id)
        records = await self._store.list_records_by_peer_group(group.id)

        updated = 0
        for record in records:
            rankings = self._calculator.rerank(
                record,
                distribution=snapshot.score_distribution if snapshot else None,
                total_in_group=snapshot.member_count if snapshot else None,
            )
            if rankings is None:
                continue
            await self._store.update_benchmark_record(
                record.address,
                {
                    "overall_percentile": rankings.overall.percentile,
                    "component_percentiles": rankings.component_percentiles(),
                    "benchmark_timestamp": ts,
                },
            )
            updated += 1

        logger.info("Recalculated percentiles for %d/%d members of %s", updated, len(records), group.id)
        return len(records), updated
