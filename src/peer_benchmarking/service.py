"""Benchmark operations exposed to the API layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from peer_benchmarking.calculator import BenchmarkCalculator, BenchmarkComputation
from peer_benchmarking.exceptions import ValidationError
from peer_benchmarking.jobs.executor import BenchmarkJobExecutor
from peer_benchmarking.jobs.models import (
    BenchmarkUpdate,
    BenchmarkUpdatePayload,
    JobPayload,
    JobPriority,
    PeerGroupRefreshPayload,
    PercentileRecalcPayload,
    UpdateReason,
)
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.peers.classifier import PeerGroupClassifier
from peer_benchmarking.peers.models import PeerGroupClassification, PeerGroupMetrics, WalletMetrics
from peer_benchmarking.scheduler import RefreshScheduler
from peer_benchmarking.snapshots import BenchmarkSnapshotStore
from peer_benchmarking.storage.repos import BenchmarkRecordDTO
from peer_benchmarking.storage.store import BenchmarkStore
from peer_benchmarking.validation import normalize_address, validate_peer_group_id

logger = logging.getLogger(__name__)

# Default values
DEFAULT_FORCE_REFRESH_LIMIT = 1000


@dataclass(frozen=True)
class BenchmarkView:
    """Benchmark fields returned to API callers."""

    peer_group_id: str
    overall_percentile: float
    component_percentiles: dict[str, float]
    is_stale: bool
    last_updated: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "peer_group_id": self.peer_group_id,
            "overall_percentile": self.overall_percentile,
            "component_percentiles": dict(self.component_percentiles),
            "is_stale": self.is_stale,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class BenchmarkStats:
    """System-wide benchmark statistics."""

    total_benchmarks: int
    stale_count: int
    pending_jobs: int
    active_peer_group_count: int
    last_update_time: datetime | None
    processing_status: str
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "total_benchmarks": self.total_benchmarks,
            "stale_count": self.stale_count,
            "pending_jobs": self.pending_jobs,
            "active_peer_group_count": self.active_peer_group_count,
            "last_update_time": self.last_update_time.isoformat() if self.last_update_time else None,
            "processing_status": self.processing_status,
            "config": dict(self.config),
        }


def _delay_seconds(delay_ms: int) -> float:
    if delay_ms < 0:
        raise ValidationError("delay_ms must be non-negative")
    return delay_ms / 1000


class BenchmarkService:
    """Entry point for benchmark reads, scheduling and configuration.

    Every address is validated before it reaches classification or the job
    system; malformed input raises ValidationError.

    Example:
        ```python
        service = app.service
        view = await service.get_benchmark("0xAbC...")
        job_id = await service.schedule_update("0xAbC...", JobPriority.HIGH)
        ```
    """

    def __init__(
        self,
        store: BenchmarkStore,
        queue: JobQueue,
        snapshots: BenchmarkSnapshotStore,
        calculator: BenchmarkCalculator,
        classifier: PeerGroupClassifier,
        executor: BenchmarkJobExecutor,
        scheduler: RefreshScheduler,
        *,
        force_refresh_limit: int = DEFAULT_FORCE_REFRESH_LIMIT,
    ) -> None:
        self._store = store
        self._queue = queue
        self._snapshots = snapshots
        self._calculator = calculator
        self._classifier = classifier
        self._executor = executor
        self._scheduler = scheduler
        self._force_refresh_limit = force_refresh_limit

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    async def get_benchmark(self, address: str) -> BenchmarkView:
        """Return the benchmark for an address, computing it on a miss.

        Raises:
            ValidationError: If the address is malformed.
            TransientComputeError: If a first-ever computation fails.
            PersistenceError: If the store is unavailable.
        """
        normalized = normalize_address(address)
        record = await self._snapshots.get_or_refresh(normalized, self._compute)
        return BenchmarkView(
            peer_group_id=record.peer_group_id,
            overall_percentile=record.overall_percentile,
            component_percentiles=dict(record.component_percentiles),
            is_stale=self._snapshots.is_stale(record),
            last_updated=record.last_updated,
        )

    async def analyze(self, address: str) -> BenchmarkComputation:
        """Compute a fresh benchmark with its peer comparison and categories.

        Nothing is persisted; use ``get_benchmark`` for the stored record.

        Raises:
            ValidationError: If the address is malformed.
            TransientComputeError: If the computation fails.
        """
        normalized = normalize_address(address)
        return await self._calculator.compute(
            normalized,
            update_frequency_seconds=self._scheduler.get_config().update_frequency_seconds,
        )

    async def _compute(self, address: str) -> BenchmarkRecordDTO:
        computation = await self._calculator.compute(
            address,
            update_frequency_seconds=self._scheduler.get_config().update_frequency_seconds,
        )
        return computation.record

    async def schedule_update(
        self,
        address: str,
        priority: JobPriority = JobPriority.MEDIUM,
        delay_ms: int = 0,
    ) -> int:
        """Queue a BENCHMARK_UPDATE job; returns the job id."""
        payload = BenchmarkUpdatePayload(address=normalize_address(address))
        return await self._schedule(payload, priority, delay_ms)

    async def schedule_peer_group_refresh(
        self,
        peer_group_id: str,
        priority: JobPriority = JobPriority.MEDIUM,
        delay_ms: int = 0,
    ) -> int:
        payload = PeerGroupRefreshPayload(peer_group_id=self._known_group(peer_group_id))
        return await self._schedule(payload, priority, delay_ms)

    async def schedule_percentile_recalculation(
        self,
        peer_group_id: str,
        priority: JobPriority = JobPriority.LOW,
        delay_ms: int = 0,
    ) -> int:
        payload = PercentileRecalcPayload(peer_group_id=self._known_group(peer_group_id))
        return await self._schedule(payload, priority, delay_ms)

    async def _schedule(self, payload: JobPayload, priority: JobPriority, delay_ms: int) -> int:
        return await self._queue.create(payload, priority, delay_seconds=_delay_seconds(delay_ms))

    def _known_group(self, peer_group_id: str) -> str:
        validate_peer_group_id(peer_group_id)
        return self._classifier.catalog.get(peer_group_id).id

    async def record_score_update(self, address: str) -> BenchmarkUpdate | None:
        """Recompute an address after its base score changed.

        A percentile shift of at least the medium threshold schedules a
        MEDIUM peer group refresh.

        Returns:
            The percentile movement, or None if the address is already being
            recomputed elsewhere.
        """
        normalized = normalize_address(address)
        return await self._executor.update_address(
            normalized,
            config=self._scheduler.get_config(),
            reason=UpdateReason.SCORE_UPDATE,
        )

    async def force_refresh_stale(self, limit: int | None = None) -> int:
        """Queue HIGH priority updates for stale addresses without an open job."""
        batch = limit if limit is not None else self._force_refresh_limit
        if batch <= 0:
            raise ValidationError("limit must be positive")
        enqueued = 0
        for address in await self._store.list_stale(batch):
            payload = BenchmarkUpdatePayload(address=address)
            if await self._queue.has_open_job(payload):
                continue
            await self._queue.create(payload, JobPriority.HIGH)
            enqueued += 1
        logger.info("Forced refresh of %d stale benchmarks", enqueued)
        return enqueued

    async def get_stats(self) -> BenchmarkStats:
        storage = await self._store.get_stats()
        return BenchmarkStats(
            total_benchmarks=storage.total_benchmarks,
            stale_count=storage.stale_count,
            pending_jobs=storage.pending_jobs,
            active_peer_group_count=storage.active_peer_group_count,
            last_update_time=storage.last_update_time,
            processing_status="processing" if self._scheduler.tick_in_progress else "idle",
            config=self._scheduler.get_config().to_dict(),
        )

    def get_config(self) -> dict[str, Any]:
        return self._scheduler.get_config().to_dict()

    def update_config(self, partial: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial config update.

        Raises:
            ConfigurationError: If any value is invalid.
        """
        return self._scheduler.update_config(partial).to_dict()

    def classify(self, address: str, metrics: WalletMetrics) -> PeerGroupClassification:
        return self._classifier.classify(normalize_address(address), metrics)

    def get_peer_group_metrics(self, peer_group_id: str) -> PeerGroupMetrics:
        return self._classifier.catalog.metrics_for(self._known_group(peer_group_id))
