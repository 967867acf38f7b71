"""Read-through access to benchmark records.

This module provides the BenchmarkSnapshotStore class: reads serve the last
known record whenever a refresh is already underway and compute
synchronously only on a miss or an unclaimed stale record.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from peer_benchmarking.config import SchedulerConfig
from peer_benchmarking.exceptions import PersistenceError, TransientComputeError, ValidationError
from peer_benchmarking.inflight import InFlightRegistry
from peer_benchmarking.jobs.models import BenchmarkUpdatePayload, JobPriority
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.storage.repos import BenchmarkRecordDTO, BenchmarkRecordRepository
from peer_benchmarking.storage.store import BenchmarkStore

logger = logging.getLogger(__name__)

# Default values
DEFAULT_INFLIGHT_WAIT_SECONDS = 5.0

ComputeFn = Callable[[str], Awaitable[BenchmarkRecordDTO]]

_REQUIRED_ON_CREATE = ("peer_group_id", "overall_percentile")


class BenchmarkSnapshotStore:
    """Serves benchmark records with staleness-aware refresh.

    A record is stale when it is flagged stale or when it was last updated
    more than ``stale_threshold_seconds`` ago. Stale data is preferred over
    blocking: only a first-ever computation can surface an error to the
    caller.

    Example:
        ```python
        snapshots = BenchmarkSnapshotStore(store, queue, inflight, config_source=scheduler.get_config)
        record = await snapshots.get_or_refresh(address, compute_fn)
        ```
    """

    def __init__(
        self,
        store: BenchmarkStore,
        queue: JobQueue,
        inflight: InFlightRegistry,
        *,
        config_source: Callable[[], SchedulerConfig],
        inflight_wait_seconds: float = DEFAULT_INFLIGHT_WAIT_SECONDS,
    ) -> None:
        """Initialize the snapshot store.

        Args:
            store: Backing store.
            queue: Job queue used to schedule retries.
            inflight: Per-address in-flight markers.
            config_source: Returns the current scheduler config.
            inflight_wait_seconds: How long a first read waits for another
                holder of the address's marker.
        """
        self._store = store
        self._queue = queue
        self._inflight = inflight
        self._config_source = config_source
        self._inflight_wait_seconds = inflight_wait_seconds

    @property
    def stale_threshold_seconds(self) -> int:
        return self._config_source().stale_threshold_seconds

    def is_stale(self, record: BenchmarkRecordDTO, now: datetime | None = None) -> bool:
        if record.is_stale:
            return True
        age = ((now or datetime.now(UTC)) - record.last_updated).total_seconds()
        return age > self.stale_threshold_seconds

    async def refresh_scheduled(self, address: str) -> bool:
        """True if a BENCHMARK_UPDATE job is open or a computation holds the marker."""
        if await self._queue.has_open_job(BenchmarkUpdatePayload(address=address)):
            return True
        return await self._inflight.is_held(address)

    async def get_or_refresh(
        self,
        address: str,
        compute_fn: ComputeFn,
        *,
        now: datetime | None = None,
    ) -> BenchmarkRecordDTO:
        """Return the benchmark for ``address``, computing it when needed.

        Args:
            address: Normalized address.
            compute_fn: Computes a fresh record for the address.
            now: Reference time for the staleness check.

        Returns:
            A fresh record, or the last-known record when a refresh is
            already underway or the recomputation failed transiently.

        Raises:
            TransientComputeError: If no record exists and it cannot be computed.
            PersistenceError: If the store is unavailable.
        """
        record = await self._store.get_benchmark_record(address)
        if record is not None and not self.is_stale(record, now):
            return record
        if record is not None and await self.refresh_scheduled(address):
            logger.debug("Serving stale benchmark for %s; refresh already scheduled", address)
            return record

        token = await self._inflight.acquire(address)
        if token is None:
            if record is not None:
                return record
            await self._inflight.wait_released(address, self._inflight_wait_seconds)
            record = await self._store.get_benchmark_record(address)
            if record is not None:
                return record
            raise TransientComputeError(f"Benchmark for {address} is still being computed")

        try:
            try:
                fresh = await compute_fn(address)
            except TransientComputeError as e:
                await self._schedule_retry(address)
                if record is None:
                    raise
                logger.warning("Refresh failed for %s, serving stale benchmark: %s", address, e)
                return record
            await self._store.upsert_benchmark_record(fresh)
            return fresh
        finally:
            try:
                await self._inflight.release(address, token)
            except PersistenceError as e:
                logger.warning("Failed to release in-flight marker for %s: %s", address, e)

    async def update(
        self,
        address: str,
        partial: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> BenchmarkRecordDTO:
        """Merge-upsert fields into the record for ``address``.

        Raises:
            ValidationError: On unknown fields, a last_updated in the future,
                or a missing record without the fields needed to create one.
        """
        ts = now or datetime.now(UTC)
        unknown = set(partial) - BenchmarkRecordRepository.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown benchmark record fields: {sorted(unknown)}")
        last_updated = partial.get("last_updated")
        if last_updated is not None and last_updated > ts:
            raise ValidationError("last_updated cannot be in the future")

        updated = await self._store.update_benchmark_record(address, partial)
        if updated is not None:
            return updated

        missing = [name for name in _REQUIRED_ON_CREATE if name not in partial]
        if missing:
            raise ValidationError(f"No benchmark for {address}; creating one requires {missing}")

        record = BenchmarkRecordDTO(
            address=address,
            peer_group_id=partial["peer_group_id"],
            overall_percentile=partial["overall_percentile"],
            benchmark_timestamp=partial.get("benchmark_timestamp", ts),
            last_updated=partial.get("last_updated", ts),
            update_frequency_seconds=partial.get(
                "update_frequency_seconds", self._config_source().update_frequency_seconds
            ),
            component_percentiles=dict(partial.get("component_percentiles", {})),
            is_stale=partial.get("is_stale", False),
            overall_score=partial.get("overall_score"),
            component_scores=dict(partial.get("component_scores", {})),
            classification_confidence=partial.get("classification_confidence"),
        )
        return await self._store.upsert_benchmark_record(record)

    async def _schedule_retry(self, address: str) -> None:
        payload = BenchmarkUpdatePayload(address=address)
        if await self._queue.has_open_job(payload):
            return
        job_id = await self._queue.create(payload, JobPriority.LOW)
        logger.info("Scheduled retry job %d for %s", job_id, address)
