"""Storage facade used by the benchmarking core.

Each method runs in its own transaction. Database failures surface as
PersistenceError so callers never see SQLAlchemy exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from peer_benchmarking.exceptions import JobStateError, PersistenceError, ValidationError
from peer_benchmarking.jobs.models import BenchmarkJob, JobPayload, JobStatus
from peer_benchmarking.storage.database import DatabaseManager
from peer_benchmarking.storage.repos import (
    BenchmarkJobRepository,
    BenchmarkRecordDTO,
    BenchmarkRecordRepository,
    PeerGroupSnapshotDTO,
    PeerGroupSnapshotRepository,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageStats:
    """Aggregate counts for the stats endpoint."""

    total_benchmarks: int
    stale_count: int
    pending_jobs: int
    active_peer_group_count: int
    last_update_time: datetime | None


class BenchmarkStore:
    """Async store for benchmark records, peer group snapshots and jobs.

    Example:
        ```python
        db = DatabaseManager("sqlite+aiosqlite:///:memory:")
        await db.init_schema_async()
        store = BenchmarkStore(db)
        record = await store.get_benchmark_record("0xabc...")
        ```
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.get_async_session() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Storage operation %s failed: %s", operation, e)
            raise PersistenceError(f"{operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # Benchmark records
    # ------------------------------------------------------------------

    async def upsert_benchmark_record(self, record: BenchmarkRecordDTO) -> BenchmarkRecordDTO:
        async with self._session("upsert_benchmark_record") as session:
            return await BenchmarkRecordRepository(session).upsert(record)

    async def get_benchmark_record(self, address: str) -> BenchmarkRecordDTO | None:
        async with self._session("get_benchmark_record") as session:
            return await BenchmarkRecordRepository(session).get(address)

    async def update_benchmark_record(self, address: str, changes: dict[str, Any]) -> BenchmarkRecordDTO | None:
        """Merge ``changes`` into an existing record.

        Returns:
            The updated record, or None when no record exists.

        Raises:
            ValidationError: If ``changes`` names a field that cannot be updated.
        """
        unknown = set(changes) - BenchmarkRecordRepository.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown benchmark record fields: {sorted(unknown)}")
        async with self._session("update_benchmark_record") as session:
            repo = BenchmarkRecordRepository(session)
            if not await repo.update_fields(address, changes):
                return None
            return await repo.get(address)

    async def mark_stale(self, older_than_seconds: int, *, now: datetime | None = None) -> list[str]:
        """Flag records older than ``older_than_seconds``; returns the newly flagged addresses."""
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=older_than_seconds)
        async with self._session("mark_stale") as session:
            return await BenchmarkRecordRepository(session).mark_stale(cutoff=cutoff)

    async def list_stale(self, limit: int) -> list[str]:
        async with self._session("list_stale") as session:
            return await BenchmarkRecordRepository(session).list_stale(limit)

    async def list_records_by_peer_group(self, peer_group_id: str) -> list[BenchmarkRecordDTO]:
        async with self._session("list_records_by_peer_group") as session:
            return await BenchmarkRecordRepository(session).list_by_peer_group(peer_group_id)

    # ------------------------------------------------------------------
    # Peer group snapshots
    # ------------------------------------------------------------------

    async def insert_peer_group_snapshot(self, snapshot: PeerGroupSnapshotDTO) -> int:
        async with self._session("insert_peer_group_snapshot") as session:
            return await PeerGroupSnapshotRepository(session).insert(snapshot)

    async def get_latest_active_snapshot(self, peer_group_id: str) -> PeerGroupSnapshotDTO | None:
        async with self._session("get_latest_active_snapshot") as session:
            return await PeerGroupSnapshotRepository(session).get_latest_active(peer_group_id)

    async def deactivate_older_than(self, peer_group_id: str, keep_latest_n: int) -> int:
        if keep_latest_n < 1:
            raise ValidationError("keep_latest_n must be at least 1")
        async with self._session("deactivate_older_than") as session:
            return await PeerGroupSnapshotRepository(session).deactivate_older_than(
                peer_group_id, keep_latest_n=keep_latest_n
            )

    async def list_peer_group_snapshots(self, peer_group_id: str) -> list[PeerGroupSnapshotDTO]:
        async with self._session("list_peer_group_snapshots") as session:
            return await PeerGroupSnapshotRepository(session).list_for_group(peer_group_id)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: BenchmarkJob) -> int:
        async with self._session("create_job") as session:
            return await BenchmarkJobRepository(session).insert(job)

    async def get_job(self, job_id: int) -> BenchmarkJob | None:
        async with self._session("get_job") as session:
            return await BenchmarkJobRepository(session).get(job_id)

    async def list_pending(self, limit: int, *, now: datetime | None = None) -> list[BenchmarkJob]:
        async with self._session("list_pending") as session:
            return await BenchmarkJobRepository(session).list_pending(limit, now=now or datetime.now(UTC))

    async def set_job_status(
        self,
        job_id: int,
        status: JobStatus,
        error: str | None = None,
        *,
        now: datetime | None = None,
    ) -> None:
        """Apply a status transition.

        Raises:
            JobStateError: If the job is unknown or its current status does
                not allow moving to ``status``.
        """
        async with self._session("set_job_status") as session:
            repo = BenchmarkJobRepository(session)
            if not await repo.transition(job_id, status, now=now or datetime.now(UTC), error=error):
                current = await repo.get(job_id)
                if current is None:
                    raise JobStateError(f"Unknown job {job_id}")
                raise JobStateError(f"Job {job_id} cannot move from {current.status.value} to {status.value}")

    async def claim_job(self, job_id: int, *, now: datetime | None = None) -> BenchmarkJob | None:
        """PENDING -> RUNNING; returns None if another caller claimed it first."""
        async with self._session("claim_job") as session:
            repo = BenchmarkJobRepository(session)
            if not await repo.transition(job_id, JobStatus.RUNNING, now=now or datetime.now(UTC)):
                return None
            return await repo.get(job_id)

    async def increment_retry(self, job_id: int) -> None:
        async with self._session("increment_retry") as session:
            if not await BenchmarkJobRepository(session).increment_retry(job_id):
                raise JobStateError(f"Unknown job {job_id}")

    async def fail_job(self, job_id: int, error: str, *, now: datetime | None = None) -> JobStatus:
        """Mark a RUNNING job FAILED and requeue it while retries remain.

        Both steps commit together, so the FAILED state is never observed
        on its own for a job that still has retries.

        Returns:
            PENDING if the job was requeued, FAILED if it is terminal.
        """
        ts = now or datetime.now(UTC)
        async with self._session("fail_job") as session:
            repo = BenchmarkJobRepository(session)
            if not await repo.transition(job_id, JobStatus.FAILED, now=ts, error=error):
                current = await repo.get(job_id)
                if current is None:
                    raise JobStateError(f"Unknown job {job_id}")
                raise JobStateError(f"Job {job_id} cannot fail from {current.status.value}")
            if await repo.requeue_failed(job_id, now=ts):
                return JobStatus.PENDING
            return JobStatus.FAILED

    async def list_running_started_before(self, cutoff: datetime) -> list[BenchmarkJob]:
        async with self._session("list_running_started_before") as session:
            return await BenchmarkJobRepository(session).list_running_started_before(cutoff)

    async def has_open_job(self, payload: JobPayload) -> bool:
        async with self._session("has_open_job") as session:
            return await BenchmarkJobRepository(session).has_open(payload.job_type, payload.target)

    async def count_pending_jobs(self) -> int:
        async with self._session("count_pending_jobs") as session:
            return await BenchmarkJobRepository(session).count_by_status(JobStatus.PENDING)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> StorageStats:
        async with self._session("get_stats") as session:
            records = BenchmarkRecordRepository(session)
            return StorageStats(
                total_benchmarks=await records.count(),
                stale_count=await records.count(stale_only=True),
                pending_jobs=await BenchmarkJobRepository(session).count_by_status(JobStatus.PENDING),
                active_peer_group_count=await PeerGroupSnapshotRepository(session).count_active_groups(),
                last_update_time=await records.latest_update_time(),
            )
