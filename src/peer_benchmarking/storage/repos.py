"""Repository pattern implementations for data access.

This module provides data access abstractions for benchmark records,
peer group snapshots and benchmark jobs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from peer_benchmarking.jobs.models import (
    BenchmarkJob,
    JobPriority,
    JobStatus,
    JobType,
    payload_from_row,
    source_statuses,
)
from peer_benchmarking.peers.models import ScoreDistribution
from peer_benchmarking.storage.models import (
    BenchmarkJobModel,
    BenchmarkRecordModel,
    PeerGroupSnapshotModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _as_utc(ts: datetime) -> datetime:
    # SQLite returns naive datetimes
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts


def _as_utc_optional(ts: datetime | None) -> datetime | None:
    return _as_utc(ts) if ts is not None else None


def _insert_for(session: AsyncSession) -> Any:
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


@dataclass
class BenchmarkRecordDTO:
    """Data transfer object for benchmark records."""

    address: str
    peer_group_id: str
    overall_percentile: float
    benchmark_timestamp: datetime
    last_updated: datetime
    update_frequency_seconds: int
    component_percentiles: dict[str, float] = field(default_factory=dict)
    is_stale: bool = False
    overall_score: float | None = None
    component_scores: dict[str, float] = field(default_factory=dict)
    classification_confidence: float | None = None

    @classmethod
    def from_model(cls, model: BenchmarkRecordModel) -> BenchmarkRecordDTO:
        return cls(
            address=model.address,
            peer_group_id=model.peer_group_id,
            overall_percentile=model.overall_percentile,
            benchmark_timestamp=_as_utc(model.benchmark_timestamp),
            last_updated=_as_utc(model.last_updated),
            update_frequency_seconds=model.update_frequency_seconds,
            component_percentiles=json.loads(model.component_percentiles_json or "{}"),
            is_stale=model.is_stale,
            overall_score=model.overall_score,
            component_scores=json.loads(model.component_scores_json or "{}"),
            classification_confidence=model.classification_confidence,
        )

    def to_values(self) -> dict[str, Any]:
        return {
            "address": self.address.lower(),
            "peer_group_id": self.peer_group_id,
            "overall_percentile": self.overall_percentile,
            "component_percentiles_json": json.dumps(self.component_percentiles, sort_keys=True),
            "overall_score": self.overall_score,
            "component_scores_json": json.dumps(self.component_scores, sort_keys=True),
            "classification_confidence": self.classification_confidence,
            "benchmark_timestamp": self.benchmark_timestamp,
            "last_updated": self.last_updated,
            "update_frequency_seconds": self.update_frequency_seconds,
            "is_stale": self.is_stale,
        }


@dataclass
class PeerGroupSnapshotDTO:
    """Data transfer object for peer group snapshots."""

    peer_group_id: str
    member_count: int
    average_score: float
    score_distribution: ScoreDistribution
    snapshot_timestamp: datetime
    is_active: bool = True
    id: int | None = None

    @classmethod
    def from_model(cls, model: PeerGroupSnapshotModel) -> PeerGroupSnapshotDTO:
        return cls(
            id=model.id,
            peer_group_id=model.peer_group_id,
            member_count=model.member_count,
            average_score=model.average_score,
            score_distribution=ScoreDistribution.from_dict(json.loads(model.score_distribution_json)),
            snapshot_timestamp=_as_utc(model.snapshot_timestamp),
            is_active=model.is_active,
        )


def job_from_model(model: BenchmarkJobModel) -> BenchmarkJob:
    return BenchmarkJob(
        id=model.id,
        payload=payload_from_row(model.job_type, model.target),
        priority=JobPriority(model.priority),
        status=JobStatus(model.status),
        scheduled_at=_as_utc(model.scheduled_at),
        started_at=_as_utc_optional(model.started_at),
        completed_at=_as_utc_optional(model.completed_at),
        error_message=model.error_message,
        retry_count=model.retry_count,
        max_retries=model.max_retries,
    )


class BenchmarkRecordRepository:
    """Repository for per-address benchmark records."""

    # Columns a merge-update may touch
    UPDATABLE_FIELDS = frozenset(
        {
            "peer_group_id",
            "overall_percentile",
            "component_percentiles",
            "overall_score",
            "component_scores",
            "classification_confidence",
            "benchmark_timestamp",
            "last_updated",
            "update_frequency_seconds",
            "is_stale",
        }
    )

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> BenchmarkRecordDTO | None:
        result = await self.session.execute(
            select(BenchmarkRecordModel).where(BenchmarkRecordModel.address == address.lower())
        )
        model = result.scalar_one_or_none()
        return BenchmarkRecordDTO.from_model(model) if model else None

    async def upsert(self, dto: BenchmarkRecordDTO) -> BenchmarkRecordDTO:
        """Insert or fully replace the record for an address."""
        values = dto.to_values()
        insert = _insert_for(self.session)
        stmt = insert(BenchmarkRecordModel).values(**values, created_at=datetime.now(UTC))
        stmt = stmt.on_conflict_do_update(
            index_elements=["address"],
            set_={key: getattr(stmt.excluded, key) for key in values if key != "address"},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def update_fields(self, address: str, changes: dict[str, Any]) -> bool:
        """Apply a partial update to an existing record.

        Returns:
            False when no record exists for the address.
        """
        values: dict[str, Any] = {}
        for key, value in changes.items():
            if key == "component_percentiles":
                values["component_percentiles_json"] = json.dumps(value, sort_keys=True)
            elif key == "component_scores":
                values["component_scores_json"] = json.dumps(value, sort_keys=True)
            else:
                values[key] = value
        if not values:
            return await self.get(address) is not None
        result = await self.session.execute(
            update(BenchmarkRecordModel)
            .where(BenchmarkRecordModel.address == address.lower())
            .values(**values)
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def mark_stale(self, *, cutoff: datetime) -> list[str]:
        """Flag records last updated before ``cutoff``.

        Returns:
            Addresses flagged by this call, oldest first. Records that were
            already stale are not included.
        """
        result = await self.session.execute(
            select(BenchmarkRecordModel.address)
            .where(
                BenchmarkRecordModel.is_stale.is_(False),
                BenchmarkRecordModel.last_updated < cutoff,
            )
            .order_by(BenchmarkRecordModel.last_updated.asc(), BenchmarkRecordModel.address.asc())
        )
        flagged: list[str] = []
        for address in [row[0] for row in result.all()]:
            # Conditional on is_stale so concurrent sweeps flag a record once
            updated = await self.session.execute(
                update(BenchmarkRecordModel)
                .where(
                    BenchmarkRecordModel.address == address,
                    BenchmarkRecordModel.is_stale.is_(False),
                )
                .values(is_stale=True)
            )
            if (updated.rowcount or 0) > 0:  # type: ignore[attr-defined]
                flagged.append(address)
        await self.session.flush()
        return flagged

    async def list_stale(self, limit: int) -> list[str]:
        result = await self.session.execute(
            select(BenchmarkRecordModel.address)
            .where(BenchmarkRecordModel.is_stale.is_(True))
            .order_by(BenchmarkRecordModel.last_updated.asc(), BenchmarkRecordModel.address.asc())
            .limit(limit)
        )
        return [row[0] for row in result.all()]

    async def list_by_peer_group(self, peer_group_id: str) -> list[BenchmarkRecordDTO]:
        result = await self.session.execute(
            select(BenchmarkRecordModel)
            .where(BenchmarkRecordModel.peer_group_id == peer_group_id)
            .order_by(BenchmarkRecordModel.address.asc())
        )
        return [BenchmarkRecordDTO.from_model(m) for m in result.scalars().all()]

    async def count(self, *, stale_only: bool = False) -> int:
        stmt = select(sa.func.count()).select_from(BenchmarkRecordModel)
        if stale_only:
            stmt = stmt.where(BenchmarkRecordModel.is_stale.is_(True))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def latest_update_time(self) -> datetime | None:
        result = await self.session.execute(select(sa.func.max(BenchmarkRecordModel.last_updated)))
        return _as_utc_optional(result.scalar_one_or_none())


class PeerGroupSnapshotRepository:
    """Repository for append-only peer group snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: PeerGroupSnapshotDTO) -> int:
        model = PeerGroupSnapshotModel(
            peer_group_id=dto.peer_group_id,
            member_count=dto.member_count,
            average_score=dto.average_score,
            score_distribution_json=json.dumps(dto.score_distribution.to_dict()),
            snapshot_timestamp=dto.snapshot_timestamp,
            is_active=dto.is_active,
        )
        self.session.add(model)
        await self.session.flush()
        return int(model.id)

    def _active_latest_first(self, peer_group_id: str) -> sa.Select[Any]:
        return (
            select(PeerGroupSnapshotModel)
            .where(
                PeerGroupSnapshotModel.peer_group_id == peer_group_id,
                PeerGroupSnapshotModel.is_active.is_(True),
            )
            .order_by(PeerGroupSnapshotModel.snapshot_timestamp.desc(), PeerGroupSnapshotModel.id.desc())
        )

    async def get_latest_active(self, peer_group_id: str) -> PeerGroupSnapshotDTO | None:
        result = await self.session.execute(self._active_latest_first(peer_group_id).limit(1))
        model = result.scalar_one_or_none()
        return PeerGroupSnapshotDTO.from_model(model) if model else None

    async def deactivate_older_than(self, peer_group_id: str, *, keep_latest_n: int) -> int:
        """Deactivate every active snapshot except the ``keep_latest_n`` newest.

        Rows are never deleted; returns the number deactivated.
        """
        result = await self.session.execute(
            self._active_latest_first(peer_group_id).with_only_columns(PeerGroupSnapshotModel.id)
        )
        ids = [row[0] for row in result.all()]
        to_deactivate = ids[max(0, keep_latest_n):]
        if not to_deactivate:
            return 0
        await self.session.execute(
            update(PeerGroupSnapshotModel)
            .where(PeerGroupSnapshotModel.id.in_(to_deactivate))
            .values(is_active=False)
        )
        await self.session.flush()
        return len(to_deactivate)

    async def list_for_group(self, peer_group_id: str) -> list[PeerGroupSnapshotDTO]:
        result = await self.session.execute(
            select(PeerGroupSnapshotModel)
            .where(PeerGroupSnapshotModel.peer_group_id == peer_group_id)
            .order_by(PeerGroupSnapshotModel.id.asc())
        )
        return [PeerGroupSnapshotDTO.from_model(m) for m in result.scalars().all()]

    async def count_active_groups(self) -> int:
        result = await self.session.execute(
            select(sa.func.count(sa.distinct(PeerGroupSnapshotModel.peer_group_id))).where(
                PeerGroupSnapshotModel.is_active.is_(True)
            )
        )
        return int(result.scalar_one())


class BenchmarkJobRepository:
    """Repository for the persisted job queue.

    Status changes are conditional updates on the allowed source statuses,
    so a job can only be claimed by one caller.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, job: BenchmarkJob) -> int:
        model = BenchmarkJobModel(
            job_type=job.job_type.value,
            target=job.payload.target,
            priority=job.priority.value,
            priority_rank=job.priority.rank,
            status=job.status.value,
            scheduled_at=job.scheduled_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_message=job.error_message,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
        )
        self.session.add(model)
        await self.session.flush()
        return int(model.id)

    async def get(self, job_id: int) -> BenchmarkJob | None:
        result = await self.session.execute(select(BenchmarkJobModel).where(BenchmarkJobModel.id == job_id))
        model = result.scalar_one_or_none()
        return job_from_model(model) if model else None

    async def list_pending(self, limit: int, *, now: datetime) -> list[BenchmarkJob]:
        """Due PENDING jobs in dequeue order: priority, then scheduled_at, then id."""
        result = await self.session.execute(
            select(BenchmarkJobModel)
            .where(
                BenchmarkJobModel.status == JobStatus.PENDING.value,
                BenchmarkJobModel.scheduled_at <= now,
            )
            .order_by(
                BenchmarkJobModel.priority_rank.asc(),
                BenchmarkJobModel.scheduled_at.asc(),
                BenchmarkJobModel.id.asc(),
            )
            .limit(limit)
        )
        return [job_from_model(m) for m in result.scalars().all()]

    async def transition(
        self,
        job_id: int,
        target: JobStatus,
        *,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        """Move a job into ``target`` if its current status allows it."""
        values: dict[str, Any] = {"status": target.value}
        if target is JobStatus.RUNNING:
            values["started_at"] = now
            values["completed_at"] = None
        elif target is JobStatus.PENDING:
            values["started_at"] = None
            values["completed_at"] = None
        else:
            values["completed_at"] = now
        if error is not None:
            values["error_message"] = error

        result = await self.session.execute(
            update(BenchmarkJobModel)
            .where(
                BenchmarkJobModel.id == job_id,
                BenchmarkJobModel.status.in_([s.value for s in source_statuses(target)]),
            )
            .values(**values)
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def increment_retry(self, job_id: int) -> bool:
        result = await self.session.execute(
            update(BenchmarkJobModel)
            .where(BenchmarkJobModel.id == job_id)
            .values(retry_count=BenchmarkJobModel.retry_count + 1)
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def requeue_failed(self, job_id: int, *, now: datetime) -> bool:
        """FAILED -> PENDING with retry_count+1, only while retries remain."""
        result = await self.session.execute(
            update(BenchmarkJobModel)
            .where(
                BenchmarkJobModel.id == job_id,
                BenchmarkJobModel.status == JobStatus.FAILED.value,
                BenchmarkJobModel.retry_count < BenchmarkJobModel.max_retries,
            )
            .values(
                status=JobStatus.PENDING.value,
                retry_count=BenchmarkJobModel.retry_count + 1,
                scheduled_at=now,
                started_at=None,
                completed_at=None,
            )
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_running_started_before(self, cutoff: datetime) -> list[BenchmarkJob]:
        result = await self.session.execute(
            select(BenchmarkJobModel)
            .where(
                BenchmarkJobModel.status == JobStatus.RUNNING.value,
                BenchmarkJobModel.started_at < cutoff,
            )
            .order_by(BenchmarkJobModel.id.asc())
        )
        return [job_from_model(m) for m in result.scalars().all()]

    async def has_open(self, job_type: JobType, target: str) -> bool:
        result = await self.session.execute(
            select(BenchmarkJobModel.id)
            .where(
                BenchmarkJobModel.job_type == job_type.value,
                BenchmarkJobModel.target == target,
                BenchmarkJobModel.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def count_by_status(self, status: JobStatus) -> int:
        result = await self.session.execute(
            select(sa.func.count()).select_from(BenchmarkJobModel).where(BenchmarkJobModel.status == status.value)
        )
        return int(result.scalar_one())
