"""Job queue data models.

Job payloads are a tagged union: each variant carries only the field its
job type needs (an address for benchmark updates, a peer group id for the
group-level jobs).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar


class JobType(str, Enum):
    """Kinds of background jobs."""

    BENCHMARK_UPDATE = "BENCHMARK_UPDATE"
    PEER_GROUP_REFRESH = "PEER_GROUP_REFRESH"
    PERCENTILE_RECALC = "PERCENTILE_RECALC"


class JobPriority(str, Enum):
    """Job priority levels.

    HIGH is reserved for explicit on-demand refresh requests, MEDIUM for
    significant live percentile shifts, LOW for routine staleness sweeps.
    """

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Sort key, lower dequeues first."""
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {JobPriority.HIGH: 0, JobPriority.MEDIUM: 1, JobPriority.LOW: 2}


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self]

    @property
    def is_open(self) -> bool:
        """True while the job may still execute."""
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
}


def source_statuses(target: JobStatus) -> tuple[JobStatus, ...]:
    """Statuses from which ``target`` may be entered."""
    return tuple(status for status, allowed in ALLOWED_TRANSITIONS.items() if target in allowed)


@dataclass(frozen=True)
class BenchmarkUpdatePayload:
    """Recompute the benchmark of one address."""

    address: str
    job_type: ClassVar[JobType] = JobType.BENCHMARK_UPDATE

    @property
    def target(self) -> str:
        return self.address


@dataclass(frozen=True)
class PeerGroupRefreshPayload:
    """Rebuild the statistical snapshot of one peer group."""

    peer_group_id: str
    job_type: ClassVar[JobType] = JobType.PEER_GROUP_REFRESH

    @property
    def target(self) -> str:
        return self.peer_group_id


@dataclass(frozen=True)
class PercentileRecalcPayload:
    """Re-rank every stored member of one peer group."""

    peer_group_id: str
    job_type: ClassVar[JobType] = JobType.PERCENTILE_RECALC

    @property
    def target(self) -> str:
        return self.peer_group_id


JobPayload = BenchmarkUpdatePayload | PeerGroupRefreshPayload | PercentileRecalcPayload


def payload_from_row(job_type: str, target: str) -> JobPayload:
    """Rebuild a payload from its stored (job_type, target) columns."""
    kind = JobType(job_type)
    if kind is JobType.BENCHMARK_UPDATE:
        return BenchmarkUpdatePayload(address=target)
    if kind is JobType.PEER_GROUP_REFRESH:
        return PeerGroupRefreshPayload(peer_group_id=target)
    return PercentileRecalcPayload(peer_group_id=target)


@dataclass(frozen=True)
class BenchmarkJob:
    """A queued background job.

    Attributes:
        payload: Typed job payload.
        priority: Dequeue priority.
        scheduled_at: Earliest time the job may run.
        status: Lifecycle state.
        retry_count: Number of requeues so far.
        max_retries: Requeues allowed before the job is terminally FAILED.
        id: Storage id, None until created.
    """

    payload: JobPayload
    priority: JobPriority
    scheduled_at: datetime
    max_retries: int
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    id: int | None = None

    @property
    def job_type(self) -> JobType:
        return self.payload.job_type

    @property
    def group_key(self) -> tuple[Any, ...]:
        """Jobs sharing a key are served by one execution within a tick."""
        if isinstance(self.payload, BenchmarkUpdatePayload):
            return (self.job_type, self.payload.address, self.id)
        return (self.job_type, self.payload.peer_group_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "job_type": self.job_type.value,
            "target": self.payload.target,
            "priority": self.priority.value,
            "status": self.status.value,
            "scheduled_at": self.scheduled_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
        }


@dataclass(frozen=True)
class BenchmarkJobResult:
    """Outcome of one job execution."""

    job_ids: tuple[int, ...]
    success: bool
    processed_addresses: int = 0
    updated_benchmarks: int = 0
    errors: tuple[str, ...] = ()
    processing_time_ms: float = 0.0


class UpdateReason(str, Enum):
    """Why a benchmark changed."""

    SCHEDULED = "SCHEDULED"
    TRIGGERED = "TRIGGERED"
    PEER_GROUP_CHANGE = "PEER_GROUP_CHANGE"
    SCORE_UPDATE = "SCORE_UPDATE"


@dataclass(frozen=True)
class BenchmarkUpdate:
    """Percentile movement produced by one recomputation."""

    address: str
    previous_percentile: float | None
    new_percentile: float
    component_changes: dict[str, float] = field(default_factory=dict)
    update_timestamp: datetime | None = None
    update_reason: UpdateReason = UpdateReason.SCHEDULED
    peer_group_id: str | None = None
    previous_peer_group_id: str | None = None

    @property
    def percentile_change(self) -> float:
        if self.previous_percentile is None:
            return 0.0
        return round(self.new_percentile - self.previous_percentile, 1)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "address": self.address,
            "previous_percentile": self.previous_percentile,
            "new_percentile": self.new_percentile,
            "percentile_change": self.percentile_change,
            "component_changes": dict(self.component_changes),
            "update_timestamp": self.update_timestamp.isoformat() if self.update_timestamp else None,
            "update_reason": self.update_reason.value,
            "peer_group_id": self.peer_group_id,
        }
