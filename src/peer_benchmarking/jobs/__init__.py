"""Background job models, queue and execution."""

from peer_benchmarking.jobs.models import (
    BenchmarkJob,
    BenchmarkJobResult,
    BenchmarkUpdate,
    BenchmarkUpdatePayload,
    JobPayload,
    JobPriority,
    JobStatus,
    JobType,
    PeerGroupRefreshPayload,
    PercentileRecalcPayload,
    UpdateReason,
)

__all__ = [
    "BenchmarkJob",
    "BenchmarkJobResult",
    "BenchmarkUpdate",
    "BenchmarkUpdatePayload",
    "JobPayload",
    "JobPriority",
    "JobStatus",
    "JobType",
    "PeerGroupRefreshPayload",
    "PercentileRecalcPayload",
    "UpdateReason",
]
