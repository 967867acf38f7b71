"""Storage layer for benchmark records, peer group snapshots and jobs."""

from peer_benchmarking.storage.database import DatabaseManager
from peer_benchmarking.storage.models import (
    Base,
    BenchmarkJobModel,
    BenchmarkRecordModel,
    PeerGroupSnapshotModel,
)
from peer_benchmarking.storage.repos import (
    BenchmarkJobRepository,
    BenchmarkRecordDTO,
    BenchmarkRecordRepository,
    PeerGroupSnapshotDTO,
    PeerGroupSnapshotRepository,
)
from peer_benchmarking.storage.store import BenchmarkStore, StorageStats

__all__ = [
    "Base",
    "BenchmarkJobModel",
    "BenchmarkJobRepository",
    "BenchmarkRecordDTO",
    "BenchmarkRecordModel",
    "BenchmarkRecordRepository",
    "BenchmarkStore",
    "DatabaseManager",
    "PeerGroupSnapshotDTO",
    "PeerGroupSnapshotModel",
    "PeerGroupSnapshotRepository",
    "StorageStats",
]
