"""SQLAlchemy models for persistent storage.

This module defines the database schema for benchmark records, peer group
snapshots and the benchmark update job queue.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BenchmarkRecordModel(Base):
    """Latest benchmark result for an address (one row per address)."""

    __tablename__ = "benchmark_records"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    peer_group_id: Mapped[str] = mapped_column(String(64), nullable=False)

    overall_percentile: Mapped[float] = mapped_column(Float, nullable=False)
    # JSON object: component name -> percentile
    component_percentiles_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    # JSON object: component name -> raw score
    component_scores_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    benchmark_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    update_frequency_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_benchmark_records_peer_group", "peer_group_id"),
        Index("idx_benchmark_records_stale_updated", "is_stale", "last_updated"),
    )


class PeerGroupSnapshotModel(Base):
    """Append-only statistical snapshot of a peer group."""

    __tablename__ = "peer_group_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    peer_group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False)
    average_score: Mapped[float] = mapped_column(Float, nullable=False)
    # JSON object with min/p25/p50/p75/p90/max breakpoints
    score_distribution_json: Mapped[str] = mapped_column(Text, nullable=False)
    snapshot_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_peer_group_snapshots_group_active_ts", "peer_group_id", "is_active", "snapshot_timestamp"),
    )


class BenchmarkJobModel(Base):
    """Persisted background job."""

    __tablename__ = "benchmark_update_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    # Address for BENCHMARK_UPDATE, peer group id otherwise
    target: Mapped[str] = mapped_column(String(64), nullable=False)

    priority: Mapped[str] = mapped_column(String(8), nullable=False)
    # 0 = HIGH, 1 = MEDIUM, 2 = LOW; sortable form of priority
    priority_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_benchmark_jobs_dequeue", "status", "priority_rank", "scheduled_at"),
        Index("idx_benchmark_jobs_type_target_status", "job_type", "target", "status"),
    )
