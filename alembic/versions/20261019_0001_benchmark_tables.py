"""Benchmark records, peer group snapshots and the benchmark job queue.

Revision ID: 001_benchmark_tables
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_benchmark_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One row per address
    op.create_table(
        "benchmark_records",
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("peer_group_id", sa.String(64), nullable=False),
        sa.Column("overall_percentile", sa.Float(), nullable=False),
        sa.Column("component_percentiles_json", sa.Text(), nullable=False),
        sa.Column("overall_score", sa.Float(), nullable=True),
        sa.Column("component_scores_json", sa.Text(), nullable=False),
        sa.Column("classification_confidence", sa.Float(), nullable=True),
        sa.Column("benchmark_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.Column("update_frequency_seconds", sa.Integer(), nullable=False),
        sa.Column("is_stale", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )
    op.create_index("idx_benchmark_records_peer_group", "benchmark_records", ["peer_group_id"])
    op.create_index(
        "idx_benchmark_records_stale_updated",
        "benchmark_records",
        ["is_stale", "last_updated"],
    )

    # Append-only; older rows are deactivated, never deleted
    op.create_table(
        "peer_group_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("peer_group_id", sa.String(64), nullable=False),
        sa.Column("member_count", sa.Integer(), nullable=False),
        sa.Column("average_score", sa.Float(), nullable=False),
        sa.Column("score_distribution_json", sa.Text(), nullable=False),
        sa.Column("snapshot_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_peer_group_snapshots_group_active_ts",
        "peer_group_snapshots",
        ["peer_group_id", "is_active", "snapshot_timestamp"],
    )

    op.create_table(
        "benchmark_update_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("target", sa.String(64), nullable=False),
        sa.Column("priority", sa.String(8), nullable=False),
        sa.Column("priority_rank", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_benchmark_jobs_dequeue",
        "benchmark_update_jobs",
        ["status", "priority_rank", "scheduled_at"],
    )
    op.create_index(
        "idx_benchmark_jobs_type_target_status",
        "benchmark_update_jobs",
        ["job_type", "target", "status"],
    )


def downgrade() -> None:
    op.drop_index("idx_benchmark_jobs_type_target_status", table_name="benchmark_update_jobs")
    op.drop_index("idx_benchmark_jobs_dequeue", table_name="benchmark_update_jobs")
    op.drop_table("benchmark_update_jobs")
    op.drop_index("idx_peer_group_snapshots_group_active_ts", table_name="peer_group_snapshots")
    op.drop_table("peer_group_snapshots")
    op.drop_index("idx_benchmark_records_stale_updated", table_name="benchmark_records")
    op.drop_index("idx_benchmark_records_peer_group", table_name="benchmark_records")
    op.drop_table("benchmark_records")
