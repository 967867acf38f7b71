"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from peer_benchmarking.calculator import AddressProfile, BenchmarkCalculator
from peer_benchmarking.config import SchedulerConfig
from peer_benchmarking.inflight import InFlightRegistry
from peer_benchmarking.jobs.executor import BenchmarkJobExecutor
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.peers.catalog import PeerGroupCatalog
from peer_benchmarking.peers.classifier import PeerGroupClassifier
from peer_benchmarking.peers.models import WalletMetrics
from peer_benchmarking.ranking.engine import PercentileRankingEngine
from peer_benchmarking.ranking.models import ScoreBreakdown
from peer_benchmarking.scheduler import RefreshScheduler
from peer_benchmarking.storage.database import DatabaseManager
from peer_benchmarking.storage.repos import BenchmarkRecordDTO
from peer_benchmarking.storage.store import BenchmarkStore

ADDRESS = "0x" + "ab" * 20
OTHER_ADDRESS = "0x" + "cd" * 20


# ============================================================================
# Fakes
# ============================================================================


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis.

    Covers only the commands InFlightRegistry issues: ``set`` (with ``nx``),
    ``get``, ``delete`` and ``exists``. Keys never expire. Tests that only
    check call arguments or error mapping use an AsyncMock instead (see
    ``mock_redis`` in test_inflight).
    """

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    async def set(self, key: str, value: Any, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.data:
            return None
        self.data[key] = value.encode() if isinstance(value, str) else value
        return True

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)


class StaticDataSource:
    """Data source returning a fixed profile and recording requests."""

    def __init__(self, profile: AddressProfile, error: Exception | None = None) -> None:
        self.profile = profile
        self.error = error
        self.calls: list[str] = []

    async def get_profile(self, address: str) -> AddressProfile:
        self.calls.append(address)
        if self.error is not None:
            raise self.error
        return self.profile


def make_record(
    address: str = ADDRESS,
    *,
    peer_group_id: str = "veteran_active",
    overall_percentile: float = 45.0,
    last_updated: datetime | None = None,
    overall_score: float | None = 700.0,
    is_stale: bool = False,
) -> BenchmarkRecordDTO:
    ts = last_updated or datetime.now(UTC)
    return BenchmarkRecordDTO(
        address=address,
        peer_group_id=peer_group_id,
        overall_percentile=overall_percentile,
        benchmark_timestamp=ts,
        last_updated=ts,
        update_frequency_seconds=300,
        component_percentiles={"transaction_volume": 40.0},
        is_stale=is_stale,
        overall_score=overall_score,
        component_scores={"transaction_volume": 650.0} if overall_score is not None else {},
        classification_confidence=62.5,
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def db_manager():
    """In-memory SQLite database with the schema created."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def store(db_manager: DatabaseManager) -> BenchmarkStore:
    return BenchmarkStore(db_manager)


@pytest.fixture
def queue(store: BenchmarkStore) -> JobQueue:
    return JobQueue(store, max_retries=2)


@pytest.fixture
def inflight(fake_redis: FakeRedis) -> InFlightRegistry:
    return InFlightRegistry(fake_redis, ttl_seconds=60, poll_interval_seconds=0.01)  # type: ignore[arg-type]


@pytest.fixture
def catalog() -> PeerGroupCatalog:
    return PeerGroupCatalog()


@pytest.fixture
def classifier(catalog: PeerGroupCatalog) -> PeerGroupClassifier:
    return PeerGroupClassifier(catalog)


@pytest.fixture
def engine() -> PercentileRankingEngine:
    return PercentileRankingEngine()


@pytest.fixture
def sample_metrics() -> WalletMetrics:
    """A long-lived, highly active address with a mid-sized portfolio."""
    return WalletMetrics(
        total_transactions=250,
        total_volume="150",
        account_age_days=400,
    )


@pytest.fixture
def sample_profile(sample_metrics: WalletMetrics) -> AddressProfile:
    return AddressProfile(
        metrics=sample_metrics,
        score=ScoreBreakdown(
            overall_score=700,
            components={"transaction_volume": 650, "transaction_frequency": 720},
            behavioral={"consistency_score": 75, "risk_score": 20},
        ),
    )


@pytest.fixture
def data_source(sample_profile: AddressProfile) -> StaticDataSource:
    return StaticDataSource(sample_profile)


@pytest.fixture
def calculator(
    classifier: PeerGroupClassifier,
    engine: PercentileRankingEngine,
    store: BenchmarkStore,
    data_source: StaticDataSource,
) -> BenchmarkCalculator:
    return BenchmarkCalculator(classifier, engine, store, data_source)


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(max_retries=2)


@pytest.fixture
def executor(
    calculator: BenchmarkCalculator,
    store: BenchmarkStore,
    queue: JobQueue,
    inflight: InFlightRegistry,
    catalog: PeerGroupCatalog,
) -> BenchmarkJobExecutor:
    return BenchmarkJobExecutor(calculator, store, queue, inflight, catalog)


@pytest.fixture
def scheduler(
    store: BenchmarkStore,
    queue: JobQueue,
    executor: BenchmarkJobExecutor,
    scheduler_config: SchedulerConfig,
) -> RefreshScheduler:
    return RefreshScheduler(store, queue, executor, config=scheduler_config)


@pytest.fixture
def address() -> str:
    return ADDRESS


@pytest.fixture
def other_address() -> str:
    return OTHER_ADDRESS


@pytest.fixture
def record_factory():
    """Build benchmark record DTOs with sensible defaults."""
    return make_record
