"""Application wiring for the benchmarking service.

This module provides the BenchmarkApp class that builds every component
from Settings and manages the lifecycle of the database, Redis and the
refresh scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from peer_benchmarking.calculator import AddressDataSource, BenchmarkCalculator
from peer_benchmarking.config import Settings, get_settings
from peer_benchmarking.inflight import InFlightRegistry
from peer_benchmarking.jobs.executor import BenchmarkJobExecutor
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.peers.catalog import PeerGroupCatalog
from peer_benchmarking.peers.classifier import PeerGroupClassifier
from peer_benchmarking.ranking.engine import PercentileRankingEngine
from peer_benchmarking.scheduler import RefreshScheduler
from peer_benchmarking.service import BenchmarkService
from peer_benchmarking.snapshots import BenchmarkSnapshotStore
from peer_benchmarking.storage.database import DatabaseManager
from peer_benchmarking.storage.store import BenchmarkStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    logging.getLogger().setLevel(settings.get_logging_level())


class AppState(str, Enum):
    """Application lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class BenchmarkApp:
    """Builds and runs the benchmarking components.

    Example:
        ```python
        settings = get_settings()
        async with BenchmarkApp(settings, data_source) as app:
            view = await app.service.get_benchmark(address)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        data_source: AddressDataSource | None = None,
        *,
        redis: Redis | None = None,
        db_manager: DatabaseManager | None = None,
        create_schema: bool = True,
        start_scheduler: bool = True,
    ) -> None:
        """Initialize the app.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            data_source: Upstream metrics and score provider.
            redis: Optional pre-built Redis client (owned by the caller).
            db_manager: Optional pre-built database manager (owned by the caller).
            create_schema: Create tables on start (use Alembic in production).
            start_scheduler: Start the background refresh loop on start.
        """
        if data_source is None:
            raise ValueError("BenchmarkApp requires an AddressDataSource")
        self._settings = settings or get_settings()
        self._data_source = data_source
        self._create_schema = create_schema
        self._start_scheduler = start_scheduler

        self._owns_redis = redis is None
        self._owns_db = db_manager is None
        self._redis = redis
        self._db_manager = db_manager

        self._state = AppState.STOPPED
        self._stop_event: asyncio.Event | None = None
        self._service: BenchmarkService | None = None
        self._scheduler: RefreshScheduler | None = None

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def service(self) -> BenchmarkService:
        if self._service is None:
            raise RuntimeError("BenchmarkApp is not started")
        return self._service

    @property
    def scheduler(self) -> RefreshScheduler:
        if self._scheduler is None:
            raise RuntimeError("BenchmarkApp is not started")
        return self._scheduler

    async def start(self) -> None:
        """Build components and start the scheduler.

        Raises:
            RuntimeError: If the app is already running.
        """
        if self._state != AppState.STOPPED:
            raise RuntimeError(f"Cannot start app in state {self._state}")

        self._state = AppState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting benchmark app: %s", self._settings.redacted_summary())

        try:
            await self._initialize_components()
            if self._start_scheduler:
                await self.scheduler.start()
            self._state = AppState.RUNNING
            logger.info("Benchmark app started")
        except Exception as e:
            self._state = AppState.ERROR
            logger.error("Failed to start benchmark app: %s", e)
            await self._cleanup()
            raise

    async def _initialize_components(self) -> None:
        settings = self._settings
        bench = settings.benchmark

        if self._db_manager is None:
            self._db_manager = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
        if self._create_schema:
            await self._db_manager.init_schema_async()
        if self._redis is None:
            self._redis = Redis.from_url(settings.redis.url)

        config = settings.scheduler_config()
        store = BenchmarkStore(self._db_manager)
        queue = JobQueue(store, max_retries=config.max_retries)
        inflight = InFlightRegistry(self._redis, ttl_seconds=bench.inflight_ttl_seconds)

        catalog = PeerGroupCatalog()
        classifier = PeerGroupClassifier(catalog)
        calculator = BenchmarkCalculator(classifier, PercentileRankingEngine(), store, self._data_source)
        executor = BenchmarkJobExecutor(
            calculator,
            store,
            queue,
            inflight,
            catalog,
            min_members_for_distribution=bench.min_members_for_distribution,
        )
        self._scheduler = RefreshScheduler(store, queue, executor, config=config)
        snapshots = BenchmarkSnapshotStore(
            store,
            queue,
            inflight,
            config_source=self._scheduler.get_config,
            inflight_wait_seconds=bench.inflight_wait_seconds,
        )
        self._service = BenchmarkService(
            store,
            queue,
            snapshots,
            calculator,
            classifier,
            executor,
            self._scheduler,
            force_refresh_limit=bench.force_refresh_limit,
        )
        logger.info("Initialized %d peer groups", len(catalog))

    async def stop(self) -> None:
        """Stop the scheduler and release resources."""
        if self._state == AppState.STOPPED:
            return

        self._state = AppState.STOPPING
        logger.info("Stopping benchmark app...")
        if self._stop_event:
            self._stop_event.set()
        if self._scheduler is not None:
            await self._scheduler.stop()
        await self._cleanup()
        self._state = AppState.STOPPED
        logger.info("Benchmark app stopped")

    async def _cleanup(self) -> None:
        if self._db_manager is not None and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
        self._service = None
        self._scheduler = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the app and block until stopped or cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> BenchmarkApp:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
