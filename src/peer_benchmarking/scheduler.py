"""Timer-driven refresh scheduler.

This module provides the RefreshScheduler class: an explicit handle that
owns the runtime SchedulerConfig and the tick-in-progress flag, sweeps
staleness, enqueues refresh jobs and executes due jobs in priority order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Hashable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from peer_benchmarking.config import SchedulerConfig
from peer_benchmarking.exceptions import BenchmarkError
from peer_benchmarking.jobs.executor import BenchmarkJobExecutor
from peer_benchmarking.jobs.models import (
    BenchmarkJob,
    BenchmarkUpdatePayload,
    JobPriority,
    JobStatus,
)
from peer_benchmarking.jobs.queue import JobQueue
from peer_benchmarking.storage.store import BenchmarkStore

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    """Scheduler lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SchedulerStats:
    """Statistics for the scheduler."""

    started_at: datetime | None = None
    ticks: int = 0
    ticks_skipped: int = 0
    jobs_enqueued: int = 0
    jobs_completed: int = 0
    jobs_requeued: int = 0
    jobs_failed: int = 0
    jobs_reaped: int = 0
    errors: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class TickResult:
    """What one tick did."""

    skipped: bool = False
    reaped: int = 0
    marked_stale: int = 0
    enqueued: int = 0
    dequeued: int = 0
    groups_executed: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def changed_state(self) -> bool:
        return any((self.reaped, self.marked_stale, self.enqueued, self.dequeued))


class RefreshScheduler:
    """Periodic staleness sweep and job execution.

    Every ``update_frequency_seconds`` the timer fires; if the previous tick
    is still running the new one is skipped. A tick:

        0. Fails jobs RUNNING longer than ``stuck_job_ticks`` intervals.
        1. Flags records older than ``stale_threshold_seconds`` as stale.
        2. Enqueues up to ``batch_size`` LOW BENCHMARK_UPDATE jobs for the
           addresses newly flagged in step 1 that have no open job.
        3. Dequeues up to ``batch_size`` jobs and groups group-level jobs
           targeting the same peer group.
        4. Executes each group once and completes or fails all of its jobs.

    Errors are caught, logged and counted; they never stop the loop.

    Example:
        ```python
        scheduler = RefreshScheduler(store, queue, executor, config=SchedulerConfig())
        async with scheduler:
            ...  # ticks run in the background
        ```
    """

    def __init__(
        self,
        store: BenchmarkStore,
        queue: JobQueue,
        executor: BenchmarkJobExecutor,
        *,
        config: SchedulerConfig | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Backing store.
            queue: Job queue.
            executor: Job executor.
            config: Initial runtime configuration.
        """
        self._store = store
        self._queue = queue
        self._executor = executor
        self._config = config or SchedulerConfig()
        self._queue.max_retries = self._config.max_retries

        self._state = SchedulerState.STOPPED
        self._stats = SchedulerStats()
        self._tick_in_progress = False

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[TickResult] | None = None

    @property
    def state(self) -> SchedulerState:
        """Current scheduler state."""
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        """Current scheduler statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_in_progress

    def get_config(self) -> SchedulerConfig:
        return self._config

    def update_config(self, partial: dict[str, Any]) -> SchedulerConfig:
        """Apply a partial config update.

        Raises:
            ConfigurationError: If any value is invalid; the current
                configuration is left unchanged.
        """
        new_config = self._config.merged(partial)
        old_frequency = self._config.update_frequency_seconds
        self._config = new_config
        self._queue.max_retries = new_config.max_retries
        logger.info("Scheduler configuration updated: %s", sorted(partial))

        if new_config.update_frequency_seconds != old_frequency and self.is_running:
            self._restart_timer()
        return new_config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the timer loop.

        Raises:
            RuntimeError: If the scheduler is already running.
        """
        if self._state != SchedulerState.STOPPED:
            raise RuntimeError(f"Cannot start scheduler in state {self._state}")

        self._state = SchedulerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting refresh scheduler (every %ds)", self._config.update_frequency_seconds)

        self._timer_task = asyncio.create_task(self._run_timer_loop())
        self._stats.started_at = datetime.now(UTC)
        self._state = SchedulerState.RUNNING

    async def stop(self) -> None:
        """Stop the timer and wait for an in-progress tick to finish."""
        if self._state == SchedulerState.STOPPED:
            return

        self._state = SchedulerState.STOPPING
        logger.info("Stopping refresh scheduler...")

        if self._stop_event:
            self._stop_event.set()

        if self._timer_task:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None

        if self._tick_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None

        self._state = SchedulerState.STOPPED
        logger.info("Refresh scheduler stopped")

    async def run(self) -> None:
        """Start the scheduler and run until stopped or cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> RefreshScheduler:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()

    def _restart_timer(self) -> None:
        if self._timer_task:
            self._timer_task.cancel()
        self._timer_task = asyncio.create_task(self._run_timer_loop())
        logger.info("Scheduler timer restarted (every %ds)", self._config.update_frequency_seconds)

    async def _run_timer_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._config.update_frequency_seconds
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass

                if self._tick_in_progress:
                    self._stats.ticks_skipped += 1
                    logger.debug("Previous tick still running; skipping")
                    continue
                self._tick_task = asyncio.create_task(self.tick())
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.warning("Scheduler timer loop error: %s", e)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> TickResult:
        """Run one sweep-and-execute cycle.

        Returns a skipped result without doing anything when another tick
        is already running.
        """
        if self._tick_in_progress:
            self._stats.ticks_skipped += 1
            return TickResult(skipped=True)

        self._tick_in_progress = True
        try:
            result = await self._tick(now or datetime.now(UTC))
        finally:
            self._tick_in_progress = False

        self._stats.ticks += 1
        self._stats.last_tick_at = datetime.now(UTC)
        if result.changed_state:
            logger.info(
                "Tick: reaped=%d stale=%d enqueued=%d dequeued=%d completed=%d requeued=%d failed=%d",
                result.reaped,
                result.marked_stale,
                result.enqueued,
                result.dequeued,
                result.completed,
                result.requeued,
                result.failed,
            )
        return result

    async def _tick(self, now: datetime) -> TickResult:
        config = self._config
        errors: list[str] = []
        reaped = marked = enqueued = 0

        try:
            outcomes = await self._queue.reap_stuck(timedelta(seconds=config.stuck_job_seconds), now=now)
            reaped = len(outcomes)
            self._stats.jobs_reaped += reaped
        except Exception as e:
            errors.append(self._record_error("reap", e))

        newly_stale: list[str] = []
        try:
            newly_stale = await self._store.mark_stale(config.stale_threshold_seconds, now=now)
            marked = len(newly_stale)
        except Exception as e:
            errors.append(self._record_error("mark_stale", e))

        try:
            enqueued = await self._enqueue_stale(newly_stale[: config.batch_size], now=now)
            self._stats.jobs_enqueued += enqueued
        except Exception as e:
            errors.append(self._record_error("enqueue", e))

        jobs: list[BenchmarkJob] = []
        try:
            jobs = await self._queue.dequeue(config.batch_size, now=now)
        except Exception as e:
            errors.append(self._record_error("dequeue", e))

        completed = requeued = failed = 0
        groups = group_jobs(jobs)
        for group in groups:
            outcome = await self._execute_group(group, config, now=now)
            completed += outcome.count(JobStatus.COMPLETED)
            requeued += outcome.count(JobStatus.PENDING)
            failed += outcome.count(JobStatus.FAILED)

        self._stats.jobs_completed += completed
        self._stats.jobs_requeued += requeued
        self._stats.jobs_failed += failed
        return TickResult(
            reaped=reaped,
            marked_stale=marked,
            enqueued=enqueued,
            dequeued=len(jobs),
            groups_executed=len(groups),
            completed=completed,
            requeued=requeued,
            failed=failed,
            errors=tuple(errors),
        )

    async def _enqueue_stale(self, addresses: list[str], *, now: datetime) -> int:
        """Enqueue LOW updates for addresses flagged stale in this tick.

        Records that were already stale are left to the read path and to
        force_refresh_stale, so a terminally failed update is not retried
        on every tick.
        """
        enqueued = 0
        for address in addresses:
            payload = BenchmarkUpdatePayload(address=address)
            if await self._queue.has_open_job(payload):
                continue
            await self._queue.create(payload, JobPriority.LOW, now=now)
            enqueued += 1
        return enqueued

    async def _execute_group(
        self,
        group: list[BenchmarkJob],
        config: SchedulerConfig,
        *,
        now: datetime,
    ) -> list[JobStatus]:
        head = group[0]
        job_ids = [job.id for job in group if job.id is not None]
        try:
            await self._executor.execute(head.payload, config=config, job_ids=job_ids, now=now)
        except Exception as e:
            if not isinstance(e, BenchmarkError):
                logger.exception("Unexpected error executing jobs %s", job_ids)
            else:
                logger.warning("Jobs %s (%s) failed: %s", job_ids, head.job_type.value, e)
            return [await self._settle(job, now=now, error=str(e) or type(e).__name__) for job in group]
        return [await self._settle(job, now=now) for job in group]

    async def _settle(self, job: BenchmarkJob, *, now: datetime, error: str | None = None) -> JobStatus:
        """Complete or fail one job; status write failures are logged."""
        try:
            if error is None:
                await self._queue.complete(job, now=now)
                return JobStatus.COMPLETED
            return await self._queue.fail(job, error, now=now)
        except BenchmarkError as e:
            self._record_error(f"settle job {job.id}", e)
            return JobStatus.RUNNING

    def _record_error(self, step: str, error: Exception) -> str:
        message = f"{step}: {error}"
        self._stats.errors += 1
        self._stats.last_error = message
        logger.warning("Scheduler step %s failed: %s", step, error)
        return message


def group_jobs(jobs: list[BenchmarkJob]) -> list[list[BenchmarkJob]]:
    """Group jobs that one execution can serve, keeping dequeue order."""
    groups: dict[Hashable, list[BenchmarkJob]] = {}
    for job in jobs:
        groups.setdefault(job.group_key, []).append(job)
    return list(groups.values())
