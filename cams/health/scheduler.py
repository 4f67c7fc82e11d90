"""Connection test scheduler: dispatches due schedules from a tick loop.

Every ``tick_seconds`` the loop loads all schedules, picks the enabled ones
whose cadence has elapsed and starts a run for each, unless a run for the
same application is still in flight. Probes across all runs share a global
concurrency cap so target databases are not flooded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any

from ..applications.registry import ApplicationRegistry, DatabaseConnection
from ..schedules.cadence import ScheduleValidationError
from ..schedules.store import RunStatus, Schedule, ScheduleStore, utcnow
from .engine import DEFAULT_TIMEOUT_S, ProbeRunner, RunResult, TestResult, classify_exception
from .store import ResultStore

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 30.0
DEFAULT_MAX_CONCURRENCY = 5


class ScheduleState(str, Enum):
    IDLE = "idle"
    DUE = "due"
    RUNNING = "running"


class RunInProgressError(RuntimeError):
    """A run for this application is already executing."""


class ConnectionTestScheduler:
    """Schedules and executes connection tests for all configured applications.

    The set of running application ids is only touched from the event loop
    thread, so claiming a run is atomic with respect to other ticks and to
    manual run-now requests.
    """

    def __init__(
        self,
        registry: ApplicationRegistry,
        schedules: ScheduleStore,
        results: ResultStore,
        runner: Any | None = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        probe_timeout_s: float = DEFAULT_TIMEOUT_S,
        on_result: Callable[[RunResult], Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.schedules = schedules
        self.results = results
        self.tick_seconds = tick_seconds
        self.max_concurrency = max_concurrency
        self.on_result = on_result  # SSE broadcast callback
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="probe")
        self.runner = runner or ProbeRunner(timeout_s=probe_timeout_s, executor=self._executor)
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._running: set[str] = set()
        self._inflight: dict[str, asyncio.Task[RunResult | None]] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._started = False
        self.last_tick_at: datetime | None = None
        self.tick_count = 0

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background tick loop."""
        if self._started:
            return
        self._started = True
        self._loop_task = asyncio.create_task(self._tick_loop(), name="connection-test-scheduler")
        logger.info(
            "Connection test scheduler started (tick=%ss, max_concurrency=%d)",
            self.tick_seconds, self.max_concurrency,
        )

    async def stop(self) -> None:
        """Stop the tick loop and cancel in-flight runs."""
        self._started = False
        if self._loop_task:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._executor.shutdown(wait=False)
        logger.info("Connection test scheduler stopped")

    async def drain(self) -> None:
        """Wait until no dispatched run is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def _tick_loop(self) -> None:
        while self._started:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.tick_seconds)

    # ── Scheduling ───────────────────────────────────────────────────────

    def state(self, application_id: str) -> ScheduleState:
        if application_id in self._running:
            return ScheduleState.RUNNING
        schedule = self.schedules.get(application_id)
        if schedule and self._is_due(schedule, self.clock()):
            return ScheduleState.DUE
        return ScheduleState.IDLE

    def due_schedules(self, now: datetime | None = None) -> list[Schedule]:
        """Enabled schedules whose next run time has passed."""
        now = now or self.clock()
        return [s for s in self.schedules.list() if self._is_due(s, now)]

    @staticmethod
    def _is_due(schedule: Schedule, now: datetime) -> bool:
        try:
            return schedule.is_due(now)
        except ScheduleValidationError:
            logger.warning("Ignoring schedule %s with invalid cadence %r",
                           schedule.application_id, schedule.cadence)
            return False

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Dispatch every due schedule that is not already running.

        Returns the application ids dispatched. Runs continue in the
        background; the tick does not wait for them.
        """
        now = now or self.clock()
        self.last_tick_at = now
        self.tick_count += 1

        dispatched = []
        for schedule in self.due_schedules(now):
            application_id = schedule.application_id
            if application_id in self._running:
                logger.debug("Skipping %s: previous run still in progress", application_id)
                continue
            self._running.add(application_id)
            self._inflight[application_id] = asyncio.create_task(
                self._dispatch(application_id), name=f"connection-test-{application_id}",
            )
            dispatched.append(application_id)

        if dispatched:
            logger.info("Tick %d dispatched %d runs: %s", self.tick_count, len(dispatched), ", ".join(dispatched))
        return dispatched

    async def run_now(self, application_id: str) -> RunResult:
        """Run an application's tests immediately and wait for the result."""
        if application_id in self._running:
            raise RunInProgressError(f"A connection test for '{application_id}' is already running")
        self._running.add(application_id)
        try:
            return await self._execute(application_id)
        finally:
            self._running.discard(application_id)

    async def test_connection(self, application_id: str, connection: DatabaseConnection) -> TestResult:
        """Probe a single connection under the global concurrency cap."""
        return await self._probe(application_id, connection)

    # ── Execution ────────────────────────────────────────────────────────

    async def _dispatch(self, application_id: str) -> RunResult | None:
        try:
            return await self._execute(application_id)
        except Exception:
            logger.exception("Scheduled connection test crashed for %s", application_id)
            return None
        finally:
            self._running.discard(application_id)
            self._inflight.pop(application_id, None)

    async def _execute(self, application_id: str) -> RunResult:
        started_at = self.clock()
        t0 = time.perf_counter()
        try:
            application = self.registry.get(application_id)
            if application is None:
                run = RunResult(
                    application_id, RunStatus.ERROR,
                    f"Application '{application_id}' not found in registry",
                    0.0, [], started_at,
                )
            else:
                results = await asyncio.gather(
                    *(self._probe(application_id, c) for c in application.active_connections)
                )
                run = RunResult.from_results(
                    application_id, list(results), _elapsed_ms(t0), started_at,
                )
        except Exception as e:
            logger.exception("Error executing connection test for %s", application_id)
            run = RunResult(
                application_id, RunStatus.ERROR, f"Test execution failed: {e}",
                _elapsed_ms(t0), [], started_at,
            )

        self.results.record(application_id, run)
        if self.on_result:
            try:
                self.on_result(run)
            except Exception:
                logger.exception("SSE callback error")

        logger.info(
            "Connection test for %s: %s (%.0fms) %s",
            application_id, run.status.value, run.duration_ms, run.message,
        )
        return run

    async def _probe(self, application_id: str, connection: DatabaseConnection) -> TestResult:
        async with self._semaphore:
            t0 = time.perf_counter()
            try:
                return await self.runner.run(connection, application_id)
            except Exception as e:
                logger.exception("Probe runner failed for %s/%s", application_id, connection.id)
                kind, code = classify_exception(e, connection.type)
                return TestResult(
                    application_id=application_id,
                    connection_id=connection.id,
                    connection_type=connection.type.value,
                    success=False,
                    latency_ms=_elapsed_ms(t0),
                    error=kind,
                    error_code=code,
                    message=f"Test failed: {type(e).__name__}: {e}",
                )

    # ── Introspection ────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "tick_seconds": self.tick_seconds,
            "max_concurrency": self.max_concurrency,
            "tick_count": self.tick_count,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "running": sorted(self._running),
            "stale": sorted(self.results.stale),
        }


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)
