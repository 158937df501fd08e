"""
Run state machine.

One RunStateMachine drives one TestRun from PENDING to a terminal status:
launch the fleet, poll worker status on a fixed cadence, classify the fleet
each tick, and hand off to the aggregator or the cancellation coordinator.
Every transition goes through the TestRun transition table, so a terminal
status is never left again.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from loadbench.config import Settings
from loadbench.core.aggregator import ResultsAggregator
from loadbench.core.cancellation import CancellationCoordinator
from loadbench.core.fleet_controller import FleetController, FleetPlan, apply_task_states
from loadbench.core.interfaces import ContainerService, ScenarioStore
from loadbench.core.run_log_stream import CURRENT_TEST_ID
from loadbench.core.telemetry_relay import TelemetryRelay
from loadbench.errors import FailureReason, LaunchFailure, NoArtifacts
from loadbench.models import RunStatus, Scenario, TestRun, WorkerStatus, WorkerTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunSettings:
    """Lifecycle knobs for a run loop."""

    poll_interval_seconds: float = 5.0
    timeout_grace_seconds: float = 300.0
    status_failure_limit: int = 5
    cancel_grace_seconds: float = 120.0
    persist_retry_attempts: int = 3
    artifact_retry_attempts: int = 3
    min_live_worker_fraction: float = 0.0
    max_fleet_size: int = 100
    launch_batch_size: int = 10
    launch_retry_attempts: int = 3
    launch_retry_delay_seconds: float = 1.0
    worker_image: str = "loadbench/load-tester:latest"
    worker_cpu: str | None = None
    worker_memory: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunSettings":
        return cls(
            poll_interval_seconds=settings.POLL_INTERVAL_SECONDS,
            timeout_grace_seconds=settings.TIMEOUT_GRACE_SECONDS,
            status_failure_limit=settings.STATUS_FAILURE_LIMIT,
            cancel_grace_seconds=settings.CANCEL_GRACE_SECONDS,
            persist_retry_attempts=settings.PERSIST_RETRY_ATTEMPTS,
            artifact_retry_attempts=settings.ARTIFACT_RETRY_ATTEMPTS,
            min_live_worker_fraction=settings.MIN_LIVE_WORKER_FRACTION,
            max_fleet_size=settings.MAX_FLEET_SIZE,
            launch_batch_size=settings.LAUNCH_BATCH_SIZE,
            launch_retry_attempts=settings.LAUNCH_RETRY_ATTEMPTS,
            launch_retry_delay_seconds=settings.LAUNCH_RETRY_DELAY_SECONDS,
            worker_image=settings.WORKER_IMAGE,
            worker_cpu=settings.WORKER_CPU,
            worker_memory=settings.WORKER_MEMORY,
        )


@dataclass(frozen=True)
class TickDecision:
    """What a poll tick decided. ``status`` None means stay RUNNING."""

    status: RunStatus | None = None
    reason: FailureReason | None = None
    outcome: RunStatus | None = None


def classify_fleet(
    tasks: list[WorkerTask],
    *,
    elapsed_seconds: float,
    timeout_seconds: float,
    cancel_requested: bool,
) -> TickDecision:
    """
    Classify fleet status for one tick.

    Cancellation wins over everything observed in the same tick, including
    a fleet that just finished.
    """
    if cancel_requested:
        return TickDecision(RunStatus.CANCELLING, FailureReason.USER_REQUESTED)

    if all(t.is_terminal for t in tasks):
        succeeded = sum(1 for t in tasks if t.succeeded)
        if succeeded == 0:
            return TickDecision(RunStatus.FAILED, FailureReason.WORKERS_FAILED)
        outcome = RunStatus.COMPLETE if succeeded == len(tasks) else RunStatus.PARTIAL
        return TickDecision(RunStatus.COMPLETING, outcome=outcome)

    if elapsed_seconds >= timeout_seconds:
        return TickDecision(RunStatus.CANCELLING, FailureReason.TIMEOUT)

    return TickDecision()


class RunStateMachine:
    def __init__(
        self,
        *,
        run: TestRun,
        scenario: Scenario,
        plan: FleetPlan,
        fleet: FleetController,
        container_service: ContainerService,
        scenario_store: ScenarioStore,
        aggregator: ResultsAggregator,
        cancellation: CancellationCoordinator,
        settings: RunSettings,
        telemetry: TelemetryRelay | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.run = run
        self.scenario = scenario
        self.plan = plan
        self._fleet = fleet
        self._containers = container_service
        self._store = scenario_store
        self._aggregator = aggregator
        self._cancellation = cancellation
        self._settings = settings
        self._telemetry = telemetry
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._cancel_requested = False
        self._status_failures = 0
        self._next_tick_at: float | None = None
        self._pending_outcome: RunStatus | None = None
        self.ticks = 0
        self.final_persisted = False
        self.skipped_ticks = 0

    @property
    def timeout_seconds(self) -> float:
        return float(self.scenario.duration_seconds) + float(
            self._settings.timeout_grace_seconds
        )

    def request_cancel(self) -> None:
        """Signal cancellation; observed at the next tick."""
        self._cancel_requested = True
        self.run.cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def _elapsed_seconds(self) -> float:
        return (self._clock() - self.run.start_time).total_seconds()

    def _transition(
        self,
        target: RunStatus,
        *,
        reason: FailureReason | None = None,
    ) -> None:
        previous = self.run.status
        self.run.transition_to(target, reason=reason, at=self._clock())
        logger.info(
            "Run %s: %s -> %s%s",
            self.run.test_id,
            previous.value,
            target.value,
            f" ({reason.value})" if reason else "",
        )

    # ------------------------------------------------------------------
    # Persistence and status fan-out
    # ------------------------------------------------------------------

    async def persist(self, *, final: bool = False) -> bool:
        """
        Upsert the run record. Failures are logged; the terminal write is
        retried up to ``persist_retry_attempts`` times.
        """
        self.run.updated_at = self._clock()
        self._publish_status()
        attempts = max(1, self._settings.persist_retry_attempts) if final else 1
        for attempt in range(1, attempts + 1):
            try:
                await self._store.put_run_record(self.run.model_copy(deep=True))
                return True
            except Exception as e:
                logger.warning(
                    "Persisting run %s failed (attempt %d/%d): %s",
                    self.run.test_id,
                    attempt,
                    attempts,
                    e,
                )
                if attempt < attempts:
                    await self._sleep(self._settings.poll_interval_seconds)
        if final:
            logger.error("Run %s: terminal record could not be persisted", self.run.test_id)
        return False

    async def _persist_progress(self, _: TestRun) -> None:
        await self.persist()

    def _publish_status(self) -> None:
        if self._telemetry is None:
            return
        tasks = self.run.tasks
        self._telemetry.publish(
            self.run.test_id,
            {
                "kind": "status",
                "test_id": self.run.test_id,
                "status": self.run.status.value,
                "reason": self.run.reason.value if self.run.reason else None,
                "timestamp": self._clock().isoformat(),
                "workers": {
                    status.value: sum(1 for t in tasks if t.status == status)
                    for status in WorkerStatus
                },
            },
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def execute(self) -> TestRun:
        """Run to a terminal status. Never raises except on task cancellation."""
        CURRENT_TEST_ID.set(self.run.test_id)
        try:
            if self._cancel_requested:
                self._transition(RunStatus.CANCELLING, reason=FailureReason.USER_REQUESTED)
            else:
                await self._launch()

            while self.run.status == RunStatus.RUNNING:
                await self._wait_for_next_tick()
                await self._tick()

            if self.run.status == RunStatus.CANCELLING:
                await self._cancellation.cancel(self.run, on_progress=self._persist_progress)
            elif self.run.status == RunStatus.COMPLETING:
                await self._complete()
        except asyncio.CancelledError:
            logger.warning("Run loop for %s interrupted in %s", self.run.test_id, self.run.status.value)
            await asyncio.shield(self.persist())
            raise
        except Exception as e:
            logger.exception("Run %s failed unexpectedly", self.run.test_id)
            self.run.record_error(
                FailureReason.INTERNAL_ERROR, f"{type(e).__name__}: {e}", at=self._clock()
            )
            if not self.run.is_terminal:
                await self._cancellation.stop_tasks(self.run.tasks)
                # CANCELLING may only end as CANCELLED.
                target = (
                    RunStatus.FAILED
                    if self.run.can_transition(RunStatus.FAILED)
                    else RunStatus.CANCELLED
                )
                self._transition(target, reason=FailureReason.INTERNAL_ERROR)

        self.final_persisted = await self.persist(final=True)
        logger.info(
            "Run %s finished: %s%s",
            self.run.test_id,
            self.run.status.value,
            f" ({self.run.reason.value})" if self.run.reason else "",
        )
        return self.run

    async def _launch(self) -> None:
        try:
            launch = await self._fleet.launch(self.run.test_id, self.scenario, self.plan)
        except LaunchFailure as e:
            self.run.record_error(FailureReason.LAUNCH_FAILURE, e.message, at=self._clock())
            self._transition(RunStatus.FAILED, reason=FailureReason.LAUNCH_FAILURE)
            return

        self.run.tasks = launch.tasks
        if launch.error is not None:
            self.run.record_error(
                FailureReason.LAUNCH_PARTIAL_FAILURE, launch.error.message, at=self._clock()
            )

        required = math.ceil(self._settings.min_live_worker_fraction * launch.requested)
        if len(launch.tasks) < required:
            message = (
                f"Only {len(launch.tasks)} of {launch.requested} workers launched; "
                f"{required} required"
            )
            logger.warning("Run %s: %s", self.run.test_id, message)
            self.run.record_error(FailureReason.LAUNCH_FAILURE, message, at=self._clock())
            await self._cancellation.stop_tasks(self.run.tasks)
            self._transition(RunStatus.FAILED, reason=FailureReason.LAUNCH_FAILURE)
            return

        self._transition(RunStatus.RUNNING)
        await self.persist()

    async def _wait_for_next_tick(self) -> None:
        """
        Sleep until the next tick slot. Slots that already passed while the
        previous tick was in flight are skipped, never run back to back.
        """
        interval = self._settings.poll_interval_seconds
        now = self._clock().timestamp()
        if interval <= 0:
            await self._sleep(0)
            return
        if self._next_tick_at is None:
            self._next_tick_at = now + interval
        else:
            self._next_tick_at += interval
            while self._next_tick_at < now:
                self._next_tick_at += interval
                self.skipped_ticks += 1
                logger.debug("Run %s: poll tick skipped (previous tick overran)", self.run.test_id)
        await self._sleep(max(0.0, self._next_tick_at - now))

    async def _tick(self) -> None:
        self.ticks += 1
        if self._cancel_requested:
            self._transition(RunStatus.CANCELLING, reason=FailureReason.USER_REQUESTED)
            await self.persist()
            return

        active = self.run.active_tasks()
        try:
            states = await self._containers.describe_tasks([t.handle for t in active])
        except Exception as e:
            self._status_failures += 1
            logger.warning(
                "Run %s: status query failed (%d/%d): %s",
                self.run.test_id,
                self._status_failures,
                self._settings.status_failure_limit,
                e,
            )
            if self._status_failures >= self._settings.status_failure_limit:
                self.run.record_error(
                    FailureReason.STATUS_UNAVAILABLE,
                    f"Worker status unavailable after {self._status_failures} "
                    f"consecutive attempts: {e}",
                    at=self._clock(),
                )
                await self._cancellation.stop_tasks(self.run.tasks)
                self._transition(RunStatus.FAILED, reason=FailureReason.STATUS_UNAVAILABLE)
            return
        self._status_failures = 0

        now = self._clock()
        changed = apply_task_states(active, states, now=now)
        for task in changed:
            if task.status == WorkerStatus.FAILED:
                detail = states[task.handle].detail
                self.run.record_error(
                    FailureReason.WORKERS_FAILED,
                    f"Worker {task.index} ({task.region}) failed"
                    + (f": {detail}" if detail else ""),
                    handle=task.handle,
                    at=now,
                )
            elif task.status == WorkerStatus.STOPPED and task.artifact_location is None:
                self.run.record_error(
                    FailureReason.NO_ARTIFACTS,
                    f"Worker {task.index} ({task.region}) stopped without a result artifact",
                    handle=task.handle,
                    at=now,
                )

        decision = classify_fleet(
            self.run.tasks,
            elapsed_seconds=self._elapsed_seconds(),
            timeout_seconds=self.timeout_seconds,
            cancel_requested=self._cancel_requested,
        )
        if decision.status is None:
            if changed:
                await self.persist()
            return

        if decision.status == RunStatus.COMPLETING:
            self._pending_outcome = decision.outcome
        elif decision.status == RunStatus.FAILED:
            self.run.record_error(
                FailureReason.WORKERS_FAILED, "All workers failed", at=self._clock()
            )
        elif decision.reason == FailureReason.TIMEOUT:
            self.run.record_error(
                FailureReason.TIMEOUT,
                f"Run exceeded {self.timeout_seconds:.0f}s with "
                f"{len(self.run.active_tasks())} worker(s) still active",
                at=self._clock(),
            )
        self._transition(decision.status, reason=decision.reason)
        await self.persist()

    async def _complete(self) -> None:
        outcome = self._pending_outcome or RunStatus.COMPLETE
        try:
            result = await self._aggregator.aggregate(self.run)
        except NoArtifacts as e:
            self.run.record_error(FailureReason.NO_ARTIFACTS, e.message, at=self._clock())
            self._transition(RunStatus.FAILED, reason=FailureReason.NO_ARTIFACTS)
            return

        for task, message in result.unavailable:
            self.run.record_error(
                FailureReason.ARTIFACT_UNAVAILABLE,
                f"Artifact for worker {task.index} unavailable: {message}",
                handle=task.handle,
                at=self._clock(),
            )
        # A fleet launched short never counts as a complete run.
        if result.unavailable or len(self.run.tasks) < self.run.workers_requested:
            outcome = RunStatus.PARTIAL

        self.run.result = result.summary
        self._transition(outcome)
