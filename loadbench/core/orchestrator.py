from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from loadbench.core.aggregator import ResultsAggregator
from loadbench.core.cancellation import CancellationCoordinator
from loadbench.core.fleet_controller import FleetController
from loadbench.core.interfaces import ArtifactStore, ContainerService, ScenarioStore
from loadbench.core.run_log_stream import RunLogRelayHandler
from loadbench.core.state_machine import RunSettings, RunStateMachine
from loadbench.core.telemetry_relay import TelemetryRelay
from loadbench.errors import AlreadyTerminal, RunCompleting, RunNotActive, RunNotFound
from loadbench.models import RunStatus, TestRun

logger = logging.getLogger(__name__)

# Finished runs whose terminal record the store never accepted.
MAX_UNPERSISTED_RUNS = 1000


@dataclass
class RunContext:
    """Context for an active run managed by the orchestrator."""

    test_id: str
    machine: RunStateMachine
    task: asyncio.Task | None = None
    log_handler: logging.Handler | None = None


class OrchestratorService:
    """
    Control plane for load test runs.

    Each run gets its own asyncio task, so a slow container service call in
    one run never holds up polling of another. The service only keeps
    in-memory handles for active runs; finished runs are read back from the
    scenario store, except those whose terminal write failed, which are
    served from memory instead.
    """

    def __init__(
        self,
        *,
        scenario_store: ScenarioStore,
        container_service: ContainerService,
        artifact_store: ArtifactStore,
        settings: RunSettings | None = None,
        telemetry: TelemetryRelay | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.scenario_store = scenario_store
        self.container_service = container_service
        self.artifact_store = artifact_store
        self.settings = settings or RunSettings()
        self.telemetry = telemetry or TelemetryRelay()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._active_runs: dict[str, RunContext] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._unpersisted_runs: OrderedDict[str, TestRun] = OrderedDict()

        self.fleet = FleetController(
            container_service,
            scenario_store,
            max_fleet_size=self.settings.max_fleet_size,
            worker_image=self.settings.worker_image,
            batch_size=self.settings.launch_batch_size,
            retry_attempts=self.settings.launch_retry_attempts,
            retry_delay_seconds=self.settings.launch_retry_delay_seconds,
            worker_cpu=self.settings.worker_cpu,
            worker_memory=self.settings.worker_memory,
            sleep=sleep,
        )
        self.aggregator = ResultsAggregator(
            artifact_store,
            retry_attempts=self.settings.artifact_retry_attempts,
            retry_delay_seconds=self.settings.poll_interval_seconds,
            sleep=sleep,
        )

    @property
    def active_run_count(self) -> int:
        return len(self._active_runs)

    def _new_cancellation(self) -> CancellationCoordinator:
        return CancellationCoordinator(
            self.container_service,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            grace_seconds=self.settings.cancel_grace_seconds,
            clock=self._clock,
            sleep=self._sleep,
        )

    async def start_run(self, scenario_id: str) -> str:
        """
        Create a run for ``scenario_id`` and start its loop.

        Raises ScenarioNotFound, or CapacityExceeded before anything is
        launched. Returns the new test id.
        """
        scenario = await self.scenario_store.get_scenario(scenario_id)
        plan = self.fleet.plan(scenario)

        test_id = uuid.uuid4().hex
        run = TestRun(
            test_id=test_id,
            scenario_id=scenario.scenario_id,
            scenario_name=scenario.name,
            start_time=self._clock(),
            updated_at=self._clock(),
            workers_requested=plan.worker_count,
        )
        machine = RunStateMachine(
            run=run,
            scenario=scenario,
            plan=plan,
            fleet=self.fleet,
            container_service=self.container_service,
            scenario_store=self.scenario_store,
            aggregator=self.aggregator,
            cancellation=self._new_cancellation(),
            settings=self.settings,
            telemetry=self.telemetry,
            clock=self._clock,
            sleep=self._sleep,
        )
        await machine.persist()

        ctx = RunContext(test_id=test_id, machine=machine)
        ctx.log_handler = RunLogRelayHandler(test_id=test_id, relay=self.telemetry)
        logging.getLogger().addHandler(ctx.log_handler)
        self._active_runs[test_id] = ctx

        task = asyncio.create_task(self._run(ctx), name=f"run-{test_id}")
        ctx.task = task
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        logger.info(
            "Run %s created for scenario %s (%s): %d worker(s) across %s",
            test_id,
            scenario.scenario_id,
            scenario.name,
            plan.worker_count,
            plan.region_counts,
        )
        return test_id

    async def _run(self, ctx: RunContext) -> TestRun:
        try:
            return await ctx.machine.execute()
        finally:
            run = ctx.machine.run
            if run.is_terminal and not ctx.machine.final_persisted:
                self._remember_unpersisted(run)
            if ctx.log_handler is not None:
                logging.getLogger().removeHandler(ctx.log_handler)
            self._active_runs.pop(ctx.test_id, None)

    def _remember_unpersisted(self, run: TestRun) -> None:
        self._unpersisted_runs[run.test_id] = run.model_copy(deep=True)
        self._unpersisted_runs.move_to_end(run.test_id)
        while len(self._unpersisted_runs) > MAX_UNPERSISTED_RUNS:
            self._unpersisted_runs.popitem(last=False)

    async def cancel_run(self, test_id: str) -> TestRun:
        """
        Request cancellation. Delivered to the run loop at its next tick.

        Raises RunNotFound for unknown runs and AlreadyTerminal once the run
        has finished. Raises RunCompleting while results are being merged, since
        the run can then only end COMPLETE or PARTIAL. Repeated requests on a
        run still cancelling are no-ops.
        """
        ctx = self._active_runs.get(test_id)
        if ctx is not None and not ctx.machine.run.is_terminal:
            if ctx.machine.run.status == RunStatus.COMPLETING:
                raise RunCompleting(test_id)
            if not ctx.machine.cancel_requested:
                logger.info("Cancellation requested for run %s", test_id)
                ctx.machine.request_cancel()
            else:
                logger.info("Run %s already cancelling; ignoring repeat request", test_id)
            return ctx.machine.run.model_copy(deep=True)

        run = await self.get_run_status(test_id)
        if run.is_terminal:
            raise AlreadyTerminal(test_id, run.status.value)
        logger.warning("Run %s is %s but has no active loop", test_id, run.status.value)
        raise RunNotActive(test_id, run.status.value)

    async def get_run_status(self, test_id: str) -> TestRun:
        ctx = self._active_runs.get(test_id)
        if ctx is not None:
            return ctx.machine.run.model_copy(deep=True)
        unpersisted = self._unpersisted_runs.get(test_id)
        if unpersisted is not None:
            return unpersisted.model_copy(deep=True)
        run = await self.scenario_store.get_run_record(test_id)
        if run is None:
            raise RunNotFound(test_id)
        return run

    async def list_runs(self, scenario_id: str) -> list[TestRun]:
        await self.scenario_store.get_scenario(scenario_id)
        runs = {r.test_id: r for r in await self.scenario_store.list_runs(scenario_id)}
        for ctx in self._active_runs.values():
            if ctx.machine.run.scenario_id == scenario_id:
                runs[ctx.test_id] = ctx.machine.run.model_copy(deep=True)
        for run in self._unpersisted_runs.values():
            if run.scenario_id == scenario_id:
                runs[run.test_id] = run.model_copy(deep=True)
        return sorted(runs.values(), key=lambda r: r.start_time, reverse=True)

    async def wait_for_run(self, test_id: str, timeout: float | None = None) -> TestRun:
        ctx = self._active_runs.get(test_id)
        if ctx is not None and ctx.task is not None:
            await asyncio.wait_for(asyncio.shield(ctx.task), timeout=timeout)
        return await self.get_run_status(test_id)

    async def shutdown(self, timeout_seconds: float = 5.0) -> None:
        """Interrupt active run loops; their records are persisted as they stand."""
        tasks = [ctx.task for ctx in self._active_runs.values() if ctx.task is not None]
        if not tasks:
            return
        logger.info("Stopping %d active run loop(s)", len(tasks))
        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
        if pending:
            logger.warning("%d run loop(s) did not stop within %.1fs", len(pending), timeout_seconds)


_default_orchestrator: OrchestratorService | None = None


def has_orchestrator() -> bool:
    return _default_orchestrator is not None


def set_orchestrator(service: OrchestratorService | None) -> None:
    global _default_orchestrator
    _default_orchestrator = service


def get_orchestrator() -> OrchestratorService:
    """
    Get or create the process-wide orchestrator, wired from settings.
    """
    global _default_orchestrator

    if _default_orchestrator is None:
        from loadbench.config import settings
        from loadbench.connectors import build_backends

        backends = build_backends(settings)
        _default_orchestrator = OrchestratorService(
            scenario_store=backends.scenario_store,
            container_service=backends.container_service,
            artifact_store=backends.artifact_store,
            settings=RunSettings.from_settings(settings),
            telemetry=TelemetryRelay(queue_size=settings.TELEMETRY_QUEUE_SIZE),
        )

    return _default_orchestrator
