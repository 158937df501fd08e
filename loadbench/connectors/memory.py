"""
In-process backends.

Used for local development (STORAGE_BACKEND=memory) and tests. The
simulated container service advances workers on a monotonic clock and
writes synthetic artifacts into the in-memory artifact store, so a full run
can be exercised end to end without any cloud resources.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable

from loadbench.core.interfaces import TaskSpec, TaskState, TaskStatus
from loadbench.errors import ArtifactUnavailable, ScenarioNotFound
from loadbench.models import PerWorkerSummary, Scenario, TestRun

logger = logging.getLogger(__name__)

# Upper bounds (ms) of the latency buckets used by synthetic artifacts.
SYNTHETIC_BUCKETS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0)
SYNTHETIC_SHARES = (0.30, 0.30, 0.20, 0.12, 0.06, 0.02)


class InMemoryScenarioStore:
    def __init__(self) -> None:
        self._scenarios: dict[str, Scenario] = {}
        self._runs: dict[str, TestRun] = {}

    async def get_scenario(self, scenario_id: str) -> Scenario:
        scenario = self._scenarios.get(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(scenario_id)
        return scenario

    async def put_scenario(self, scenario: Scenario) -> None:
        self._scenarios[scenario.scenario_id] = scenario

    def scenario_location(self, scenario_id: str) -> str:
        return f"memory://scenarios/{scenario_id}.json"

    async def put_run_record(self, run: TestRun) -> None:
        self._runs[run.test_id] = run.model_copy(deep=True)

    async def get_run_record(self, test_id: str) -> TestRun | None:
        run = self._runs.get(test_id)
        return run.model_copy(deep=True) if run is not None else None

    async def list_runs(self, scenario_id: str) -> list[TestRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if run.scenario_id == scenario_id
        ]


class InMemoryArtifactStore:
    def __init__(self) -> None:
        self._artifacts: dict[str, PerWorkerSummary] = {}

    def put_artifact(self, location: str, summary: PerWorkerSummary) -> None:
        self._artifacts[location] = summary

    async def get_artifact(self, location: str) -> PerWorkerSummary:
        summary = self._artifacts.get(location)
        if summary is None:
            raise ArtifactUnavailable(f"No artifact at {location}")
        return summary

    def __len__(self) -> int:
        return len(self._artifacts)


def synthetic_artifact(spec: TaskSpec) -> PerWorkerSummary:
    """Deterministic per-worker result shaped like a real load tool's output."""
    total = max(1, spec.concurrency) * max(1, spec.duration_seconds) * 10
    histogram: dict[float, int] = {}
    assigned = 0
    for bucket, share in zip(SYNTHETIC_BUCKETS, SYNTHETIC_SHARES):
        count = int(total * share)
        histogram[bucket] = count
        assigned += count
    histogram[SYNTHETIC_BUCKETS[-1]] += total - assigned
    errors = total // 100
    return PerWorkerSummary(
        total_requests=total,
        error_count=errors,
        throughput=total / max(1, spec.duration_seconds),
        latency_histogram=histogram,
        avg_latency_ms=sum(b * c for b, c in histogram.items()) / total,
        min_latency_ms=1.0,
        max_latency_ms=SYNTHETIC_BUCKETS[-1],
        error_codes={"500": errors} if errors else {},
    )


@dataclass
class _SimulatedTask:
    handle: str
    spec: TaskSpec
    started_at: float
    stopped: bool = False
    final: TaskState | None = None


@dataclass
class SimulatedContainerService:
    """
    Fake container execution service.

    Workers sit PENDING for ``pending_seconds``, run for ``run_seconds``
    (default: the scenario duration) on the injected monotonic ``clock``
    and then stop successfully with a synthetic artifact. Worker indices
    listed in ``fail_indices`` stop with a failure; indices in
    ``unplaceable_indices`` are never placed.
    """

    artifact_store: InMemoryArtifactStore = field(default_factory=InMemoryArtifactStore)
    clock: Callable[[], float] = time.monotonic
    run_seconds: float | None = None
    pending_seconds: float = 0.0
    fail_indices: Iterable[int] = ()
    unplaceable_indices: Iterable[int] = ()
    stop_calls: list[str] = field(default_factory=list)
    launch_calls: int = 0
    describe_calls: int = 0

    def __post_init__(self) -> None:
        self.fail_indices = set(self.fail_indices)
        self.unplaceable_indices = set(self.unplaceable_indices)
        self._tasks: dict[str, _SimulatedTask] = {}

    async def launch_tasks(self, test_id: str, specs: list[TaskSpec]) -> list[str | None]:
        self.launch_calls += 1
        handles: list[str | None] = []
        for spec in specs:
            if spec.index in self.unplaceable_indices:
                handles.append(None)
                continue
            handle = f"sim:{spec.region}:task/{test_id[:8]}-{spec.index}-{uuid.uuid4().hex[:6]}"
            self._tasks[handle] = _SimulatedTask(handle=handle, spec=spec, started_at=self.clock())
            handles.append(handle)
        logger.debug("Simulated launch for %s: %d task(s)", test_id, sum(1 for h in handles if h))
        return handles

    def _state(self, task: _SimulatedTask) -> TaskState:
        if task.final is not None:
            return task.final
        if task.stopped:
            task.final = TaskState(TaskStatus.STOPPED_FAILURE, detail="Stopped by request")
            return task.final

        duration = (
            self.run_seconds if self.run_seconds is not None else task.spec.duration_seconds
        )
        elapsed = self.clock() - task.started_at
        if elapsed < self.pending_seconds:
            return TaskState(TaskStatus.PENDING)
        if elapsed < self.pending_seconds + duration:
            return TaskState(TaskStatus.RUNNING)

        if task.spec.index in self.fail_indices:
            task.final = TaskState(TaskStatus.STOPPED_FAILURE, detail="Essential container exited (1)")
            return task.final

        location = f"memory://results/{task.spec.test_id}/{task.handle.rsplit('/', 1)[-1]}.json"
        self.artifact_store.put_artifact(location, synthetic_artifact(task.spec))
        task.final = TaskState(TaskStatus.STOPPED_SUCCESS, artifact_location=location)
        return task.final

    async def describe_tasks(self, handles: list[str]) -> dict[str, TaskState]:
        self.describe_calls += 1
        return {h: self._state(self._tasks[h]) for h in handles if h in self._tasks}

    async def stop_task(self, handle: str) -> None:
        self.stop_calls.append(handle)
        task = self._tasks.get(handle)
        if task is not None and task.final is None:
            task.stopped = True
