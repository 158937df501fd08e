"""
Interfaces consumed from external collaborators.

The orchestrator never talks to a concrete container service or database
directly; it is handed objects satisfying these protocols. See
``loadbench.connectors`` for the in-memory and AWS implementations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from loadbench.models import PerWorkerSummary, Scenario, TestRun


class TaskStatus(str, Enum):
    """Status reported by the container execution service."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPED_SUCCESS = "STOPPED_SUCCESS"
    STOPPED_FAILURE = "STOPPED_FAILURE"


@dataclass(frozen=True)
class TaskState:
    status: TaskStatus
    artifact_location: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class TaskSpec:
    """Everything a single worker needs to start."""

    test_id: str
    scenario_id: str
    scenario_location: str
    region: str
    index: int
    concurrency: int
    duration_seconds: int
    ramp_up_seconds: int
    image: str
    test_type: str = "simple"
    cpu: str | None = None
    memory: str | None = None
    extra_env: dict[str, str] = field(default_factory=dict)

    def environment(self) -> dict[str, str]:
        env = {
            "TEST_ID": self.test_id,
            "SCENARIO_ID": self.scenario_id,
            "SCENARIO_LOCATION": self.scenario_location,
            "REGION": self.region,
            "WORKER_INDEX": str(self.index),
            "CONCURRENCY": str(self.concurrency),
            "DURATION": str(self.duration_seconds),
            "RAMP_UP": str(self.ramp_up_seconds),
            "TEST_TYPE": self.test_type,
        }
        env.update(self.extra_env)
        return env


class ContainerService(Protocol):
    async def launch_tasks(
        self, test_id: str, specs: list[TaskSpec]
    ) -> list[str | None]:
        """
        Launch one task per spec.

        Returns a list aligned with ``specs``: the task handle, or None where
        that worker could not be placed. Raises only when no task was started,
        so retrying the unplaced specs never duplicates a running worker.
        """
        ...

    async def describe_tasks(self, handles: list[str]) -> dict[str, TaskState]:
        ...

    async def stop_task(self, handle: str) -> None:
        """Idempotent: stopping an already-stopped task is not an error."""
        ...


class ScenarioStore(Protocol):
    async def get_scenario(self, scenario_id: str) -> Scenario:
        """Raises ScenarioNotFound."""
        ...

    async def put_scenario(self, scenario: Scenario) -> None:
        ...

    def scenario_location(self, scenario_id: str) -> str:
        """Where workers fetch the scenario payload from."""
        ...

    async def put_run_record(self, run: TestRun) -> None:
        """Upsert by test_id."""
        ...

    async def get_run_record(self, test_id: str) -> TestRun | None:
        ...

    async def list_runs(self, scenario_id: str) -> list[TestRun]:
        ...


class ArtifactStore(Protocol):
    async def get_artifact(self, location: str) -> PerWorkerSummary:
        ...
