import pytest

from loadbench.config import Settings
from loadbench.connectors import build_backends
from loadbench.connectors.aws import DynamoScenarioStore, EcsContainerService
from loadbench.connectors.memory import (
    InMemoryArtifactStore,
    InMemoryScenarioStore,
    SimulatedContainerService,
    synthetic_artifact,
)
from loadbench.core.interfaces import TaskSpec, TaskStatus
from loadbench.errors import ArtifactUnavailable
from loadbench.models import RunStatus, TestRun


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _spec(index: int) -> TaskSpec:
    return TaskSpec(
        test_id="t1",
        scenario_id="scn1",
        scenario_location="memory://scenarios/scn1.json",
        region="us-east-1",
        index=index,
        concurrency=5,
        duration_seconds=10,
        ramp_up_seconds=0,
        image="loadbench/load-tester:latest",
    )


def test_synthetic_artifact_is_consistent():
    summary = synthetic_artifact(_spec(0))
    assert summary.total_requests == 500
    assert sum(summary.latency_histogram.values()) == 500
    assert summary.error_count == 5
    assert summary.error_codes == {"500": 5}


@pytest.mark.asyncio
async def test_simulated_worker_lifecycle():
    clock = _Clock()
    artifacts = InMemoryArtifactStore()
    containers = SimulatedContainerService(
        artifact_store=artifacts,
        clock=clock,
        pending_seconds=2,
        fail_indices=[1],
        unplaceable_indices=[2],
    )

    ok, failing, unplaced = await containers.launch_tasks("t1", [_spec(0), _spec(1), _spec(2)])
    assert unplaced is None

    states = await containers.describe_tasks([ok, failing])
    assert states[ok].status == TaskStatus.PENDING

    clock.now = 5
    assert (await containers.describe_tasks([ok]))[ok].status == TaskStatus.RUNNING

    clock.now = 12
    states = await containers.describe_tasks([ok, failing])
    assert states[ok].status == TaskStatus.STOPPED_SUCCESS
    assert states[failing].status == TaskStatus.STOPPED_FAILURE
    summary = await artifacts.get_artifact(states[ok].artifact_location)
    assert summary.total_requests == 500


@pytest.mark.asyncio
async def test_stopped_worker_reports_failure_and_stop_is_idempotent():
    clock = _Clock()
    containers = SimulatedContainerService(clock=clock)
    (handle,) = await containers.launch_tasks("t1", [_spec(0)])

    await containers.stop_task(handle)
    await containers.stop_task(handle)

    state = (await containers.describe_tasks([handle]))[handle]
    assert state.status == TaskStatus.STOPPED_FAILURE
    assert containers.stop_calls == [handle, handle]


@pytest.mark.asyncio
async def test_in_memory_stores_return_copies():
    store = InMemoryScenarioStore()
    run = TestRun(test_id="t1", scenario_id="scn1")
    await store.put_run_record(run)
    run.transition_to(RunStatus.RUNNING)

    stored = await store.get_run_record("t1")
    assert stored.status == RunStatus.PENDING
    assert await store.get_run_record("missing") is None
    assert [r.test_id for r in await store.list_runs("scn1")] == ["t1"]

    with pytest.raises(ArtifactUnavailable):
        await InMemoryArtifactStore().get_artifact("memory://results/none.json")


def test_build_backends_selects_implementation(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")

    memory = build_backends(Settings(STORAGE_BACKEND="memory"))
    assert isinstance(memory.container_service, SimulatedContainerService)
    assert memory.container_service.artifact_store is memory.artifact_store

    aws = build_backends(
        Settings(STORAGE_BACKEND="AWS", ECS_SUBNETS="subnet-a, subnet-b", ECS_SECURITY_GROUP="sg-1")
    )
    assert isinstance(aws.scenario_store, DynamoScenarioStore)
    assert isinstance(aws.container_service, EcsContainerService)
    assert aws.container_service.subnets == ["subnet-a", "subnet-b"]
    assert aws.container_service.security_groups == ["sg-1"]

    with pytest.raises(ValueError):
        build_backends(Settings(STORAGE_BACKEND="postgres"))
