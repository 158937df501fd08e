import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from loadbench.core.cancellation import CancellationCoordinator
from loadbench.core.interfaces import TaskState, TaskStatus
from loadbench.errors import FailureReason
from loadbench.models import RunStatus, TestRun, WorkerStatus, WorkerTask


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class _StubbornContainers:
    """Accepts stop requests but the tasks keep running."""

    def __init__(self, *, failing_stops: int = 0) -> None:
        self.failing_stops = failing_stops
        self.stop_calls: list[str] = []
        self.stopped: set[str] = set()
        self.honour_stops = False

    async def launch_tasks(self, test_id, specs):
        return []

    async def describe_tasks(self, handles):
        states = {}
        for handle in handles:
            if self.honour_stops and handle in self.stopped:
                states[handle] = TaskState(TaskStatus.STOPPED_FAILURE)
            else:
                states[handle] = TaskState(TaskStatus.RUNNING)
        return states

    async def stop_task(self, handle):
        self.stop_calls.append(handle)
        if self.failing_stops > 0:
            self.failing_stops -= 1
            raise ConnectionError("stop_task throttled")
        self.stopped.add(handle)


def _running_run(*statuses: WorkerStatus) -> TestRun:
    run = TestRun(
        test_id="t1",
        scenario_id="s1",
        tasks=[
            WorkerTask(handle=f"h{idx}", index=idx, region="r", status=status)
            for idx, status in enumerate(statuses)
        ],
    )
    run.transition_to(RunStatus.RUNNING)
    return run


@pytest.mark.asyncio
async def test_stragglers_are_force_stopped_after_grace():
    clock = _Clock()
    containers = _StubbornContainers()
    coordinator = CancellationCoordinator(
        containers, poll_interval_seconds=5, grace_seconds=20, clock=clock, sleep=clock.sleep
    )
    run = _running_run(WorkerStatus.RUNNING, WorkerStatus.RUNNING)

    await coordinator.cancel(run)

    assert run.status == RunStatus.CANCELLED
    assert run.reason == FailureReason.USER_REQUESTED
    assert all(t.status == WorkerStatus.STOPPED and t.forced_stop for t in run.tasks)
    assert containers.stop_calls == ["h0", "h1"]
    assert run.end_time == datetime(2024, 1, 1, tzinfo=UTC) + timedelta(seconds=20)


@pytest.mark.asyncio
async def test_terminal_tasks_are_not_stopped():
    clock = _Clock()
    containers = _StubbornContainers()
    containers.honour_stops = True
    coordinator = CancellationCoordinator(
        containers, poll_interval_seconds=5, grace_seconds=20, clock=clock, sleep=clock.sleep
    )
    run = _running_run(WorkerStatus.FAILED, WorkerStatus.RUNNING)

    await coordinator.cancel(run)

    assert containers.stop_calls == ["h1"]
    assert run.tasks[1].status == WorkerStatus.FAILED
    assert not run.tasks[1].forced_stop
    assert run.status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_failed_stop_is_retried_on_next_poll():
    clock = _Clock()
    containers = _StubbornContainers(failing_stops=1)
    containers.honour_stops = True
    coordinator = CancellationCoordinator(
        containers, poll_interval_seconds=5, grace_seconds=60, clock=clock, sleep=clock.sleep
    )
    run = _running_run(WorkerStatus.RUNNING)

    await coordinator.cancel(run)

    assert containers.stop_calls == ["h0", "h0"]
    assert run.tasks[0].status == WorkerStatus.FAILED
    assert run.status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_on_terminal_run_is_noop():
    clock = _Clock()
    containers = _StubbornContainers()
    coordinator = CancellationCoordinator(
        containers, poll_interval_seconds=5, grace_seconds=20, clock=clock, sleep=clock.sleep
    )
    run = _running_run(WorkerStatus.RUNNING)
    run.transition_to(RunStatus.FAILED, reason=FailureReason.STATUS_UNAVAILABLE)

    await coordinator.cancel(run)

    assert run.status == RunStatus.FAILED
    assert containers.stop_calls == []
