from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from loadbench.errors import FailureReason, InvalidTransition
from loadbench.models import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    ResultSummary,
    RunStatus,
    Scenario,
    TestRun,
    WorkerStatus,
    WorkerTask,
)


def _scenario(**overrides) -> Scenario:
    data = {
        "name": "checkout",
        "concurrency": 100,
        "worker_capacity": 25,
        "duration_seconds": 60,
        "regions": ["us-east-1", "eu-west-1"],
    }
    data.update(overrides)
    return Scenario(**data)


def _summary() -> ResultSummary:
    return ResultSummary(
        worker_count=1,
        total_requests=10,
        error_count=0,
        success_rate=1.0,
        throughput=1.0,
    )


def test_scenario_defaults_and_id():
    scenario = _scenario()
    assert len(scenario.scenario_id) == 10
    assert scenario.ramp_up_seconds == 0
    assert scenario.worker_count is None


def test_scenario_is_immutable():
    scenario = _scenario()
    with pytest.raises(ValidationError):
        scenario.name = "other"


@pytest.mark.parametrize(
    "overrides",
    [
        {"concurrency": 0},
        {"worker_capacity": 0},
        {"regions": []},
        {"regions": ["us-east-1", "us-east-1"]},
        {"regions": [" "]},
        {"ramp_up_seconds": 61},
    ],
)
def test_scenario_rejects_invalid_definitions(overrides):
    with pytest.raises(ValidationError):
        _scenario(**overrides)


def test_terminal_statuses_have_no_outgoing_transitions():
    for status in TERMINAL_STATUSES:
        assert TRANSITIONS[status] == frozenset()


def test_transition_sets_end_time_and_keeps_first_reason():
    run = TestRun(test_id="t1", scenario_id="s1")
    at = datetime(2024, 1, 1, tzinfo=UTC)

    run.transition_to(RunStatus.RUNNING, at=at)
    run.transition_to(RunStatus.CANCELLING, reason=FailureReason.TIMEOUT, at=at)
    run.transition_to(RunStatus.CANCELLED, reason=FailureReason.USER_REQUESTED, at=at)

    assert run.status == RunStatus.CANCELLED
    assert run.reason == FailureReason.TIMEOUT
    assert run.end_time == at
    assert run.is_terminal


def test_terminal_run_cannot_transition():
    run = TestRun(test_id="t1", scenario_id="s1")
    run.transition_to(RunStatus.FAILED, reason=FailureReason.LAUNCH_FAILURE)
    for target in RunStatus:
        with pytest.raises(InvalidTransition):
            run.transition_to(target)


def test_cancelling_only_ends_cancelled():
    run = TestRun(test_id="t1", scenario_id="s1")
    run.transition_to(RunStatus.CANCELLING, reason=FailureReason.USER_REQUESTED)
    with pytest.raises(InvalidTransition):
        run.transition_to(RunStatus.FAILED)
    run.transition_to(RunStatus.CANCELLED)


def test_complete_requires_result():
    run = TestRun(test_id="t1", scenario_id="s1")
    run.transition_to(RunStatus.RUNNING)
    run.transition_to(RunStatus.COMPLETING)
    with pytest.raises(InvalidTransition):
        run.transition_to(RunStatus.COMPLETE)
    run.result = _summary()
    run.transition_to(RunStatus.COMPLETE)
    assert run.status == RunStatus.COMPLETE


def test_worker_task_success_requires_artifact():
    task = WorkerTask(handle="h", index=0, region="us-east-1", status=WorkerStatus.STOPPED)
    assert task.is_terminal
    assert not task.succeeded
    task.artifact_location = "memory://results/t/h.json"
    assert task.succeeded


def test_run_round_trips_through_json():
    run = TestRun(test_id="t1", scenario_id="s1", workers_requested=2)
    run.tasks.append(WorkerTask(handle="h0", index=0, region="us-east-1"))
    run.record_error(FailureReason.LAUNCH_PARTIAL_FAILURE, "Launched 1 of 2 workers")

    restored = TestRun.model_validate_json(run.model_dump_json())

    assert restored == run
    assert restored.errors[0].reason == FailureReason.LAUNCH_PARTIAL_FAILURE
