"""
Error taxonomy for run orchestration.

Every terminal failure or cancellation of a run is tagged with a
FailureReason. The exception classes below carry the same reason so API
routes and the run loop can translate them without string matching.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    """Reasons recorded on a run when it fails, is cancelled, or degrades."""

    LAUNCH_FAILURE = "LaunchFailure"
    LAUNCH_PARTIAL_FAILURE = "LaunchPartialFailure"
    STATUS_UNAVAILABLE = "StatusUnavailable"
    TIMEOUT = "Timeout"
    USER_REQUESTED = "UserRequested"
    NO_ARTIFACTS = "NoArtifacts"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    WORKERS_FAILED = "WorkersFailed"
    ARTIFACT_UNAVAILABLE = "ArtifactUnavailable"
    INTERNAL_ERROR = "InternalError"


class LoadBenchError(Exception):
    """Base class for orchestration errors."""

    reason: FailureReason = FailureReason.INTERNAL_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason.value)
        self.message = message or self.reason.value


class NotFoundError(LoadBenchError):
    """Unknown scenario or run."""


class ScenarioNotFound(NotFoundError):
    def __init__(self, scenario_id: str) -> None:
        super().__init__(f"Scenario {scenario_id} not found")
        self.scenario_id = scenario_id


class RunNotFound(NotFoundError):
    def __init__(self, test_id: str) -> None:
        super().__init__(f"Run {test_id} not found")
        self.test_id = test_id


class AlreadyTerminal(LoadBenchError):
    """Cancellation requested for a run that already reached a terminal state."""

    def __init__(self, test_id: str, status: str) -> None:
        super().__init__(f"Run {test_id} is already {status}")
        self.test_id = test_id
        self.status = status


class InvalidTransition(LoadBenchError):
    """A status change not allowed by the run transition table."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition run from {current} to {target}")
        self.current = current
        self.target = target


class CapacityExceeded(LoadBenchError):
    reason = FailureReason.CAPACITY_EXCEEDED

    def __init__(self, requested: int, maximum: int) -> None:
        super().__init__(
            f"Scenario needs {requested} workers but the fleet is capped at {maximum}"
        )
        self.requested = requested
        self.maximum = maximum


class LaunchFailure(LoadBenchError):
    reason = FailureReason.LAUNCH_FAILURE


class LaunchPartialFailure(LoadBenchError):
    reason = FailureReason.LAUNCH_PARTIAL_FAILURE

    def __init__(self, launched: int, requested: int, errors: list[str] | None = None):
        super().__init__(f"Launched {launched} of {requested} workers")
        self.launched = launched
        self.requested = requested
        self.errors = list(errors or [])


class NoArtifacts(LoadBenchError):
    reason = FailureReason.NO_ARTIFACTS


class ArtifactUnavailable(LoadBenchError):
    reason = FailureReason.ARTIFACT_UNAVAILABLE


class RunNotActive(LoadBenchError):
    """A non-terminal run record that no run loop in this process owns."""

    def __init__(self, test_id: str, status: str) -> None:
        super().__init__(f"Run {test_id} is {status} but not active in this orchestrator")
        self.test_id = test_id
        self.status = status


class RunCompleting(LoadBenchError):
    """Cancellation requested after every worker finished; results are being merged."""

    def __init__(self, test_id: str) -> None:
        super().__init__(f"Run {test_id} is COMPLETING and can no longer be cancelled")
        self.test_id = test_id
