"""
Test Run Models

Defines the run record, its worker tasks, and the run lifecycle transition
table.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from loadbench.errors import FailureReason, InvalidTransition
from loadbench.models.results import ResultSummary


class RunStatus(str, Enum):
    """Run lifecycle status."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETING = "COMPLETING"
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    CANCELLING = "CANCELLING"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


TERMINAL_STATUSES: FrozenSet[RunStatus] = frozenset(
    {RunStatus.COMPLETE, RunStatus.PARTIAL, RunStatus.CANCELLED, RunStatus.FAILED}
)

# Allowed transitions. Terminal statuses have no outgoing edges.
TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset(
        {RunStatus.RUNNING, RunStatus.CANCELLING, RunStatus.FAILED}
    ),
    RunStatus.RUNNING: frozenset(
        {RunStatus.COMPLETING, RunStatus.CANCELLING, RunStatus.FAILED}
    ),
    RunStatus.COMPLETING: frozenset(
        {RunStatus.COMPLETE, RunStatus.PARTIAL, RunStatus.FAILED}
    ),
    RunStatus.CANCELLING: frozenset({RunStatus.CANCELLED}),
    RunStatus.COMPLETE: frozenset(),
    RunStatus.PARTIAL: frozenset(),
    RunStatus.CANCELLED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class WorkerStatus(str, Enum):
    """Last observed status of a worker task."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RunError(BaseModel):
    """An error recorded against a run."""

    timestamp: datetime = Field(default_factory=_utcnow, description="When it happened")
    reason: FailureReason = Field(..., description="Taxonomy value")
    message: str = Field(..., description="Human-readable message")
    handle: Optional[str] = Field(None, description="Worker task involved, if any")


class WorkerTask(BaseModel):
    """One launched worker."""

    handle: str = Field(..., description="Task handle in the container service")
    index: int = Field(..., ge=0, description="Launch order within the fleet")
    region: str = Field(..., description="Assigned region")
    status: WorkerStatus = Field(WorkerStatus.PENDING, description="Last observed status")
    artifact_location: Optional[str] = Field(
        None, description="Result artifact, set once STOPPED successfully"
    )
    stop_requested: bool = Field(False, description="Stop request delivered")
    forced_stop: bool = Field(False, description="Marked STOPPED without confirmation")
    last_updated: Optional[datetime] = Field(None, description="Last status change")

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkerStatus.STOPPED, WorkerStatus.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.status == WorkerStatus.STOPPED and self.artifact_location is not None


class TestRun(BaseModel):
    """
    One execution of a scenario.

    Owned by its run loop while active; handed to the scenario store as an
    immutable history entry once terminal.
    """

    test_id: str = Field(..., description="Run ID")
    scenario_id: str = Field(..., description="Scenario that was executed")
    scenario_name: str = Field("", description="Scenario display name")

    status: RunStatus = Field(RunStatus.PENDING, description="Lifecycle status")
    reason: Optional[FailureReason] = Field(
        None, description="Why the run failed or was cancelled"
    )
    start_time: datetime = Field(default_factory=_utcnow, description="Run start")
    end_time: Optional[datetime] = Field(None, description="Set once terminal")
    updated_at: datetime = Field(default_factory=_utcnow, description="Last change")

    workers_requested: int = Field(0, ge=0, description="Workers the fleet plan asked for")
    tasks: List[WorkerTask] = Field(default_factory=list)
    result: Optional[ResultSummary] = Field(None)
    errors: List[RunError] = Field(default_factory=list)
    cancel_requested: bool = Field(False, description="Cancellation signal observed")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: RunStatus) -> bool:
        return target in TRANSITIONS[self.status]

    def transition_to(
        self,
        target: RunStatus,
        *,
        reason: Optional[FailureReason] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Move to ``target`` or raise InvalidTransition."""
        if not self.can_transition(target):
            raise InvalidTransition(self.status.value, target.value)
        if target in (RunStatus.COMPLETE, RunStatus.PARTIAL) and self.result is None:
            raise InvalidTransition(self.status.value, target.value)
        now = at or _utcnow()
        self.status = target
        if reason is not None and self.reason is None:
            self.reason = reason
        if target in TERMINAL_STATUSES:
            self.end_time = now
        self.updated_at = now

    def record_error(
        self,
        reason: FailureReason,
        message: str,
        *,
        handle: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        self.errors.append(
            RunError(
                timestamp=at or _utcnow(), reason=reason, message=message, handle=handle
            )
        )

    def active_tasks(self) -> List[WorkerTask]:
        return [t for t in self.tasks if not t.is_terminal]
