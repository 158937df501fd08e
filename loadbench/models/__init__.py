"""
Data models for scenarios, runs and results.
"""

from .scenario import Scenario
from .results import PerWorkerSummary, RegionSummary, ResultSummary
from .test_run import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    RunError,
    RunStatus,
    TestRun,
    WorkerStatus,
    WorkerTask,
)

__all__ = [
    "Scenario",
    "PerWorkerSummary",
    "RegionSummary",
    "ResultSummary",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "RunError",
    "RunStatus",
    "TestRun",
    "WorkerStatus",
    "WorkerTask",
]
