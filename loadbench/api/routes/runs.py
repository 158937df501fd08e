"""
API routes for run control.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from loadbench.api.error_handling import http_exception
from loadbench.core.orchestrator import get_orchestrator
from loadbench.models import TestRun

router = APIRouter()


class RunCreateRequest(BaseModel):
    scenario_id: str


class RunActionResponse(BaseModel):
    test_id: str
    status: str


class TelemetrySample(BaseModel):
    """Progress sample posted by a worker while it runs."""

    worker: str = Field(..., description="Worker task handle or index")
    region: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metrics: dict[str, Any] = Field(default_factory=dict)


@router.post("/", response_model=RunActionResponse, status_code=status.HTTP_201_CREATED)
async def create_run(request: RunCreateRequest) -> RunActionResponse:
    """
    Start a run of a stored scenario. The fleet is launched in the background.
    """
    try:
        orchestrator = get_orchestrator()
        test_id = await orchestrator.start_run(request.scenario_id)
        run = await orchestrator.get_run_status(test_id)
        return RunActionResponse(test_id=test_id, status=run.status.value)
    except Exception as e:
        raise http_exception("start run", e)


@router.get("/{test_id}", response_model=TestRun)
async def get_run(test_id: str) -> TestRun:
    try:
        return await get_orchestrator().get_run_status(test_id)
    except Exception as e:
        raise http_exception("get run", e)


@router.post(
    "/{test_id}/cancel",
    response_model=RunActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def cancel_run(test_id: str) -> RunActionResponse:
    """
    Request cancellation. The run moves to CANCELLING at its next poll tick.

    409 once the run is terminal, or COMPLETING with its results being merged.
    """
    try:
        run = await get_orchestrator().cancel_run(test_id)
        return RunActionResponse(test_id=test_id, status=run.status.value)
    except Exception as e:
        raise http_exception("cancel run", e)


@router.post("/{test_id}/telemetry", status_code=status.HTTP_204_NO_CONTENT)
async def ingest_telemetry(test_id: str, sample: TelemetrySample) -> None:
    """
    Relay a worker progress sample to live observers. Not stored.
    """
    try:
        get_orchestrator().telemetry.publish(
            test_id,
            {"kind": "sample", "test_id": test_id, **sample.model_dump(mode="json")},
        )
    except Exception as e:
        raise http_exception("ingest telemetry", e)
