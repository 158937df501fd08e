"""
API routes for scenario definitions and their run history.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status
from pydantic import BaseModel

from loadbench.api.error_handling import http_exception
from loadbench.core.orchestrator import get_orchestrator
from loadbench.models import Scenario, TestRun

logger = logging.getLogger(__name__)

router = APIRouter()


class RunHistoryResponse(BaseModel):
    scenario_id: str
    runs: list[TestRun]
    total: int


@router.post("/", response_model=Scenario, status_code=status.HTTP_201_CREATED)
async def create_scenario(scenario: Scenario) -> Scenario:
    """
    Store a scenario definition. Scenarios are immutable once stored.
    """
    try:
        await get_orchestrator().scenario_store.put_scenario(scenario)
        logger.info("Created scenario %s (%s)", scenario.scenario_id, scenario.name)
        return scenario
    except Exception as e:
        raise http_exception("create scenario", e)


@router.get("/{scenario_id}", response_model=Scenario)
async def get_scenario(scenario_id: str) -> Scenario:
    try:
        return await get_orchestrator().scenario_store.get_scenario(scenario_id)
    except Exception as e:
        raise http_exception("get scenario", e)


@router.get("/{scenario_id}/runs", response_model=RunHistoryResponse)
async def list_scenario_runs(scenario_id: str) -> RunHistoryResponse:
    """
    Run history for a scenario, newest first. Active runs are included with
    their live status.
    """
    try:
        runs = await get_orchestrator().list_runs(scenario_id)
        return RunHistoryResponse(scenario_id=scenario_id, runs=runs, total=len(runs))
    except Exception as e:
        raise http_exception("list runs", e)
