from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from loadbench.core.interfaces import (
    ContainerService,
    ScenarioStore,
    TaskSpec,
    TaskState,
    TaskStatus,
)
from loadbench.errors import CapacityExceeded, LaunchFailure, LaunchPartialFailure
from loadbench.models import Scenario, WorkerStatus, WorkerTask

logger = logging.getLogger(__name__)


def compute_worker_count(
    concurrency: int,
    worker_capacity: int,
    *,
    max_fleet_size: int,
    override: int | None = None,
) -> int:
    """
    Number of workers needed for ``concurrency`` virtual users.

    Without an override the count is ceil(concurrency / worker_capacity) and
    must fit under max_fleet_size. An explicit override larger than the cap
    is clamped instead of rejected.
    """
    cap = max(1, int(max_fleet_size))
    if override is not None:
        count = max(1, int(override))
        if count > cap:
            logger.warning(
                "Worker count override %d exceeds fleet cap; clamping to %d",
                count,
                cap,
            )
            count = cap
        return count

    count = max(1, math.ceil(int(concurrency) / max(1, int(worker_capacity))))
    if count > cap:
        raise CapacityExceeded(count, cap)
    return count


def assign_regions(worker_count: int, regions: list[str]) -> list[str]:
    """
    Round-robin region assignment, one entry per worker index.

    Region counts differ by at most one; extra workers go to the regions
    listed first.
    """
    if not regions:
        raise ValueError("at least one region is required")
    return [regions[idx % len(regions)] for idx in range(max(0, worker_count))]


def split_concurrency(total: int, worker_count: int, *, capacity: int) -> list[int]:
    """
    Balance ``total`` virtual users evenly over workers, capped per worker.
    """
    workers = max(1, int(worker_count))
    target_total = max(0, int(total))
    max_total = int(capacity) * workers
    if target_total > max_total:
        logger.warning(
            "Concurrency %d exceeds per-worker capacity; clamping to %d",
            target_total,
            max_total,
        )
        target_total = max_total
    base = target_total // workers
    remainder = target_total % workers
    return [base + (1 if idx < remainder else 0) for idx in range(workers)]


@dataclass(frozen=True)
class FleetPlan:
    worker_count: int
    regions: list[str]
    concurrency: list[int]

    @property
    def region_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for region in self.regions:
            counts[region] = counts.get(region, 0) + 1
        return counts


@dataclass
class FleetLaunch:
    """Outcome of launching a fleet: the live tasks and, if short, why."""

    tasks: list[WorkerTask]
    requested: int
    error: LaunchPartialFailure | None = None


def apply_task_states(
    tasks: list[WorkerTask], states: dict[str, TaskState], *, now: datetime
) -> list[WorkerTask]:
    """
    Copy observed container states onto worker tasks.

    Terminal tasks are never changed again. Handles missing from ``states``
    keep their last observed status. Returns the tasks whose status changed.
    """
    changed: list[WorkerTask] = []
    for task in tasks:
        if task.is_terminal:
            continue
        state = states.get(task.handle)
        if state is None:
            continue
        if state.status == TaskStatus.STOPPED_SUCCESS:
            new_status = WorkerStatus.STOPPED
        elif state.status == TaskStatus.STOPPED_FAILURE:
            new_status = WorkerStatus.FAILED
        elif state.status == TaskStatus.RUNNING:
            new_status = WorkerStatus.RUNNING
        else:
            new_status = WorkerStatus.PENDING
        if new_status == task.status:
            continue
        task.status = new_status
        if new_status == WorkerStatus.STOPPED:
            task.artifact_location = state.artifact_location
        task.last_updated = now
        changed.append(task)
    return changed


class FleetController:
    """
    Sizes a fleet for a scenario and launches it through the container service.
    """

    def __init__(
        self,
        container_service: ContainerService,
        scenario_store: ScenarioStore,
        *,
        max_fleet_size: int,
        worker_image: str,
        batch_size: int = 10,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        worker_cpu: str | None = None,
        worker_memory: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._containers = container_service
        self._store = scenario_store
        self.max_fleet_size = max(1, int(max_fleet_size))
        self.worker_image = worker_image
        self.batch_size = max(1, int(batch_size))
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self.worker_cpu = worker_cpu
        self.worker_memory = worker_memory
        self._sleep = sleep

    def plan(self, scenario: Scenario) -> FleetPlan:
        """Raises CapacityExceeded before anything is launched."""
        count = compute_worker_count(
            scenario.concurrency,
            scenario.worker_capacity,
            max_fleet_size=self.max_fleet_size,
            override=scenario.worker_count,
        )
        return FleetPlan(
            worker_count=count,
            regions=assign_regions(count, list(scenario.regions)),
            concurrency=split_concurrency(
                scenario.concurrency, count, capacity=scenario.worker_capacity
            ),
        )

    def build_specs(self, test_id: str, scenario: Scenario, plan: FleetPlan) -> list[TaskSpec]:
        location = self._store.scenario_location(scenario.scenario_id)
        return [
            TaskSpec(
                test_id=test_id,
                scenario_id=scenario.scenario_id,
                scenario_location=location,
                region=plan.regions[idx],
                index=idx,
                concurrency=plan.concurrency[idx],
                duration_seconds=scenario.duration_seconds,
                ramp_up_seconds=scenario.ramp_up_seconds,
                image=scenario.image or self.worker_image,
                test_type=scenario.test_type,
                cpu=self.worker_cpu,
                memory=self.worker_memory,
            )
            for idx in range(plan.worker_count)
        ]

    async def launch(
        self, test_id: str, scenario: Scenario, plan: FleetPlan
    ) -> FleetLaunch:
        """
        Launch every worker of the plan, region by region.

        Partial failures are not rolled back: the launched tasks are returned
        together with a LaunchPartialFailure. Raises LaunchFailure when no
        worker could be started.
        """
        specs = self.build_specs(test_id, scenario, plan)
        by_region: dict[str, list[TaskSpec]] = {}
        for spec in specs:
            by_region.setdefault(spec.region, []).append(spec)

        logger.info(
            "Launching %d workers for run %s across %d region(s): %s",
            len(specs),
            test_id,
            len(by_region),
            plan.region_counts,
        )

        results = await asyncio.gather(
            *(self._launch_region(test_id, region_specs) for region_specs in by_region.values())
        )

        tasks: list[WorkerTask] = []
        errors: list[str] = []
        for launched, region_errors in results:
            tasks.extend(launched)
            errors.extend(region_errors)
        tasks.sort(key=lambda t: t.index)

        if not tasks:
            raise LaunchFailure(
                f"No workers launched for run {test_id}: "
                + ("; ".join(errors) or "container service returned no tasks")
            )

        launch = FleetLaunch(tasks=tasks, requested=len(specs))
        if len(tasks) < len(specs):
            launch.error = LaunchPartialFailure(len(tasks), len(specs), errors)
            logger.warning(
                "Run %s launched %d of %d workers", test_id, len(tasks), len(specs)
            )
        else:
            logger.info("Run %s launched all %d workers", test_id, len(tasks))
        return launch

    async def _launch_region(
        self, test_id: str, specs: list[TaskSpec]
    ) -> tuple[list[WorkerTask], list[str]]:
        tasks: list[WorkerTask] = []
        errors: list[str] = []
        for start in range(0, len(specs), self.batch_size):
            batch = specs[start : start + self.batch_size]
            launched, batch_errors = await self._launch_batch(test_id, batch)
            tasks.extend(launched)
            errors.extend(batch_errors)
        return tasks, errors

    async def _launch_batch(
        self, test_id: str, batch: list[TaskSpec]
    ) -> tuple[list[WorkerTask], list[str]]:
        pending = list(batch)
        tasks: list[WorkerTask] = []
        errors: list[str] = []
        region = batch[0].region if batch else ""

        for attempt in range(1, self.retry_attempts + 1):
            try:
                handles = await self._containers.launch_tasks(test_id, pending)
            except Exception as e:
                message = f"{region}: launch attempt {attempt} failed: {type(e).__name__}: {e}"
                logger.warning("Run %s %s", test_id, message)
                errors.append(message)
            else:
                remaining: list[TaskSpec] = []
                for idx, spec in enumerate(pending):
                    handle = handles[idx] if idx < len(handles) else None
                    if handle:
                        tasks.append(
                            WorkerTask(handle=handle, index=spec.index, region=spec.region)
                        )
                    else:
                        remaining.append(spec)
                if remaining:
                    errors.append(
                        f"{region}: {len(remaining)} of {len(pending)} workers not placed "
                        f"on attempt {attempt}"
                    )
                pending = remaining

            if not pending:
                break
            if attempt < self.retry_attempts:
                await self._sleep(self.retry_delay_seconds)

        return tasks, errors
