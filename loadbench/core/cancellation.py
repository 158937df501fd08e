from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable

from loadbench.core.fleet_controller import apply_task_states
from loadbench.core.interfaces import ContainerService
from loadbench.errors import FailureReason
from loadbench.models import RunStatus, TestRun, WorkerStatus, WorkerTask

logger = logging.getLogger(__name__)


class CancellationCoordinator:
    """
    Stops a run's in-flight workers and drives the run to CANCELLED.

    Each task receives at most one successful stop request; failed stop
    calls are retried on the next poll. Tasks still running when the grace
    period ends are force-marked STOPPED and left for the container service
    to reclaim. Artifacts that finished workers already produced are not
    aggregated.
    """

    def __init__(
        self,
        container_service: ContainerService,
        *,
        poll_interval_seconds: float,
        grace_seconds: float,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._containers = container_service
        self.poll_interval_seconds = max(0.0, float(poll_interval_seconds))
        self.grace_seconds = max(0.0, float(grace_seconds))
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep

    async def stop_tasks(self, tasks: list[WorkerTask]) -> int:
        """Send a stop to every non-terminal task not already stopped. Returns the count sent."""
        sent = 0
        for task in tasks:
            if task.is_terminal or task.stop_requested:
                continue
            try:
                await self._containers.stop_task(task.handle)
            except Exception as e:
                logger.warning("Stop request for %s failed: %s", task.handle, e)
                continue
            task.stop_requested = True
            task.last_updated = self._clock()
            sent += 1
        return sent

    async def cancel(
        self,
        run: TestRun,
        *,
        on_progress: Callable[[TestRun], Awaitable[Any]] | None = None,
    ) -> None:
        if run.is_terminal:
            return
        if run.status != RunStatus.CANCELLING:
            run.transition_to(
                RunStatus.CANCELLING,
                reason=FailureReason.USER_REQUESTED,
                at=self._clock(),
            )

        deadline = self._clock() + timedelta(seconds=self.grace_seconds)
        sent = await self.stop_tasks(run.tasks)
        logger.info(
            "Cancelling run %s (%s): stop sent to %d worker(s)",
            run.test_id,
            run.reason.value if run.reason else "unknown",
            sent,
        )
        if on_progress is not None:
            await on_progress(run)

        while run.active_tasks() and self._clock() < deadline:
            await self._sleep(self.poll_interval_seconds)
            active = run.active_tasks()
            try:
                states = await self._containers.describe_tasks([t.handle for t in active])
            except Exception as e:
                logger.warning(
                    "Status query during cancellation of %s failed: %s", run.test_id, e
                )
                continue
            changed = apply_task_states(active, states, now=self._clock())
            await self.stop_tasks(run.tasks)
            if changed and on_progress is not None:
                await on_progress(run)

        leftover = run.active_tasks()
        now = self._clock()
        for task in leftover:
            task.status = WorkerStatus.STOPPED
            task.forced_stop = True
            task.last_updated = now
        if leftover:
            logger.warning(
                "Run %s: %d worker(s) did not stop within %.0fs; marked STOPPED",
                run.test_id,
                len(leftover),
                self.grace_seconds,
            )

        run.transition_to(RunStatus.CANCELLED, at=now)
        logger.info("Run %s cancelled", run.test_id)
