"""
Live telemetry relay.

Workers publish progress samples per test id; the relay forwards them
verbatim to whoever is subscribed at that moment. Delivery is best effort:
each subscriber has a bounded queue and samples are dropped for a
subscriber that cannot keep up. Nothing here feeds back into run state.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, test_id: str, queue: asyncio.Queue) -> None:
        self.test_id = test_id
        self.queue = queue
        self.dropped = 0

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()

    def get_nowait(self) -> dict[str, Any]:
        return self.queue.get_nowait()


class TelemetryRelay:
    def __init__(self, *, queue_size: int = 1000) -> None:
        self._queue_size = max(1, int(queue_size))
        self._channels: dict[str, set[Subscription]] = {}

    def subscribe(self, test_id: str) -> Subscription:
        sub = Subscription(str(test_id), asyncio.Queue(maxsize=self._queue_size))
        self._channels.setdefault(sub.test_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._channels.get(sub.test_id)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            self._channels.pop(sub.test_id, None)

    @asynccontextmanager
    async def subscription(self, test_id: str) -> AsyncIterator[Subscription]:
        sub = self.subscribe(test_id)
        try:
            yield sub
        finally:
            self.unsubscribe(sub)

    def publish(self, test_id: str, sample: dict[str, Any]) -> int:
        """Forward ``sample`` to current subscribers. Returns how many received it."""
        subs = self._channels.get(str(test_id))
        if not subs:
            return 0
        delivered = 0
        for sub in list(subs):
            try:
                sub.queue.put_nowait(sample)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                if sub.dropped == 1 or sub.dropped % 100 == 0:
                    logger.debug(
                        "Telemetry subscriber for %s is behind; %d sample(s) dropped",
                        test_id,
                        sub.dropped,
                        extra={"skip_run_log_relay": True},
                    )
        return delivered

    def subscriber_count(self, test_id: str) -> int:
        return len(self._channels.get(str(test_id), ()))
