"""
WebSocket streaming of live run telemetry.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from loadbench.core.telemetry_relay import TelemetryRelay

logger = logging.getLogger(__name__)


async def stream_run_telemetry(
    websocket: WebSocket,
    test_id: str,
    relay: TelemetryRelay,
    *,
    ping_interval: float = 30.0,
    snapshot: dict[str, Any] | None = None,
) -> None:
    """
    Forward relay events for ``test_id`` to an accepted websocket until the
    client disconnects. Sends a ping event when the channel is idle.
    """
    async with relay.subscription(test_id) as sub:
        await websocket.send_json(
            {
                "kind": "connected",
                "test_id": test_id,
                "timestamp": datetime.now(UTC).isoformat(),
                "run": snapshot,
            }
        )

        recv_task: asyncio.Task | None = None
        try:
            while True:
                if recv_task is None:
                    recv_task = asyncio.create_task(websocket.receive())
                event_task = asyncio.create_task(sub.get())
                done, _ = await asyncio.wait(
                    {recv_task, event_task},
                    timeout=ping_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if recv_task in done:
                    msg = recv_task.result()
                    recv_task = None
                    if msg.get("type") == "websocket.disconnect":
                        event_task.cancel()
                        break

                if event_task.done():
                    event = event_task.result()
                else:
                    event_task.cancel()
                    event = None

                if websocket.client_state != WebSocketState.CONNECTED:
                    break

                if event is not None:
                    await websocket.send_json(event)
                elif not done:
                    await websocket.send_json(
                        {"kind": "ping", "timestamp": datetime.now(UTC).isoformat()}
                    )
        finally:
            if recv_task is not None and not recv_task.done():
                recv_task.cancel()
            if sub.dropped:
                logger.info(
                    "Telemetry stream for %s closed; %d event(s) dropped for this client",
                    test_id,
                    sub.dropped,
                )
