"""
Per-run log capture.

Bridges Python logging records emitted while a run loop is active into
structured "log events" published on that run's telemetry channel, so
observers see orchestrator decisions alongside worker samples.
"""

from __future__ import annotations

import asyncio
import logging
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Optional

from loadbench.core.telemetry_relay import TelemetryRelay

CURRENT_TEST_ID: ContextVar[Optional[str]] = ContextVar("CURRENT_TEST_ID", default=None)


class RunLogRelayHandler(logging.Handler):
    """
    Logging handler that publishes log events for one run onto the relay.

    The current run is identified via the CURRENT_TEST_ID contextvar, which
    each run loop sets for its own task. This keeps runs isolated even when
    many execute concurrently.
    """

    def __init__(
        self,
        *,
        test_id: str,
        relay: TelemetryRelay,
        max_message_chars: int = 20_000,
    ) -> None:
        super().__init__(level=logging.NOTSET)
        self._test_id = test_id
        self._relay = relay
        self._loop = asyncio.get_running_loop()
        self._seq = 0
        self._max_message_chars = max_message_chars

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if bool(getattr(record, "skip_run_log_relay", False)):
                return
            if CURRENT_TEST_ID.get() != self._test_id:
                return

            self._seq += 1
            msg = record.getMessage()
            if msg and len(msg) > self._max_message_chars:
                msg = msg[: self._max_message_chars] + "...[truncated]"

            event: dict[str, Any] = {
                "kind": "log",
                "test_id": self._test_id,
                "seq": self._seq,
                "timestamp": datetime.now(UTC).isoformat(),
                "level": str(record.levelname),
                "logger": str(record.name),
                "message": msg,
            }
            self._loop.call_soon_threadsafe(self._relay.publish, self._test_id, event)
        except Exception:
            # Never allow logging failures to crash a run.
            return
