"""
engine/events.py — Event Dispatcher

Publishes turn, phase, tool, response and error notifications to any number
of subscribed sinks. A sink is a callable ``(event_type, payload)``; if it
returns an awaitable, delivery is scheduled in the background and never
awaited by the controller.

Every payload carries ``session_id``, ``timestamp`` and ``iteration`` so a
host running several sessions can route events to the right view. Sink
failures are logged and otherwise ignored; they never touch the turn.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from loopsmith.engine.utils import fire_and_forget
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)


class EventType(str, Enum):
    TURN_STARTED = "turn.started"
    TURN_FINISHED = "turn.finished"
    PHASE_STARTED = "phase.started"
    PHASE_COMPLETED = "phase.completed"
    TOOL_STARTED = "tool.started"
    TOOL_COMPLETED = "tool.completed"
    TOOL_ERROR = "tool.error"
    TOOL_SKIPPED = "tool.skipped"
    RESPONSE_GENERATED = "response.generated"
    ERROR = "error"


EventSink = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]


class EventDispatcher:

    def __init__(self, sinks: Optional[list[EventSink]] = None):
        self._sinks: list[EventSink] = list(sinks or [])
        self._inflight: set[asyncio.Task] = set()

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def unsubscribe(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def publish(
        self,
        event_type: EventType,
        session_id: str,
        iteration: Optional[int] = None,
        **data: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "session_id": session_id,
            "timestamp": time.time(),
            "iteration": iteration,
            **data,
        }
        for sink in list(self._sinks):
            self._deliver(sink, event_type.value, payload)
        return payload

    def _deliver(self, sink: EventSink, event_type: str, payload: dict[str, Any]) -> None:
        try:
            result = sink(event_type, dict(payload))
        except Exception as e:
            log.warning("events.sink_failed", event_type=event_type,
                        error=str(e), error_type=type(e).__name__)
            return
        if inspect.isawaitable(result):
            task = fire_and_forget(_await(result), label=f"event_sink:{event_type}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def drain(self) -> None:
        """Wait for every background delivery scheduled so far."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable
