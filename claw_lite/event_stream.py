"""Lifecycle events for a single agent run and the stream that carries them."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from claw_lite.logging import get_logger

log = get_logger(__name__)

AgentEventType = Literal[
    "agent_start",
    "agent_end",
    "turn_start",
    "turn_end",
    "message_start",
    "message_update",
    "message_end",
    "tool_execution_start",
    "tool_update",
    "tool_result",
    "tool_error",
    "plan_created",
    "plan_step",
    "summary_update",
    "compaction",
    "context_replace",
    "warning",
    "error",
]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class AgentEvent:
    """Tagged event; only the fields relevant to ``type`` are populated."""

    type: AgentEventType
    timestamp: str = ""
    run_id: str | None = None
    session_id: str | None = None

    message: Any = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    args: Any = None
    result: Any = None
    error: str | None = None
    duration_ms: int | None = None

    # compaction
    original_messages: int | None = None
    compressed_messages: int | None = None
    compression_ratio: float | None = None
    compaction_reason: str | None = None

    # planning
    plan: Any = None
    step: Any = None
    summary: Any = None
    replace_reason: str | None = None

    # warnings raised by hooks
    hook: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict, dropping unset fields."""
        data: dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if value is None:
                continue
            if is_dataclass(value) and not isinstance(value, type):
                value = asdict(value)
            data[key] = value
        return data


EventSubscriber = Callable[[AgentEvent], None]


class EventStream:
    """Ordered, single-consumer channel of events for one run.

    ``push`` delivers synchronously to the optional subscriber and also
    buffers for ``async for`` consumption. Nothing here awaits, so a slow
    or missing consumer never holds up the run.
    """

    def __init__(self, subscriber: EventSubscriber | None = None):
        self._subscriber = subscriber
        self._queue: deque[AgentEvent] = deque()
        self._history: list[AgentEvent] = []
        self._wakeup = asyncio.Event()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    @property
    def events(self) -> list[AgentEvent]:
        """Every event pushed so far, in order."""
        return list(self._history)

    def push(self, event: AgentEvent) -> None:
        if self._done:
            return
        self._history.append(event)
        self._queue.append(event)
        self._wakeup.set()
        if self._subscriber is None:
            return
        try:
            self._subscriber(event)
        except Exception as e:
            log.warning("Event subscriber failed", event_type=event.type, error=str(e))

    def end(self) -> None:
        self._done = True
        self._wakeup.set()

    async def __aiter__(self) -> AsyncIterator[AgentEvent]:
        while True:
            if self._queue:
                yield self._queue.popleft()
                continue
            if self._done:
                return
            self._wakeup.clear()
            await self._wakeup.wait()


def stamp_event(event: AgentEvent, run_id: str | None, session_id: str | None) -> AgentEvent:
    """Fill timestamp and ambient run/session ids where the event left them unset."""
    if not event.timestamp:
        event.timestamp = _utcnow_iso()
    if not event.run_id:
        event.run_id = run_id
    if not event.session_id:
        event.session_id = session_id
    return event
