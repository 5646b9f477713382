"""Per-session run queue.

Each session id gets its own lane. Runs in the same lane execute one at a
time in submission order; lanes are independent of each other. Every run
is armed with a timeout that marks it ``timeout`` and fires its abort
signal. Cancellation is cooperative: the queue keeps the lane busy until
the task actually settles.
"""

import asyncio
import secrets
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from claw_lite.abort import AbortSignal
from claw_lite.agent_loop import AgentLoop, AgentResult, RunOptions
from claw_lite.config import RunQueueConfig, get_config
from claw_lite.event_stream import EventSubscriber
from claw_lite.llm import ToolDefinition
from claw_lite.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

RunState = Literal["pending", "running", "completed", "timeout", "error", "aborted"]

_TERMINAL_STATES = {"completed", "timeout", "error", "aborted"}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RunMetadata:
    run_id: str
    session_id: str
    status: RunState = "pending"
    queued_at: int = field(default_factory=_now_ms)
    started_at: int | None = None
    ended_at: int | None = None
    error: str | None = None
    signal: AbortSignal = field(default_factory=AbortSignal, repr=False)

    @property
    def finished(self) -> bool:
        return self.status in _TERMINAL_STATES and self.ended_at is not None


@dataclass
class RunOutcome(Generic[T]):
    meta: RunMetadata
    result: T


@dataclass
class _QueueEntry:
    meta: RunMetadata
    task: Callable[[RunMetadata], Awaitable[Any]]
    future: asyncio.Future[Any]
    enqueued_at_ms: int
    timeout_ms: int


@dataclass
class _LaneState:
    session_id: str
    queue: deque[_QueueEntry] = field(default_factory=deque)
    active: _QueueEntry | None = None
    draining: bool = False


class RunQueue:
    """Serialize runs per session id and enforce per-run timeouts."""

    def __init__(self, config: RunQueueConfig | None = None):
        self.config = config or get_config().run_queue
        self._lanes: dict[str, _LaneState] = {}
        self._runs: dict[str, RunMetadata] = {}

    @staticmethod
    def create_run_id() -> str:
        return f"run_{_now_ms()}_{secrets.token_hex(5)[:7]}"

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> RunMetadata | None:
        return self._runs.get(run_id)

    def list_runs(self, session_id: str | None = None) -> list[RunMetadata]:
        runs = list(self._runs.values())
        if session_id is None:
            return runs
        return [run for run in runs if run.session_id == session_id]

    def mark_run(self, run_id: str, **updates: Any) -> None:
        """Patch fields of a known run; unknown run ids are ignored."""
        meta = self._runs.get(run_id)
        if meta is None:
            return
        for key, value in updates.items():
            if not hasattr(meta, key):
                raise AttributeError(f"RunMetadata has no field '{key}'")
            setattr(meta, key, value)

    def get_queue_size(self, session_id: str) -> int:
        """Queued plus running entries for one session."""
        state = self._lanes.get(session_id)
        if state is None:
            return 0
        return len(state.queue) + (1 if state.active is not None else 0)

    def _prune_history(self) -> None:
        excess = len(self._runs) - max(1, self.config.history_limit)
        if excess <= 0:
            return
        for run_id in [rid for rid, meta in self._runs.items() if meta.finished][:excess]:
            del self._runs[run_id]

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    def _get_lane_state(self, session_id: str) -> _LaneState:
        existing = self._lanes.get(session_id)
        if existing:
            return existing
        created = _LaneState(session_id=session_id)
        self._lanes[session_id] = created
        return created

    def _schedule_drain(self, session_id: str) -> None:
        state = self._get_lane_state(session_id)
        if state.draining:
            return
        state.draining = True
        asyncio.create_task(self._drain_lane(session_id))

    async def _drain_lane(self, session_id: str) -> None:
        state = self._get_lane_state(session_id)
        if state.active is None and state.queue:
            entry = state.queue.popleft()
            waited_ms = _now_ms() - entry.enqueued_at_ms
            if waited_ms >= self.config.warn_after_ms:
                log.warning(
                    "Lane wait exceeded",
                    session_id=session_id,
                    run_id=entry.meta.run_id,
                    waited_ms=waited_ms,
                    queued_ahead=len(state.queue),
                )
            state.active = entry
            asyncio.create_task(self._run_entry(state, entry))
        state.draining = False
        if state.active is None and not state.queue:
            self._lanes.pop(session_id, None)

    def _expire(self, entry: _QueueEntry) -> None:
        meta = entry.meta
        if meta.status != "running":
            return
        meta.status = "timeout"
        meta.error = f"Run timed out after {entry.timeout_ms}ms"
        log.warning("Run timed out", run_id=meta.run_id, session_id=meta.session_id, timeout_ms=entry.timeout_ms)
        meta.signal.abort("timeout")

    async def _run_entry(self, state: _LaneState, entry: _QueueEntry) -> None:
        meta = entry.meta
        meta.status = "running"
        meta.started_at = _now_ms()
        timer = asyncio.get_running_loop().call_later(entry.timeout_ms / 1000, self._expire, entry)
        try:
            result = await entry.task(meta)
        except asyncio.CancelledError:
            if meta.status == "running":
                meta.status = "aborted"
            meta.error = meta.error or "Run cancelled"
            meta.ended_at = _now_ms()
            log.warning("Run cancelled", run_id=meta.run_id, session_id=meta.session_id)
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            if meta.status == "running":
                meta.status = "error"
            meta.error = meta.error or str(e) or type(e).__name__
            meta.ended_at = _now_ms()
            log.error("Run failed", run_id=meta.run_id, session_id=meta.session_id, error=meta.error)
            if not entry.future.done():
                entry.future.set_exception(e)
        else:
            if meta.status == "running":
                meta.status = "completed"
            meta.ended_at = _now_ms()
            log.debug(
                "Run settled",
                run_id=meta.run_id,
                session_id=meta.session_id,
                status=meta.status,
                duration_ms=meta.ended_at - meta.started_at,
            )
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            timer.cancel()
            state.active = None
            self._prune_history()
            self._schedule_drain(state.session_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        session_id: str,
        task: Callable[[RunMetadata], Awaitable[T]],
        run_id: str | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> RunOutcome[T]:
        """Queue ``task`` behind earlier runs of the same session.

        Resolves once the task settles. A task that raises propagates its
        exception to the caller; the metadata still records ``error``.
        """
        meta = RunMetadata(run_id=run_id or self.create_run_id(), session_id=session_id)
        self._runs[meta.run_id] = meta

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        state = self._get_lane_state(session_id)
        state.queue.append(_QueueEntry(
            meta=meta,
            task=task,
            future=future,
            enqueued_at_ms=_now_ms(),
            timeout_ms=max(1, int(timeout_ms if timeout_ms is not None else self.config.timeout_ms)),
        ))
        self._schedule_drain(session_id)
        result = await future
        return RunOutcome(meta=meta, result=result)

    async def run_agent(
        self,
        agent: AgentLoop,
        session_id: str,
        prompt: str,
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        *,
        on_event: EventSubscriber | None = None,
        run_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> RunOutcome[AgentResult]:
        """Enqueue an ``AgentLoop.run`` wired to this run's id and abort signal."""
        async def _task(meta: RunMetadata) -> AgentResult:
            return await agent.run(
                prompt,
                system_prompt,
                tools,
                RunOptions(
                    session_id=meta.session_id,
                    run_id=meta.run_id,
                    signal=meta.signal,
                    on_event=on_event,
                ),
            )

        outcome = await self.enqueue(session_id, _task, run_id, timeout_ms=timeout_ms)
        if outcome.meta.status == "completed" and outcome.result.status != "completed":
            outcome.meta.status = outcome.result.status
            outcome.meta.error = outcome.result.error
        return outcome
