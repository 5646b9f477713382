"""Extension points around agent runs and tool calls."""

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from claw_lite.llm import Message, ToolCall, ToolDefinition
from claw_lite.logging import get_logger

if TYPE_CHECKING:
    from claw_lite.agent_loop import AgentResult, ToolExecutionResult

log = get_logger(__name__)

HookStage = Literal["before_agent_start", "after_agent_end", "before_tool_call", "after_tool_call"]


@dataclass
class HookContext:
    """What a hook may inspect about the current run."""

    run_id: str | None
    session_id: str | None
    prompt: str
    system_prompt: str
    messages: list[Message]
    tools: list[ToolDefinition]
    model: str = ""


@dataclass
class BeforeAgentStartResult:
    prompt: str | None = None
    system_prompt: str | None = None
    messages: list[Message] | None = None


@dataclass
class BeforeToolCallResult:
    arguments: dict[str, Any] | None = None


@dataclass
class HookOutcome:
    """Captured result of invoking one hook callback."""

    stage: HookStage
    hook_name: str
    ok: bool
    value: Any = None
    error: str | None = None


# Hooks may be plain functions or coroutines.
BeforeAgentStartHook = Callable[[HookContext], Any]
AfterAgentEndHook = Callable[[HookContext, "AgentResult"], Any]
BeforeToolCallHook = Callable[[HookContext, ToolCall], Any]
AfterToolCallHook = Callable[[HookContext, "ToolExecutionResult"], Any]


@dataclass
class AgentHooks:
    before_agent_start: list[BeforeAgentStartHook] = field(default_factory=list)
    after_agent_end: list[AfterAgentEndHook] = field(default_factory=list)
    before_tool_call: list[BeforeToolCallHook] = field(default_factory=list)
    after_tool_call: list[AfterToolCallHook] = field(default_factory=list)


class HookRegistry:
    """Collects hook callbacks per stage."""

    def __init__(self):
        self._hooks = AgentHooks()

    def get_hooks(self) -> AgentHooks:
        return self._hooks

    def register_before_agent_start(self, hook: BeforeAgentStartHook) -> None:
        self._hooks.before_agent_start.append(hook)

    def register_after_agent_end(self, hook: AfterAgentEndHook) -> None:
        self._hooks.after_agent_end.append(hook)

    def register_before_tool_call(self, hook: BeforeToolCallHook) -> None:
        self._hooks.before_tool_call.append(hook)

    def register_after_tool_call(self, hook: AfterToolCallHook) -> None:
        self._hooks.after_tool_call.append(hook)


def _hook_name(hook: Callable[..., Any]) -> str:
    return str(getattr(hook, "__qualname__", None) or getattr(hook, "__name__", None) or repr(hook))


async def invoke_hook(stage: HookStage, hook: Callable[..., Any], *args: Any) -> HookOutcome:
    """Call one hook (sync or async) and capture its result or failure."""
    name = _hook_name(hook)
    try:
        value = hook(*args)
        if inspect.isawaitable(value):
            value = await value
    except Exception as e:
        log.warning("Hook failed", stage=stage, hook=name, error=str(e))
        return HookOutcome(stage=stage, hook_name=name, ok=False, error=str(e) or type(e).__name__)
    return HookOutcome(stage=stage, hook_name=name, ok=True, value=value)


def read_override(value: Any, key: str) -> Any:
    """Read an override field from a dataclass result or a plain dict."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get(key)
    return getattr(value, key, None)
