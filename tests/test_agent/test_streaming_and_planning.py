from typing import Any

import pytest

from claw_lite.agent_loop import AgentLoop, RunOptions
from claw_lite.config import Config
from claw_lite.event_stream import AgentEvent
from claw_lite.llm import LLMProvider, LLMResponse, Message, StreamDelta, ToolCall, ToolDefinition
from claw_lite.tools.bridge import ToolBridge, ToolCallContext

LIST_TOOL = ToolDefinition(
    name="list",
    description="List files",
    parameters={"type": "object", "properties": {}, "required": []},
)


class StreamingProvider(LLMProvider):
    """Streams a scripted list of delta batches, one batch per call."""

    def __init__(self, batches: list[list[StreamDelta]]):
        self.batches = list(batches)
        self.streamed_calls: list[list[Message]] = []
        self.complete_calls = 0

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None, **kwargs) -> LLMResponse:
        self.complete_calls += 1
        return LLMResponse(content="blocking")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        *,
        system_prompt: str = "",
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.streamed_calls.append(list(messages))
        for delta in self.batches.pop(0):
            yield delta


class ScriptedProvider(LLMProvider):
    def __init__(self, responses: list[LLMResponse]):
        self.responses = list(responses)
        self.calls: list[list[Message]] = []

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None, **kwargs) -> LLMResponse:
        self.calls.append(list(messages))
        return self.responses.pop(0)

    async def complete_streaming(self, messages, tools=None, temperature=None, max_tokens=None, **kwargs):
        if False:
            yield StreamDelta()


class StaticBridge(ToolBridge):
    def __init__(self, result: Any = "ok"):
        self.result = result

    async def list_tools(self) -> list[ToolDefinition]:
        return [LIST_TOOL]

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolCallContext) -> Any:
        return self.result


def _config() -> Config:
    cfg = Config()
    cfg.planner.enabled = False
    return cfg


@pytest.mark.asyncio
async def test_streaming_emits_updates_and_accumulates_message() -> None:
    provider = StreamingProvider([[StreamDelta(content="Hel"), StreamDelta(content="lo")]])
    events: list[AgentEvent] = []
    agent = AgentLoop(provider, StaticBridge(), config=_config())

    result = await agent.run("hi", "", [LIST_TOOL], RunOptions(on_event=events.append))

    assert provider.complete_calls == 0
    updates = [e.message.content for e in events if e.type == "message_update"]
    assert updates == ["Hel", "Hello"]
    assert result.response == "Hello"


@pytest.mark.asyncio
async def test_streaming_tool_calls_go_through_the_same_extraction() -> None:
    provider = StreamingProvider([
        [StreamDelta(content="Checking"), StreamDelta(tool_calls=[ToolCall(name="list", arguments={})])],
        [StreamDelta(content="Done.")],
    ])
    events: list[AgentEvent] = []
    agent = AgentLoop(provider, StaticBridge(["a.txt"]), config=_config())

    result = await agent.run("List files", "", [LIST_TOOL], RunOptions(on_event=events.append))

    assert len(result.tool_executions) == 1
    assert result.response == "Done."
    types = [e.type for e in events]
    assert types.index("tool_execution_start") < types.index("tool_update") < types.index("tool_result")


@pytest.mark.asyncio
async def test_streaming_disabled_by_config_uses_blocking_call() -> None:
    provider = StreamingProvider([])
    cfg = _config()
    cfg.agent.streaming = False
    agent = AgentLoop(provider, StaticBridge(), config=cfg)

    result = await agent.run("hi", "", [LIST_TOOL], RunOptions(on_event=lambda event: None))

    assert provider.complete_calls == 1
    assert result.response == "blocking"


@pytest.mark.asyncio
async def test_complex_prompt_creates_plan_and_advances_step() -> None:
    cfg = Config()
    cfg.planner.enabled = True
    cfg.agent.streaming = False
    provider = ScriptedProvider([
        LLMResponse(content="", tool_calls=[ToolCall(name="list", arguments={})]),
        LLMResponse(content="Done."),
    ])
    events: list[AgentEvent] = []
    agent = AgentLoop(provider, StaticBridge(), config=cfg)

    prompt = "Please refactor this:\n- rename module\n- update imports"
    result = await agent.run(prompt, "", [LIST_TOOL], RunOptions(on_event=events.append))

    assert result.plan is not None
    assert [step.title for step in result.plan.steps] == ["rename module", "update imports"]
    assert result.plan.steps[0].status == "done"
    assert result.plan.steps[1].status == "in_progress"
    assert "Tool list completed" in result.summary.changes
    assert "Completed step: rename module" in result.summary.changes
    assert result.summary.next_step == "update imports"

    types = [e.type for e in events]
    assert "plan_created" in types
    assert "plan_step" in types
    assert types.count("summary_update") == 2


@pytest.mark.asyncio
async def test_working_summary_replaces_history_when_budget_exceeded() -> None:
    cfg = Config()
    cfg.planner.enabled = True
    cfg.agent.streaming = False
    cfg.context.max_tokens = 80
    cfg.context.reserved_tokens = 0
    provider = ScriptedProvider([
        LLMResponse(content="", tool_calls=[ToolCall(name="list", arguments={})]),
        LLMResponse(content="Done."),
    ])
    events: list[AgentEvent] = []
    agent = AgentLoop(provider, StaticBridge("x" * 600), config=cfg)

    result = await agent.run("Make a plan", "", [LIST_TOOL], RunOptions(on_event=events.append))

    replaced = [e for e in events if e.type == "context_replace"]
    assert len(replaced) == 1
    assert replaced[0].replace_reason == "summary_preflight"
    second_call = provider.calls[1]
    assert second_call[0].content.startswith("## Working Summary")
    assert [m.role for m in second_call] == ["user", "assistant", "user"]
    assert result.response == "Done."
