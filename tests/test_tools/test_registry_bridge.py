import asyncio
import time

import pytest

from claw_lite.abort import AbortSignal
from claw_lite.exceptions import ToolExecutionError, ToolNotFoundError
from claw_lite.tools import RegistryToolBridge, Tool, ToolCallContext, ToolRegistry, ToolResult


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self):
        self.sessions: list[str] = []

    async def execute(self, **kwargs):
        self.sessions.append(kwargs.get("_session_id", ""))
        return ToolResult(success=True, content=kwargs["text"])


class FailingTool(Tool):
    name = "fail"
    description = "Always fails"

    async def execute(self, **kwargs):
        return ToolResult(success=False, content="disk full")


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class WaitForAbortTool(Tool):
    name = "waiter"
    description = "Waits for abort"
    timeout_seconds = 5.0

    def __init__(self):
        self.started = asyncio.Event()
        self.saw_abort = False

    async def execute(self, **kwargs):
        self.started.set()
        abort_event = kwargs["_abort_event"]
        await abort_event.wait()
        self.saw_abort = True
        await asyncio.sleep(10)
        return ToolResult(success=True, content="late")


def test_failed_result_always_has_error_text():
    assert ToolResult(success=False, content="boom").error == "boom"
    assert ToolResult(success=False).error == "Tool execution failed"
    assert ToolResult(success=True, content="x").error is None


def test_definitions_default_schema_and_description():
    registry = ToolRegistry()
    registry.register(FailingTool())

    definition = registry.get_definitions()[0]

    assert definition.name == "fail"
    assert definition.description == "Always fails"
    assert definition.parameters == {"type": "object", "properties": {}, "required": []}


@pytest.mark.asyncio
async def test_execute_passes_session_and_validates_arguments():
    registry = ToolRegistry()
    tool = EchoTool()
    registry.register(tool)

    result = await registry.execute("echo", {"text": "hi"}, session_id=" s-1 ")

    assert result.content == "hi"
    assert tool.sessions == ["s-1"]
    with pytest.raises(ToolExecutionError, match="Missing required argument: text"):
        await registry.execute("echo", {})
    with pytest.raises(ToolNotFoundError):
        await registry.execute("nope", {})


@pytest.mark.asyncio
async def test_execute_times_out():
    registry = ToolRegistry()
    registry.register(SlowTool())

    started = time.monotonic()
    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await registry.execute("slow", {})
    assert time.monotonic() - started < 1.9


@pytest.mark.asyncio
async def test_abort_signal_reaches_the_tool():
    registry = ToolRegistry()
    tool = WaitForAbortTool()
    registry.register(tool)
    signal = AbortSignal()

    task = asyncio.create_task(registry.execute("waiter", {}, signal=signal))
    await tool.started.wait()
    signal.abort("user cancelled")

    with pytest.raises(ToolExecutionError, match="Execution aborted"):
        await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_bridge_returns_content_and_raises_on_failure():
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(FailingTool())
    bridge = RegistryToolBridge(registry)
    context = ToolCallContext(tool_call_id="tool_1", start_time=time.time(), session_id="s")

    assert [d.name for d in await bridge.list_tools()] == ["echo", "fail"]
    assert await bridge.execute("echo", {"text": "hey"}, context) == "hey"
    with pytest.raises(ToolExecutionError, match="Tool 'fail' failed: disk full"):
        await bridge.execute("fail", {}, context)
