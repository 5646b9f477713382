"""Boundary between the agent loop and whatever actually runs tools."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from claw_lite.abort import AbortSignal
from claw_lite.exceptions import ToolExecutionError
from claw_lite.llm import ToolDefinition
from claw_lite.tools.registry import ToolRegistry


@dataclass
class ToolCallContext:
    """Per-invocation details handed to the bridge."""

    tool_call_id: str
    start_time: float
    session_id: str | None = None
    signal: AbortSignal | None = None


class ToolBridge(ABC):
    """Lists and executes tools on behalf of the agent loop.

    ``execute`` returns the tool's JSON-compatible result and raises on
    failure.
    """

    @abstractmethod
    async def list_tools(self) -> list[ToolDefinition]:
        pass

    @abstractmethod
    async def execute(self, name: str, arguments: dict[str, Any], context: ToolCallContext) -> Any:
        pass


class RegistryToolBridge(ToolBridge):
    """Serve tools from a ``ToolRegistry``."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def list_tools(self) -> list[ToolDefinition]:
        return self.registry.get_definitions()

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolCallContext) -> Any:
        result = await self.registry.execute(
            name,
            arguments,
            session_id=context.session_id,
            signal=context.signal,
        )
        if not result.success:
            raise ToolExecutionError(name, result.error or "Tool execution failed")
        return result.content
