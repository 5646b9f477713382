"""Tools package for Claw Lite."""

from claw_lite.tools.bridge import RegistryToolBridge, ToolBridge, ToolCallContext
from claw_lite.tools.registry import Tool, ToolRegistry, ToolResult

__all__ = [
    "RegistryToolBridge",
    "Tool",
    "ToolBridge",
    "ToolCallContext",
    "ToolRegistry",
    "ToolResult",
]
