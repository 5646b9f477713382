"""Claw Lite - turn-based agent execution core with context budgeting."""

__version__ = "0.1.0"

from claw_lite.agent_loop import AgentLoop, AgentResult, RunOptions, ToolExecutionResult, count_turns
from claw_lite.config import Config, get_config, set_config
from claw_lite.context_window import CompressionResult, ContextWindowManager
from claw_lite.event_stream import AgentEvent, EventStream
from claw_lite.run_queue import RunMetadata, RunQueue
from claw_lite.token_estimator import TokenEstimator

__all__ = [
    "AgentEvent",
    "AgentLoop",
    "AgentResult",
    "CompressionResult",
    "Config",
    "ContextWindowManager",
    "EventStream",
    "RunMetadata",
    "RunOptions",
    "RunQueue",
    "TokenEstimator",
    "ToolExecutionResult",
    "count_turns",
    "get_config",
    "set_config",
    "__version__",
]
