"""Custom exceptions for Claw Lite."""

import re

_OVERFLOW_PATTERN = re.compile(r"context|token|length|too long", re.IGNORECASE)


class ClawLiteError(Exception):
    """Base exception for Claw Lite."""

    pass


class ConfigurationError(ClawLiteError):
    """Configuration-related errors."""

    pass


class LLMError(ClawLiteError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NoResponseError(LLMError):
    """Model client returned no usable choice."""

    def __init__(self, message: str = "No response from model"):
        super().__init__(message)


class ContextError(ClawLiteError):
    """Context window errors."""

    pass


class ContextOverflowError(ContextError):
    """Context window overflow."""

    def __init__(self, current_tokens: int, max_tokens: int):
        super().__init__(
            f"Context overflow: {current_tokens} > {max_tokens} tokens"
        )
        self.current_tokens = current_tokens
        self.max_tokens = max_tokens


class ToolError(ClawLiteError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class RunError(ClawLiteError):
    """Run lifecycle errors."""

    pass


class RunAbortedError(RunError):
    """Run observed its abort signal at a suspension point."""

    def __init__(self, reason: str = "aborted"):
        super().__init__(f"Run aborted: {reason}")
        self.reason = reason


def is_context_overflow_error(error: BaseException | str) -> bool:
    """Whether a model-client failure looks like a context-window overflow."""
    if isinstance(error, ContextOverflowError):
        return True
    return bool(_OVERFLOW_PATTERN.search(str(error)))
