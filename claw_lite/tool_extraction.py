"""Tool-call extraction from assistant messages.

Backends that return structured tool calls are served by
``StructuredToolCallExtractor``; the text extractor recovers calls that
models wrote inline using one of two conventions:

- ``<tool_call>{"tool": "name", "arguments": {...}}</tool_call>``
- a fenced block tagged ``tool_code`` whose first line is the tool name
  and whose remainder is the (ideally JSON) arguments
"""

import json
import re
from abc import ABC, abstractmethod

from claw_lite.llm import Message, ToolCall, parse_tool_arguments
from claw_lite.logging import get_logger

log = get_logger(__name__)

TAGGED_CALL_RE = re.compile(r"<tool_call>\s*(\{.*?\})\s*</tool_call>", re.DOTALL)
FENCED_CALL_RE = re.compile(r"```tool_code\s*\n([A-Za-z_]+)\s*\n(.*?)```", re.DOTALL)


class ToolCallExtractor(ABC):
    """Strategy that turns an assistant message into tool calls."""

    @abstractmethod
    def extract(self, message: Message) -> list[ToolCall]:
        pass


class StructuredToolCallExtractor(ToolCallExtractor):
    """Use the tool calls the model client returned in structured form."""

    def extract(self, message: Message) -> list[ToolCall]:
        return list(message.tool_calls)


class TextToolCallExtractor(ToolCallExtractor):
    """Parse inline tool-call conventions out of assistant text."""

    def extract(self, message: Message) -> list[ToolCall]:
        content = message.content or ""
        tool_calls: list[ToolCall] = []
        if not content:
            return tool_calls

        for match in TAGGED_CALL_RE.finditer(content):
            try:
                parsed = json.loads(match.group(1))
            except json.JSONDecodeError as e:
                log.debug("Skipping unparseable tagged tool call", error=str(e))
                continue
            if not isinstance(parsed, dict):
                continue
            name = str(parsed.get("tool") or parsed.get("name") or "").strip()
            if not name or "arguments" not in parsed:
                continue
            tool_calls.append(ToolCall(
                id=f"embedded_{len(tool_calls)}",
                name=name,
                arguments=parse_tool_arguments(parsed.get("arguments")),
            ))

        for match in FENCED_CALL_RE.finditer(content):
            name = match.group(1).strip()
            args_text = match.group(2).strip()
            try:
                arguments = json.loads(args_text) if args_text else {}
            except json.JSONDecodeError:
                arguments = {"input": args_text}
            if not isinstance(arguments, dict):
                arguments = {"input": arguments}
            tool_calls.append(ToolCall(
                id=f"embedded_{len(tool_calls)}",
                name=name,
                arguments=arguments,
            ))

        if tool_calls:
            log.debug("Extracted tool calls from text", count=len(tool_calls))
        return tool_calls


class ChainedToolCallExtractor(ToolCallExtractor):
    """Try extractors in order; the first one that finds calls wins."""

    def __init__(self, extractors: list[ToolCallExtractor]):
        self.extractors = list(extractors)

    def extract(self, message: Message) -> list[ToolCall]:
        for extractor in self.extractors:
            calls = extractor.extract(message)
            if calls:
                return calls
        return []


def default_tool_call_extractor() -> ToolCallExtractor:
    """Structured calls first, inline text conventions as fallback."""
    return ChainedToolCallExtractor([
        StructuredToolCallExtractor(),
        TextToolCallExtractor(),
    ])
