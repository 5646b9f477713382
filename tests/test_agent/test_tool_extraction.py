from claw_lite.llm import Message, ToolCall
from claw_lite.tool_extraction import (
    StructuredToolCallExtractor,
    TextToolCallExtractor,
    default_tool_call_extractor,
)


def _assistant(content: str, tool_calls: list[ToolCall] | None = None) -> Message:
    return Message(role="assistant", content=content, tool_calls=tool_calls or [])


def test_tagged_json_block_is_parsed():
    message = _assistant(
        'Sure.\n<tool_call>\n{"tool": "read", "arguments": {"path": "README.md"}}\n</tool_call>'
    )

    calls = TextToolCallExtractor().extract(message)

    assert [(c.name, c.arguments) for c in calls] == [("read", {"path": "README.md"})]


def test_tagged_block_with_invalid_json_or_missing_fields_is_skipped():
    message = _assistant(
        "<tool_call>{not json}</tool_call>"
        '<tool_call>{"tool": "read"}</tool_call>'
        '<tool_call>{"name": "list", "arguments": "{\\"path\\": \\"src\\"}"}</tool_call>'
    )

    calls = TextToolCallExtractor().extract(message)

    assert [(c.name, c.arguments) for c in calls] == [("list", {"path": "src"})]


def test_fenced_tool_code_block_falls_back_to_raw_input():
    message = _assistant(
        "```tool_code\nshell\nls -la\n```\n"
        '```tool_code\nread\n{"path": "a.txt"}\n```'
    )

    calls = TextToolCallExtractor().extract(message)

    assert [(c.name, c.arguments) for c in calls] == [
        ("shell", {"input": "ls -la"}),
        ("read", {"path": "a.txt"}),
    ]
    assert [c.id for c in calls] == ["embedded_0", "embedded_1"]


def test_structured_calls_take_precedence_over_text():
    structured = ToolCall(name="list", arguments={})
    message = _assistant('<tool_call>{"tool": "read", "arguments": {}}</tool_call>', [structured])

    assert StructuredToolCallExtractor().extract(message) == [structured]
    assert default_tool_call_extractor().extract(message) == [structured]


def test_plain_text_has_no_calls():
    assert default_tool_call_extractor().extract(_assistant("Just an answer.")) == []
