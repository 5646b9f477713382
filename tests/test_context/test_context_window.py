from claw_lite.config import ContextConfig
from claw_lite.context_window import ContextWindowManager
from claw_lite.llm import Message
from claw_lite.token_estimator import TokenEstimator


def _history(count: int, tokens: int = 10) -> list[Message]:
    # user messages cost tokens + 2, assistant messages tokens + 3 once the role prefix is added
    return [
        Message(
            role="user" if idx % 2 == 0 else "assistant",
            content=f"message {idx}",
            token_count=tokens,
        )
        for idx in range(count)
    ]


def _manager(max_tokens: int, strategy: str = "hybrid", **overrides) -> ContextWindowManager:
    config = ContextConfig(
        max_tokens=max_tokens,
        reserved_tokens=0,
        strategy=strategy,
        keep_first_last=overrides.pop("keep_first_last", True),
        max_messages_to_keep=overrides.pop("max_messages_to_keep", 20),
    )
    return ContextWindowManager(config, estimator=TokenEstimator())


def _contents(messages: list[Message]) -> list[str]:
    return [message.content for message in messages]


def test_fitting_history_is_returned_unchanged():
    manager = _manager(max_tokens=1000)
    history = _history(6)

    result = manager.compress_history(history, "You are helpful.")

    assert result.messages is history
    assert result.strategy_used == "none"
    assert result.compression_ratio == 1.0
    assert result.removed_messages == 0
    assert result.original_token_count == result.compressed_token_count
    assert not result.changed


def test_budget_subtracts_reserved_and_system_prompt():
    config = ContextConfig(max_tokens=100, reserved_tokens=30)
    manager = ContextWindowManager(config, estimator=TokenEstimator())

    assert manager.available_tokens("") == 70
    assert manager.available_tokens("a" * 40) == 60


def test_hybrid_keeps_first_last_and_tool_call_messages_in_order():
    manager = _manager(max_tokens=40)
    history = _history(6)
    history[1].metadata["has_tool_call"] = True

    result = manager.compress_history(history)

    assert result.strategy_used == "hybrid"
    assert _contents(result.messages) == ["message 0", "message 1", "message 5"]
    assert result.removed_messages == 3


def test_hybrid_fills_remaining_budget_from_most_recent():
    manager = _manager(max_tokens=52)
    history = _history(6)
    history[1].metadata["has_tool_call"] = True

    result = manager.compress_history(history)

    assert _contents(result.messages) == ["message 0", "message 1", "message 4", "message 5"]


def test_truncate_keeps_first_and_contiguous_recent_window():
    manager = _manager(max_tokens=40, strategy="truncate")

    result = manager.compress_history(_history(6))

    assert result.strategy_used == "truncate"
    assert _contents(result.messages) == ["message 0", "message 4", "message 5"]


def test_truncate_stops_at_first_message_that_does_not_fit():
    manager = _manager(max_tokens=40, strategy="truncate")
    history = _history(4)
    history[2].token_count = 100

    result = manager.compress_history(history)

    assert _contents(result.messages) == ["message 0", "message 3"]


def test_truncate_caps_message_count_dropping_oldest():
    manager = _manager(max_tokens=40, strategy="truncate", max_messages_to_keep=2)

    result = manager.compress_history(_history(6))

    assert _contents(result.messages) == ["message 4", "message 5"]


def test_selective_prefers_high_scoring_messages():
    manager = _manager(max_tokens=30, strategy="selective", keep_first_last=False)
    history = _history(4)
    history[1].metadata["has_tool_call"] = True

    result = manager.compress_history(history)

    assert result.strategy_used == "selective"
    assert _contents(result.messages) == ["message 1", "message 2"]


def test_oversized_message_is_dropped_whole_and_counts_are_recomputed():
    manager = _manager(max_tokens=40)
    history = _history(3)
    history[1].token_count = 500

    result = manager.compress_history(history)

    assert _contents(result.messages) == ["message 0", "message 2"]
    estimator = TokenEstimator()
    assert result.compressed_token_count == estimator.estimate_messages_with_role(result.messages)
    assert result.compression_ratio == result.compressed_token_count / result.original_token_count


def test_score_message_components():
    manager = _manager(max_tokens=40)
    long_user = Message(role="user", content="x" * 600)
    tool_assistant = Message(role="assistant", content="ok", metadata={"has_tool_call": True})

    # recency 40 * 2/4 + long 20 + user 15
    assert manager.score_message(long_user, 1, 4) == 55
    # recency 40 + short 10 + tool call 50 + last 60
    assert manager.score_message(tool_assistant, 3, 4) == 160
