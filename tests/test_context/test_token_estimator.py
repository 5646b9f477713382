from claw_lite.llm import Message
from claw_lite.token_estimator import TokenEstimator


def test_estimate_plain_text_uses_ratio_and_whitespace_discount():
    estimator = TokenEstimator()

    assert estimator.estimate("") == 0
    assert estimator.estimate("abcd") == 1
    assert estimator.estimate("a" * 40) == 10
    # 11 chars, one space: 11 * (1 - 0.3/11) / 4 = 2.675
    assert estimator.estimate("hello world") == 3


def test_estimate_applies_complexity_factor_for_code_and_markdown():
    estimator = TokenEstimator()

    plain = "a" * 40
    assert estimator.estimate("`" + plain[1:]) == 12
    assert estimator.estimate("#" + plain[1:]) == 11


def test_estimate_message_with_role_adds_role_prefix():
    estimator = TokenEstimator()
    message = Message(role="user", content="abcd")

    assert estimator.estimate_message(message) == 1
    assert estimator.estimate_message_with_role(message) == 1 + estimator.estimate("user: ")


def test_explicit_token_count_wins_over_estimation():
    estimator = TokenEstimator()
    message = Message(role="assistant", content="a" * 400, token_count=7)

    assert estimator.estimate_message(message) == 7
    assert estimator.estimate_messages([message, Message(role="user", content="abcd")]) == 8


def test_model_family_selects_chars_per_token():
    assert TokenEstimator.chars_per_token_for_model("qwen2.5-coder:7b") == 3.5
    assert TokenEstimator.chars_per_token_for_model("deepseek-coder-v2") == 3.5
    assert TokenEstimator.chars_per_token_for_model("qwen3:32b") == 3.8
    assert TokenEstimator.chars_per_token_for_model("llama3.2:latest") == 4.0
    assert TokenEstimator.chars_per_token_for_model("mystery-model") == 4.0
    assert TokenEstimator.chars_per_token_for_model(None) == 4.0

    dense = TokenEstimator.for_model("qwen2.5-coder:7b")
    assert dense.estimate("a" * 35) == 10
