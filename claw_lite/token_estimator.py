"""Approximate token counting for transcript budgeting."""

import math
import re
from typing import Iterable

from claw_lite.llm import Message

DEFAULT_CHARS_PER_TOKEN = 4.0

# Ordered: the first matching substring of a model id wins.
MODEL_FAMILY_RATIOS: tuple[tuple[str, float], ...] = (
    ("qwen2.5-coder", 3.5),
    ("coder", 3.5),
    ("qwen3", 3.8),
    ("llama", 4.0),
    ("deepseek", 4.0),
    ("gpt-4", 4.0),
)

_WHITESPACE_RE = re.compile(r"\s")
_MARKDOWN_RE = re.compile(r"#+|\[|\]|\(|\)|\*+")


class TokenEstimator:
    """Character-ratio token estimator.

    Stateless after construction, so one instance can be shared by
    concurrently running sessions.
    """

    def __init__(self, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = float(chars_per_token)

    def estimate(self, text: str) -> int:
        """Estimate tokens for raw text."""
        if not text:
            return 0

        char_count = len(text)
        whitespace_ratio = len(_WHITESPACE_RE.findall(text)) / char_count
        adjusted_chars = char_count * (1 - whitespace_ratio * 0.3)

        if "`" in text:
            complexity = 1.2
        elif _MARKDOWN_RE.search(text):
            complexity = 1.1
        else:
            complexity = 1.0

        return math.ceil((adjusted_chars / self.chars_per_token) * complexity)

    def estimate_message(self, message: Message) -> int:
        if message.token_count is not None:
            return int(message.token_count)
        return self.estimate(message.content or "")

    def estimate_message_with_role(self, message: Message) -> int:
        """Estimate content tokens plus the fixed ``"<role>: "`` prefix."""
        return self.estimate_message(message) + self.estimate(f"{message.role}: ")

    def estimate_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate_message(message) for message in messages)

    def estimate_messages_with_role(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate_message_with_role(message) for message in messages)

    @staticmethod
    def chars_per_token_for_model(model_id: str | None) -> float:
        """Resolve a characters-per-token ratio from a model identifier."""
        lowered = str(model_id or "").strip().lower()
        if not lowered:
            return DEFAULT_CHARS_PER_TOKEN
        for needle, ratio in MODEL_FAMILY_RATIOS:
            if needle in lowered:
                return ratio
        return DEFAULT_CHARS_PER_TOKEN

    @classmethod
    def for_model(cls, model_id: str | None) -> "TokenEstimator":
        return cls(cls.chars_per_token_for_model(model_id))
