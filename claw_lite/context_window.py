"""Context window budgeting: decide which transcript messages survive."""

from dataclasses import dataclass, field

from claw_lite.config import ContextConfig, get_config
from claw_lite.llm import Message
from claw_lite.logging import get_logger
from claw_lite.token_estimator import TokenEstimator

log = get_logger(__name__)


@dataclass
class CompressionResult:
    """Outcome of one compress_history call."""

    messages: list[Message]
    original_token_count: int
    compressed_token_count: int
    compression_ratio: float
    removed_messages: int
    strategy_used: str

    @property
    def changed(self) -> bool:
        return self.strategy_used != "none"


@dataclass
class _Candidate:
    index: int
    message: Message
    tokens: int
    score: float = 0.0
    important: bool = field(default=False)


class ContextWindowManager:
    """Reduce a message history so it fits the model's token budget.

    Budget is ``max_tokens - reserved_tokens - tokens(system_prompt)``.
    Histories that already fit are returned untouched with strategy
    ``"none"``. Otherwise one of three strategies applies:

    * ``truncate``: keep the first message when it fits, then the most
      recent messages walking backwards, capped at ``max_messages_to_keep``.
    * ``selective``: score every message (recency, length, role, tool-call
      flag, first/last position) and keep the best scoring ones that fit.
    * ``hybrid``: keep first/last and tool-call messages first, then fill
      the remaining budget from the most recent end.

    A message that does not fit the remaining budget is dropped whole,
    never cut. Output is always in original chronological order.
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        estimator: TokenEstimator | None = None,
    ):
        self.config = (config or get_config().context).model_copy()
        self.estimator = estimator or TokenEstimator()

    def _estimator_for(self, model_id: str | None) -> TokenEstimator:
        if model_id:
            return TokenEstimator.for_model(model_id)
        return self.estimator

    def available_tokens(self, system_prompt: str = "", model_id: str | None = None) -> int:
        """Token budget left for transcript messages."""
        estimator = self._estimator_for(model_id)
        return (
            self.config.max_tokens
            - self.config.reserved_tokens
            - estimator.estimate(system_prompt or "")
        )

    def fits(self, messages: list[Message], system_prompt: str = "", model_id: str | None = None) -> bool:
        estimator = self._estimator_for(model_id)
        used = estimator.estimate_messages_with_role(messages)
        return used <= self.available_tokens(system_prompt, model_id)

    def compress_history(
        self,
        messages: list[Message],
        system_prompt: str = "",
        model_id: str | None = None,
    ) -> CompressionResult:
        """Return a message list that fits the budget, plus accounting."""
        estimator = self._estimator_for(model_id)
        available = self.available_tokens(system_prompt, model_id)
        original_tokens = estimator.estimate_messages_with_role(messages)

        if original_tokens <= available:
            return CompressionResult(
                messages=messages,
                original_token_count=original_tokens,
                compressed_token_count=original_tokens,
                compression_ratio=1.0,
                removed_messages=0,
                strategy_used="none",
            )

        candidates = [
            _Candidate(index=idx, message=msg, tokens=estimator.estimate_message_with_role(msg))
            for idx, msg in enumerate(messages)
        ]

        strategy = self.config.strategy
        if strategy == "truncate":
            selected = self._truncate(candidates, available)
        elif strategy == "selective":
            selected = self._selective(candidates, available)
        else:
            strategy = "hybrid"
            selected = self._hybrid(candidates, available)

        selected.sort(key=lambda item: item.index)
        compressed = [item.message for item in selected]
        compressed_tokens = estimator.estimate_messages_with_role(compressed)

        log.debug(
            "History compressed",
            strategy=strategy,
            original_messages=len(messages),
            kept_messages=len(compressed),
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            budget=available,
        )

        return CompressionResult(
            messages=compressed,
            original_token_count=original_tokens,
            compressed_token_count=compressed_tokens,
            compression_ratio=(compressed_tokens / original_tokens) if original_tokens else 1.0,
            removed_messages=len(messages) - len(compressed),
            strategy_used=strategy,
        )

    def _truncate(self, candidates: list[_Candidate], budget: int) -> list[_Candidate]:
        selected: list[_Candidate] = []
        used = 0

        first_kept = False
        if self.config.keep_first_last and candidates:
            first = candidates[0]
            if first.tokens <= budget:
                selected.append(first)
                used += first.tokens
                first_kept = True

        for item in reversed(candidates):
            if item.index == 0 and first_kept:
                continue
            if used + item.tokens > budget:
                break
            selected.append(item)
            used += item.tokens

        selected.sort(key=lambda item: item.index)
        max_keep = max(0, int(self.config.max_messages_to_keep))
        if len(selected) > max_keep:
            selected = selected[len(selected) - max_keep:] if max_keep else []
        return selected

    def score_message(self, message: Message, index: int, total: int) -> float:
        """Importance score used by the selective strategy."""
        score = ((index + 1) / total) * 40 if total else 0.0

        length = len(message.content or "")
        if length > 500:
            score += 20
        if length < 50:
            score += 10

        if message.role == "user":
            score += 15
        elif message.role == "system":
            score += 30

        if message.has_tool_call:
            score += 50

        if self.config.keep_first_last:
            if index == 0:
                score += 60
            if index == total - 1:
                score += 60

        return score

    def _selective(self, candidates: list[_Candidate], budget: int) -> list[_Candidate]:
        total = len(candidates)
        for item in candidates:
            item.score = self.score_message(item.message, item.index, total)

        selected: list[_Candidate] = []
        used = 0
        for item in sorted(candidates, key=lambda c: c.score, reverse=True):
            if used + item.tokens <= budget:
                selected.append(item)
                used += item.tokens
        return selected

    def _hybrid(self, candidates: list[_Candidate], budget: int) -> list[_Candidate]:
        total = len(candidates)
        important: set[int] = set()
        if self.config.keep_first_last:
            if total > 0:
                important.add(0)
            if total > 1:
                important.add(total - 1)
        for item in candidates:
            if item.message.has_tool_call:
                important.add(item.index)

        selected: list[_Candidate] = []
        used = 0
        for index in sorted(important):
            item = candidates[index]
            item.important = True
            if used + item.tokens <= budget:
                selected.append(item)
                used += item.tokens

        for item in reversed(candidates):
            if item.important:
                continue
            if used + item.tokens <= budget:
                position = next(
                    (pos for pos, kept in enumerate(selected) if kept.index > item.index),
                    len(selected),
                )
                selected.insert(position, item)
                used += item.tokens

        return selected
