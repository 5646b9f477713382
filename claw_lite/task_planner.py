"""Lightweight planning and working-summary tracking for long prompts."""

import re
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Literal

from claw_lite.config import PlannerConfig, get_config
from claw_lite.token_estimator import TokenEstimator

StepStatus = Literal["pending", "in_progress", "done"]

_COMPLEXITY_RE = re.compile(
    r"\b(multi|multiple|several|steps?|plan|break down|roadmap|refactor|migrate|sweep)\b",
    re.IGNORECASE,
)
_STEP_LINE_RE = re.compile(r"^([-*]|\d+\.)\s+(.*)")

DEFAULT_STEPS = (
    "Understand the request and scope",
    "Identify relevant files and constraints",
    "Make the required changes",
    "Validate results and summarize",
)


@dataclass
class TaskPlanStep:
    id: str
    title: str
    status: StepStatus = "pending"


@dataclass
class TaskPlan:
    id: str
    created_at: float
    summary: str
    steps: list[TaskPlanStep] = field(default_factory=list)
    current_step_index: int = 0

    @property
    def current_step(self) -> TaskPlanStep | None:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None


@dataclass
class WorkingSummary:
    """Condensed running narrative used in place of older turns."""

    updated_at: float
    changes: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    next_step: str | None = None

    def render(self) -> str:
        lines = ["## Working Summary"]
        if self.changes:
            lines.append("Changes:")
            lines.extend(f"- {item}" for item in self.changes)
        if self.decisions:
            lines.append("Decisions:")
            lines.extend(f"- {item}" for item in self.decisions)
        if self.open_questions:
            lines.append("Open Questions:")
            lines.extend(f"- {item}" for item in self.open_questions)
        if self.next_step:
            lines.append(f"Next Step: {self.next_step}")
        return "\n".join(lines)


@dataclass
class PlanDecision:
    should_plan: bool
    reason: str
    prompt_tokens: int
    system_tokens: int
    total_tokens: int
    budget_tokens: int


def _merge_unique(current: list[str], incoming: list[str] | None) -> list[str]:
    merged = list(current)
    if not incoming:
        return merged
    seen = {item.lower() for item in current}
    for item in incoming:
        cleaned = item.strip()
        if not cleaned:
            continue
        key = cleaned.lower()
        if key not in seen:
            seen.add(key)
            merged.append(cleaned)
    return merged


class TaskPlanner:
    """Decides when a prompt needs a plan, and maintains the working summary."""

    def __init__(
        self,
        config: PlannerConfig | None = None,
        max_context_tokens: int | None = None,
        reserved_tokens: int | None = None,
        estimator: TokenEstimator | None = None,
    ):
        cfg = get_config()
        self.config = config or cfg.planner
        self.max_context_tokens = cfg.context.max_tokens if max_context_tokens is None else max_context_tokens
        self.reserved_tokens = cfg.context.reserved_tokens if reserved_tokens is None else reserved_tokens
        self.estimator = estimator or TokenEstimator()

    def should_plan(self, prompt: str, system_prompt: str) -> PlanDecision:
        prompt_tokens = self.estimator.estimate(prompt)
        system_tokens = self.estimator.estimate(system_prompt)
        total_tokens = prompt_tokens + system_tokens
        budget_tokens = max(0, self.max_context_tokens - self.reserved_tokens)

        length_trigger = total_tokens > int(budget_tokens * self.config.length_trigger_ratio)
        complexity_trigger = bool(_COMPLEXITY_RE.search(prompt or ""))

        if length_trigger:
            reason = "prompt_length"
        elif complexity_trigger:
            reason = "complexity_keywords"
        else:
            reason = "not_needed"

        return PlanDecision(
            should_plan=length_trigger or complexity_trigger,
            reason=reason,
            prompt_tokens=prompt_tokens,
            system_tokens=system_tokens,
            total_tokens=total_tokens,
            budget_tokens=budget_tokens,
        )

    def create_plan(self, prompt: str) -> TaskPlan:
        steps = self._extract_steps(prompt)
        created_at = time.time()
        return TaskPlan(
            id=f"plan_{int(created_at * 1000)}_{secrets.token_hex(3)}",
            created_at=created_at,
            summary=" | ".join(step.title for step in steps),
            steps=steps,
        )

    def create_working_summary(self, plan: TaskPlan | None = None) -> WorkingSummary:
        next_step = None
        if plan is not None:
            next_step = next((step.title for step in plan.steps if step.status == "pending"), None)
        return WorkingSummary(updated_at=time.time(), next_step=next_step)

    def update_working_summary(
        self,
        summary: WorkingSummary,
        *,
        changes: list[str] | None = None,
        decisions: list[str] | None = None,
        open_questions: list[str] | None = None,
        next_step: str | None = None,
    ) -> WorkingSummary:
        """Return a new summary with the patch merged in; lists keep their newest items."""
        limit = self.config.summary_list_limit
        return replace(
            summary,
            updated_at=time.time(),
            changes=_merge_unique(summary.changes, changes)[-limit:],
            decisions=_merge_unique(summary.decisions, decisions)[-limit:],
            open_questions=_merge_unique(summary.open_questions, open_questions)[-limit:],
            next_step=next_step if next_step is not None else summary.next_step,
        )

    def advance(self, plan: TaskPlan) -> tuple[TaskPlanStep | None, TaskPlanStep | None]:
        """Mark the current step done and start the next one, if any."""
        current = plan.current_step
        if current is None:
            return None, None
        current.status = "done"
        next_index = plan.current_step_index + 1
        if next_index < len(plan.steps):
            upcoming = plan.steps[next_index]
            upcoming.status = "in_progress"
            plan.current_step_index = next_index
            return current, upcoming
        return current, None

    def _extract_steps(self, prompt: str) -> list[TaskPlanStep]:
        candidates: list[str] = []
        for line in (prompt or "").splitlines():
            match = _STEP_LINE_RE.match(line.strip())
            if match and match.group(2).strip():
                candidates.append(match.group(2).strip())

        if not candidates:
            candidates = list(DEFAULT_STEPS)

        return [
            TaskPlanStep(
                id=f"step_{idx + 1}",
                title=re.sub(r"\s+", " ", title).strip(),
                status="in_progress" if idx == 0 else "pending",
            )
            for idx, title in enumerate(candidates[: self.config.max_steps])
        ]
