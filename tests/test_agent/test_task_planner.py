from claw_lite.config import PlannerConfig
from claw_lite.task_planner import DEFAULT_STEPS, TaskPlanner, WorkingSummary


def _planner(**overrides) -> TaskPlanner:
    return TaskPlanner(PlannerConfig(**overrides), max_context_tokens=1000, reserved_tokens=0)


def test_should_plan_on_complexity_keywords():
    decision = _planner().should_plan("Migrate the config loader", "")

    assert decision.should_plan is True
    assert decision.reason == "complexity_keywords"


def test_should_plan_on_prompt_length():
    decision = _planner().should_plan("a" * 2400, "")

    assert decision.should_plan is True
    assert decision.reason == "prompt_length"
    assert decision.budget_tokens == 1000


def test_simple_prompt_does_not_plan():
    decision = _planner().should_plan("What time is it?", "Be brief.")

    assert decision.should_plan is False
    assert decision.reason == "not_needed"


def test_create_plan_extracts_listed_steps_and_caps_count():
    prompt = "Do this:\n1. first\n2. second\n- third\n* fourth"
    plan = _planner(max_steps=3).create_plan(prompt)

    assert [s.title for s in plan.steps] == ["first", "second", "third"]
    assert [s.status for s in plan.steps] == ["in_progress", "pending", "pending"]
    assert plan.summary == "first | second | third"
    assert plan.id.startswith("plan_")


def test_create_plan_falls_back_to_default_steps():
    plan = _planner().create_plan("refactor everything")

    assert [s.title for s in plan.steps] == list(DEFAULT_STEPS)


def test_update_working_summary_merges_uniquely_and_keeps_newest():
    planner = _planner(summary_list_limit=2)
    summary = WorkingSummary(updated_at=0.0, changes=["one"])

    updated = planner.update_working_summary(summary, changes=["ONE", "two", "three"], decisions=["keep"])

    assert summary.changes == ["one"]
    assert updated.changes == ["two", "three"]
    assert updated.decisions == ["keep"]
    assert updated.updated_at > 0


def test_advance_moves_to_next_step():
    planner = _planner()
    plan = planner.create_plan("- a\n- b")

    finished, upcoming = planner.advance(plan)
    assert (finished.title, upcoming.title) == ("a", "b")

    finished, upcoming = planner.advance(plan)
    assert finished.title == "b"
    assert upcoming is None
    assert all(step.status == "done" for step in plan.steps)


def test_render_working_summary():
    summary = WorkingSummary(
        updated_at=0.0,
        changes=["edited a.py"],
        decisions=["use hybrid"],
        open_questions=["limit?"],
        next_step="write tests",
    )

    assert summary.render() == (
        "## Working Summary\n"
        "Changes:\n- edited a.py\n"
        "Decisions:\n- use hybrid\n"
        "Open Questions:\n- limit?\n"
        "Next Step: write tests"
    )
