"""Tests for GoalService: creation, planning and state changes."""

import json
import logging
import re

import pytest

from features.goals import GoalState, InvalidTransition, PlanningError
from features.goals.service import STRICT_PLANNER_PROMPT, build_branch_name
from tests.conftest import plan_response

PROMPT = "Add a CSV export button to the reports page"


class TestCreateGoal:
    """Goal creation and validation."""

    def test_defaults(self, make_goal_service):
        service, _ = make_goal_service()
        goal = service.create_goal("proj", "  please add dark mode toggle  ")
        assert goal.state == GoalState.DRAFT
        assert goal.prompt == "please add dark mode toggle"
        assert goal.title == "Add Dark Mode Toggle"
        assert goal.id.startswith("goal-")
        assert service.get_goal(goal.id) is goal

    def test_validation(self, make_goal_service):
        service, _ = make_goal_service()
        with pytest.raises(ValueError):
            service.create_goal("", PROMPT)
        with pytest.raises(ValueError):
            service.create_goal("proj", "   ")
        with pytest.raises(LookupError):
            service.create_goal("proj", PROMPT, parent_goal_id="goal-missing")
        parent = service.create_goal("other", PROMPT)
        with pytest.raises(ValueError, match="same project_id"):
            service.create_goal("proj", PROMPT, parent_goal_id=parent.id)

    def test_branch_names(self):
        name = build_branch_name("Please add the Login page!")
        assert re.fullmatch(r"agent/add-login-page-[0-9a-f]{8}", name)
        assert re.fullmatch(r"agent/goal-[0-9a-f]{8}", build_branch_name("!!!"))
        assert len(build_branch_name("word " * 50).split("/", 1)[1]) <= 32 + 9


class TestGoalState:
    """Transitions go through the lifecycle table."""

    async def test_needs_user_input_round_trip(self, make_goal_service):
        service, _ = make_goal_service()
        goal = service.create_goal("proj", "Fix the crash")
        assert goal.metadata.clarifying_questions

        for state in ("planned", "executing", "needs-user-input"):
            await service.advance_goal_state(goal.id, state)
        await service.answer_questions(goal.id, "It should save")
        await service.advance_goal_state(goal.id, GoalState.EXECUTING, {"resumed": True})

        assert goal.state == GoalState.EXECUTING
        assert goal.metadata.extra == {"answers": ["It should save"], "resumed": True}

    async def test_invalid_transition_leaves_state(self, make_goal_service):
        service, _ = make_goal_service()
        goal = service.create_goal("proj", PROMPT)
        with pytest.raises(InvalidTransition):
            await service.advance_goal_state(goal.id, "merged")
        assert goal.state == GoalState.DRAFT

    async def test_missing_goal(self, make_goal_service):
        service, _ = make_goal_service()
        with pytest.raises(LookupError):
            await service.advance_goal_state("goal-missing", "planned")
        with pytest.raises(LookupError):
            await service.answer_questions("goal-missing", "x")


class TestBuildPlan:
    """Planner calls, strict retry and fallbacks."""

    def test_planner_then_clarification(self, make_goal_service):
        service, llm = make_goal_service(
            plan_response("Build the exporter", "Add the button", title="CSV export"),
            json.dumps({"needsClarification": True, "questions": ["Which columns?"]}),
        )
        title, questions, plans = service.build_plan("proj", PROMPT)

        assert title == "CSV export"
        assert questions == ["Which columns?"]
        assert [p.prompt for p in plans] == ["Build the exporter", "Add the button"]
        assert len(llm.calls) == 2
        assert "Project context is unavailable." in llm.calls[0]["messages"][0]["content"]
        assert llm.calls[0]["max_tokens"] == 900
        assert PROMPT in llm.calls[1]["messages"][1]["content"]

    def test_planner_questions_skip_clarification(self, make_goal_service):
        service, llm = make_goal_service(plan_response("A", "B", questions=["Which page?"]))
        _, questions, _ = service.build_plan("proj", PROMPT)
        assert questions == ["Which page?"]
        assert len(llm.calls) == 1

    def test_low_information_plan_gets_strict_retry(self, make_goal_service):
        service, llm = make_goal_service(
            plan_response("Add login page"),
            plan_response("Create the form", "Add the route", "Store the session"),
            request_clarifications=False,
        )
        _, _, plans = service.build_plan("proj", "Add login page")

        assert [p.prompt for p in plans] == ["Create the form", "Add the route", "Store the session"]
        assert STRICT_PLANNER_PROMPT not in llm.calls[0]["messages"][0]["content"]
        assert STRICT_PLANNER_PROMPT in llm.calls[1]["messages"][0]["content"]

    def test_failed_retry_uses_heuristic_plan(self, make_goal_service, caplog):
        service, _ = make_goal_service(plan_response("Add login page"), "not json at all", request_clarifications=False)
        with caplog.at_level(logging.WARNING):
            _, _, plans = service.build_plan("proj", "Add login page")
        assert len(plans) == 3
        assert plans[0].prompt.startswith("Identify the components")
        assert "Strict planning retry failed" in caplog.text

    def test_style_only_skips_planner(self, make_goal_service):
        service, llm = make_goal_service()
        _, questions, plans = service.build_plan("proj", "Change the background color to dark blue")
        assert llm.calls == []
        assert questions == []
        assert len(plans) == 3

    @pytest.mark.parametrize("response", ["garbage", json.dumps({"childGoals": []}), json.dumps({"steps": "x"}),
                                          json.dumps({"childGoals": ["Run unit tests"]})])
    def test_unusable_planner_output(self, make_goal_service, response):
        service, _ = make_goal_service(response)
        with pytest.raises(PlanningError):
            service.build_plan("proj", PROMPT)

    def test_clarification_failure_is_ignored(self, make_goal_service, caplog):
        service, _ = make_goal_service(plan_response("A", "B"), RuntimeError("rate limited"))
        with caplog.at_level(logging.WARNING):
            _, questions, _ = service.build_plan("proj", PROMPT)
        assert questions == []
        assert "Clarification question generation failed" in caplog.text

    def test_project_context_is_sent(self, fake_llm):
        from features.goals import GoalService

        llm = fake_llm(plan_response("A", "B"))
        service = GoalService(llm=llm, project_context=lambda pid: f"Workspaces of {pid}", request_clarifications=False)
        service.build_plan("proj", PROMPT)
        assert "Project context:\nWorkspaces of proj" in llm.calls[0]["messages"][0]["content"]


class TestPlanGoal:
    """Materializing a plan into stored goals."""

    async def test_materializes_tree(self, make_goal_service):
        response = json.dumps({
            "parentTitle": "Reports export",
            "questions": ["Which format?"],
            "childGoals": [
                {"prompt": "Build the exporter", "children": ["Write the CSV writer", "Stream large files"]},
                {"prompt": "Add the button"},
            ],
        })
        service, _ = make_goal_service(response)
        parent, children = await service.plan_goal("proj", PROMPT)

        assert parent.title == "Reports export"
        assert parent.state == GoalState.PLANNED
        assert parent.metadata.clarifying_questions == ["Which format?"]
        assert len(children) == 4
        assert {c.state for c in children} == {GoalState.PLANNED}
        assert {c.branch_name for c in children} == {parent.branch_name}

        steps = service.executable_steps(parent)
        assert [s.prompt for s in steps] == ["Write the CSV writer", "Stream large files", "Add the button"]

        tree = service.goal_tree("proj")
        assert len(tree) == 1
        assert [c["prompt"] for c in tree[0]["children"]] == ["Build the exporter", "Add the button"]
        assert len(tree[0]["children"][0]["children"]) == 2

    async def test_validation(self, make_goal_service):
        service, llm = make_goal_service()
        with pytest.raises(ValueError):
            await service.plan_goal("proj", "")
        assert llm.calls == []

    def test_goal_without_children_is_its_own_step(self, make_goal_service):
        service, _ = make_goal_service()
        goal = service.create_goal("proj", PROMPT)
        assert service.executable_steps(goal) == [goal]
