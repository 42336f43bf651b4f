"""Tests for the event-log step reducer and session models."""

import pytest

from features.autopilot.events import PlannedStep, build_step_snapshot, pending_steps, planned_steps
from features.autopilot.models import (
    AutopilotEvent,
    AutopilotSession,
    EventType,
    InvalidSessionTransition,
    SessionStatus,
    assert_session_transition,
)
from features.goals import GoalStateError, UnknownState


def _event(type_, **payload):
    return {"type": type_, "payload": payload}


class TestStepSnapshot:
    """Current and next step are derived from the log alone."""

    def test_mid_run(self):
        events = [
            _event("plan", steps=["A", "B", "C"]),
            _event("step:start", prompt="A"),
            _event("step:done", prompt="A"),
            _event("step:start", prompt="B"),
        ]
        snapshot = build_step_snapshot(events)
        assert snapshot.current_step == "B"
        assert snapshot.next_step == "C"
        assert snapshot.to_dict()["completed"] == ["A"]

    def test_between_steps(self):
        events = [
            _event("plan", steps=["A", "B"]),
            _event("step:start", prompt="A"),
            _event("step:done", prompt="A"),
        ]
        snapshot = build_step_snapshot(events)
        assert snapshot.current_step is None
        assert snapshot.next_step == "B"

    def test_all_done(self):
        events = [_event("plan", steps=["A"]), _event("step:start", prompt="A"), _event("step:done", prompt="A")]
        snapshot = build_step_snapshot(events)
        assert snapshot.current_step is None
        assert snapshot.next_step is None

    def test_added_prompts_extend_and_steps_replace(self):
        events = [
            _event("plan", steps=["A"]),
            _event("plan", addedPrompts=["D", " "]),
            _event("message"),
        ]
        assert planned_steps(events) == ["A", "D"]
        events.append(_event("plan", steps=["X", "Y"]))
        assert planned_steps(events) == ["X", "Y"]

    def test_unplanned_current_step(self):
        snapshot = build_step_snapshot([_event("step:start", prompt="Ad hoc")])
        assert snapshot.current_step == "Ad hoc"
        assert snapshot.planned == ()
        assert snapshot.next_step is None

    def test_model_events_and_junk(self):
        session = AutopilotSession(id="s1", project_id="p", prompt="x")
        session.append_event(EventType.PLAN, "planned", {"steps": ["A", "B"]})
        session.append_event(EventType.STEP_START, "", {"prompt": "A"})
        snapshot = build_step_snapshot([*session.events, None, {"type": "step:start", "payload": "bad"}])
        assert snapshot.current_step == "A"
        assert snapshot.next_step == "B"

    def test_retried_step_is_current_again(self):
        events = [
            _event("plan", steps=["A", "B"]),
            _event("step:start", prompt="A"),
            _event("step:done", prompt="A"),
            _event("step:start", prompt="A"),
        ]
        snapshot = build_step_snapshot(events)
        assert snapshot.current_step == "A"
        assert snapshot.next_step == "B"

    def test_identical_prompts_tracked_by_goal_id(self):
        step_goals = [{"prompt": "Add tests", "goalId": "g-1"}, {"prompt": "Add tests", "goalId": "g-2"}]
        events = [
            _event("plan", steps=["Add tests", "Add tests"], stepGoals=step_goals),
            _event("step:start", prompt="Add tests", goalId="g-1"),
            _event("step:done", prompt="Add tests", goalId="g-1"),
        ]
        assert pending_steps(events) == [PlannedStep("Add tests", "g-2")]

        events.append(_event("step:start", prompt="Add tests", goalId="g-2"))
        snapshot = build_step_snapshot(events)
        assert snapshot.current_step == "Add tests"
        assert snapshot.next_step is None

    def test_prompt_only_steps_complete_once_each(self):
        events = [
            _event("plan", steps=["A", "A", "B"]),
            _event("step:done", prompt="A"),
        ]
        assert [s.prompt for s in pending_steps(events)] == ["A", "B"]

    def test_empty(self):
        assert build_step_snapshot(None).to_dict() == {
            "planned": [], "completed": [], "currentStep": None, "nextStep": None,
        }


class TestSessionModel:
    """Status transitions and serialization."""

    def test_lifecycle_timestamps(self):
        session = AutopilotSession(id="s1", project_id="p", prompt="x")
        session.move_to(SessionStatus.RUNNING, "Planning")
        assert session.started_at
        assert session.status_message == "Planning"
        session.move_to(SessionStatus.COMPLETED)
        assert session.is_terminal
        assert session.finished_at

    def test_invalid_transition(self):
        with pytest.raises(InvalidSessionTransition) as exc:
            assert_session_transition("completed", "running")
        assert str(exc.value) == "Invalid session transition from completed to running"
        assert isinstance(exc.value, GoalStateError)

    def test_unknown_status(self):
        with pytest.raises(UnknownState):
            assert_session_transition("running", "sleeping")

    def test_event_ids_and_round_trip(self):
        session = AutopilotSession(id="s1", project_id="p", prompt="x")
        first = session.append_event("message", "hi", {"role": "user"})
        second = session.append_event(EventType.CONTROL, "pause")
        assert first.id == "s1:event:1"
        assert second.id == "s1:event:2"
        assert AutopilotEvent.from_dict(first.to_dict()) == first

    def test_to_dict(self):
        session = AutopilotSession(id="s1", project_id="p", prompt="x", ui_session_id="ui")
        session.append_event("message", "hi")
        session.messages.append({"kind": None, "message": "hi"})
        data = session.to_dict(include_events=False)
        assert data["eventCount"] == 1
        assert data["messageCount"] == 1
        assert "events" not in data
        assert session.to_dict()["events"][0]["type"] == "message"
