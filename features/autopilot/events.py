"""
Event-log reducer: planned / completed / current / next step of a session.

Pure functions over the ordered event list. A "plan" event with `steps`
replaces the planned list; one with `addedPrompts` extends it.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from features.autopilot.models import AutopilotEvent, EventType


@dataclass(frozen=True)
class StepSnapshot:
    planned: tuple[str, ...] = ()
    completed: frozenset[str] = field(default_factory=frozenset)
    current_step: str | None = None
    next_step: str | None = None

    def to_dict(self) -> dict:
        return {
            "planned": list(self.planned),
            "completed": [p for p in self.planned if p in self.completed],
            "currentStep": self.current_step,
            "nextStep": self.next_step,
        }


def _type(event) -> str:
    if isinstance(event, AutopilotEvent):
        return event.type.value
    return str((event or {}).get("type") or "")


def _payload(event) -> dict:
    if isinstance(event, AutopilotEvent):
        return event.payload
    payload = (event or {}).get("payload")
    return payload if isinstance(payload, dict) else {}


def _prompts(values) -> list[str]:
    if not isinstance(values, list):
        return []
    return [v.strip() for v in values if isinstance(v, str) and v.strip()]


def _step_prompt(event) -> str:
    prompt = _payload(event).get("prompt")
    return prompt.strip() if isinstance(prompt, str) else ""


def _goal_id(event) -> str | None:
    goal_id = _payload(event).get("goalId")
    return goal_id.strip() if isinstance(goal_id, str) and goal_id.strip() else None


@dataclass(frozen=True)
class PlannedStep:
    """One schedulable step: its prompt and, when the engine created one, its goal."""
    prompt: str
    goal_id: str | None = None


def _plan_entries(payload: dict, key: str) -> list[PlannedStep]:
    step_goals = payload.get("stepGoals")
    if isinstance(step_goals, list):
        entries = [
            PlannedStep(g["prompt"].strip(), g.get("goalId") if isinstance(g.get("goalId"), str) else None)
            for g in step_goals
            if isinstance(g, dict) and isinstance(g.get("prompt"), str) and g["prompt"].strip()
        ]
        if entries:
            return entries
    return [PlannedStep(p) for p in _prompts(payload.get(key))]


def planned_step_entries(events: Iterable) -> list[PlannedStep]:
    """Planned steps in order. Identical prompts stay distinct entries."""
    entries: list[PlannedStep] = []
    for event in events:
        if _type(event) != EventType.PLAN.value:
            continue
        payload = _payload(event)
        if isinstance(payload.get("steps"), list):
            entries = _plan_entries(payload, "steps")
        else:
            entries.extend(_plan_entries(payload, "addedPrompts"))
    return entries


def planned_steps(events: Iterable) -> list[str]:
    return [entry.prompt for entry in planned_step_entries(events)]


def completed_steps(events: Iterable) -> set[str]:
    return {
        _step_prompt(e) for e in events
        if _type(e) == EventType.STEP_DONE.value and _step_prompt(e)
    }


def pending_steps(events) -> list[PlannedStep]:
    """
    Planned steps without a matching step:done.

    Steps carrying a goal id are matched by goal id. Steps without one are
    matched by prompt, each step:done completing at most one of them.
    """
    events = list(events or [])
    entries = planned_step_entries(events)
    known_ids = {e.goal_id for e in entries if e.goal_id}
    done_ids: set[str] = set()
    loose: Counter[str] = Counter()
    for event in events:
        if _type(event) != EventType.STEP_DONE.value:
            continue
        goal_id = _goal_id(event)
        if goal_id in known_ids:
            done_ids.add(goal_id)
        elif _step_prompt(event):
            loose[_step_prompt(event)] += 1

    pending = []
    for entry in entries:
        if entry.goal_id:
            if entry.goal_id in done_ids:
                continue
        elif loose[entry.prompt] > 0:
            loose[entry.prompt] -= 1
            continue
        pending.append(entry)
    return pending


def _same_step(entry: PlannedStep, prompt: str, goal_id: str | None) -> bool:
    if entry.goal_id and goal_id:
        return entry.goal_id == goal_id
    return entry.prompt == prompt


def build_step_snapshot(events) -> StepSnapshot:
    """Derive step progress from the log; the log is the only source of truth."""
    events = list(events or [])

    # The current step is the latest step:start not closed by a later step:done.
    current = current_id = None
    for event in events:
        kind = _type(event)
        prompt = _step_prompt(event)
        if not prompt:
            continue
        if kind == EventType.STEP_START.value:
            current, current_id = prompt, _goal_id(event)
        elif kind == EventType.STEP_DONE.value and prompt == current:
            goal_id = _goal_id(event)
            if current_id is None or goal_id is None or goal_id == current_id:
                current = current_id = None

    upcoming = pending_steps(events)
    if current is not None:
        index = next((i for i, e in enumerate(upcoming) if _same_step(e, current, current_id)), None)
        if index is not None:
            upcoming = upcoming[:index] + upcoming[index + 1:]

    planned = planned_steps(events)
    return StepSnapshot(
        planned=tuple(planned),
        completed=frozenset(completed_steps(events)),
        current_step=current,
        next_step=upcoming[0].prompt if upcoming else None,
    )
