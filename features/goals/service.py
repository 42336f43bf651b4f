"""
Goal service — creates, plans and advances goals.

In-memory state is authoritative within the process. Every mutation is
written through to Postgres when the store is up (see utils.db.write_behind),
so a crash loses nothing that was already persisted.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Callable

import config
from features.goals import db as goal_db
from features.goals.lifecycle import assert_transition
from features.goals.metadata import build_goal_metadata, is_style_only_prompt, normalize_clarifying_questions
from features.goals.models import Goal, GoalMetadata, GoalPlanNode, GoalState
from features.goals.planning import (
    build_heuristic_child_plans,
    build_style_only_plans,
    derive_goal_title,
    is_low_information_plan,
    normalize_plan_tree,
)
from utils.db import is_ready, write_behind, write_through_async
from utils.llm import extract_json_object, generate_response
from utils.locks import KeyedLocks

log = logging.getLogger(__name__)

BRANCH_STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "could",
    "do", "does", "for", "from", "have", "has", "had", "how", "i", "if",
    "in", "into", "is", "it", "its", "let", "lets", "make",
    "of", "on", "or", "our", "please", "should", "so", "some", "that",
    "the", "their", "then", "there", "this", "to", "up", "we",
    "with", "would", "you", "your",
})

PLANNER_SYSTEM_PROMPT = (
    "You are a software planning assistant. Given a high-level user request, "
    "decompose it into the smallest list of concrete development goals needed to satisfy the request. "
    'If any goal can be broken into subgoals, nest them under a "children" array. '
    "Do NOT include steps about running tests or coverage (those happen automatically). "
    "You MAY include steps that add or update tests as part of the work. "
    'If key details are missing, include a "questions" array with short clarifying questions. '
    "Never copy the user request verbatim into a goal title or prompt. "
    "Assume UI code lives under frontend/ and server code under backend/ unless the project context says otherwise. "
    "Preferred structure: one top-level goal with 3-5 sub-goals that describe concrete steps. "
)

STRICT_PLANNER_PROMPT = (
    "Return 3-7 child goals unless the request is truly trivial. "
    "Each child goal must be actionable and include concrete implementation details. "
    "Do NOT restate the user prompt verbatim. "
)

PLANNER_RESPONSE_SHAPE = (
    "Respond with JSON shaped like "
    '{ "parentTitle": "Short summary (<=10 words)", '
    '"questions": ["Optional clarifying question"], '
    '"childGoals": [ { "title": "Short label (<=8 words)", "prompt": "Detailed implementation instructions", "children": [] } ] }.'
)

CLARIFICATION_SYSTEM_PROMPT = (
    "You are a senior product engineer. Given a user request and project context, "
    'return ONLY JSON in the shape { "needsClarification": boolean, "questions": [string] }. '
    "Ask short, specific questions only if a missing detail blocks implementation. "
    "If reasonable defaults can be assumed, do so and return no questions."
)


class PlanningError(ValueError):
    """The planner returned something that can't be turned into a plan."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_branch_name(prompt: str, prefix: str = config.GOAL_BRANCH_PREFIX) -> str:
    """`agent/<slug>-<suffix>` with filler words dropped from the slug."""
    raw = (prompt or "").lower()
    words = re.sub(r"[^a-z0-9]+", " ", raw).split()
    tokens = [t for t in words if len(t) > 1 and t not in BRANCH_STOPWORDS]
    slug = "-".join(tokens or words).strip("-")[:32].strip("-")
    return f"{prefix}/{slug or 'goal'}-{uuid.uuid4().hex[:8]}"


def _goal_from_row(row: dict) -> Goal:
    meta = row.get("metadata") or {}
    known = ("acceptanceCriteria", "clarifyingQuestions", "styleOnly")
    return Goal(
        id=row["id"],
        project_id=row["project_id"],
        parent_goal_id=row.get("parent_goal_id"),
        prompt=row["prompt"],
        title=row["title"],
        branch_name=row["branch_name"],
        state=GoalState(row["state"]),
        metadata=GoalMetadata(
            acceptance_criteria=list(meta.get("acceptanceCriteria") or []),
            clarifying_questions=list(meta.get("clarifyingQuestions") or []),
            style_only=bool(meta.get("styleOnly")),
            extra={k: v for k, v in meta.items() if k not in known},
        ),
        created_at=str(row.get("created_at") or ""),
        updated_at=str(row.get("updated_at") or ""),
    )


class GoalService:
    """Owns every goal mutation; all state changes go through the lifecycle table."""

    def __init__(
        self,
        llm: Callable[..., str] = generate_response,
        project_context: Callable[[str], str] | None = None,
        request_clarifications: bool = True,
    ):
        self._llm = llm
        self._project_context = project_context
        self._request_clarifications = request_clarifications
        self._goals: dict[str, Goal] = {}
        self._locks = KeyedLocks()

    # ── Lookup ────────────────────────────────────────────────────────

    def get_goal(self, goal_id: str) -> Goal | None:
        goal = self._goals.get(goal_id)
        if goal is None:
            goal = self._load(goal_id)
        return goal

    def _load(self, goal_id: str) -> Goal | None:
        if not is_ready():
            return None
        try:
            row = goal_db.get_goal(goal_id)
        except Exception as e:
            log.warning("[GOAL] Could not load goal %s from DB: %s", goal_id, e)
            return None
        if not row:
            return None
        goal = _goal_from_row(row)
        self._goals[goal.id] = goal
        return goal

    def list_goals(self, project_id: str) -> list[Goal]:
        return [g for g in self._goals.values() if g.project_id == str(project_id)]

    def children_of(self, goal_id: str) -> list[Goal]:
        return [g for g in self._goals.values() if g.parent_goal_id == goal_id]

    def descendants(self, goal_id: str) -> list[Goal]:
        """Every goal below `goal_id`, parents before their children."""
        found: list[Goal] = []
        for child in self.children_of(goal_id):
            found.append(child)
            found.extend(self.descendants(child.id))
        return found

    def goal_tree(self, project_id: str, parent_id: str | None = None) -> list[dict]:
        """Nested dicts of goals below `parent_id` (top-level goals when None)."""
        nodes = []
        for goal in self.list_goals(project_id):
            if goal.parent_goal_id == parent_id:
                entry = goal.to_dict()
                entry["children"] = self.goal_tree(project_id, goal.id)
                nodes.append(entry)
        return nodes

    # ── Mutations ─────────────────────────────────────────────────────

    def _persist(self, goal: Goal) -> None:
        write_behind(f"goal {goal.id}", goal_db.upsert_goal, goal.to_dict())

    def create_goal(
        self,
        project_id: str,
        prompt: str,
        title: str | None = None,
        parent_goal_id: str | None = None,
        extra_questions=(),
        branch_name: str | None = None,
    ) -> Goal:
        if not project_id:
            raise ValueError("project_id is required")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt is required")
        if parent_goal_id is not None:
            parent = self.get_goal(parent_goal_id)
            if parent is None:
                raise LookupError(f"Parent goal not found: {parent_goal_id}")
            if parent.project_id != str(project_id):
                raise ValueError("Parent goal must use the same project_id")

        now = _now()
        goal = Goal(
            id=f"goal-{uuid.uuid4().hex[:8]}",
            project_id=str(project_id),
            parent_goal_id=parent_goal_id,
            prompt=prompt.strip(),
            title=(title or "").strip()[:200] or derive_goal_title(prompt),
            branch_name=branch_name or build_branch_name(prompt),
            metadata=build_goal_metadata(prompt, extra_questions),
            created_at=now,
            updated_at=now,
        )
        self._goals[goal.id] = goal
        log.info("[GOAL] Created: %s (%s)", goal.id, goal.title)
        self._persist(goal)
        return goal

    def _apply_state(self, goal: Goal, target: GoalState | str, metadata_updates: dict | None) -> Goal:
        """Validate and apply a state change in memory; callers persist."""
        assert_transition(goal.state, target)
        previous = goal.state
        goal.state = GoalState(target)
        if metadata_updates:
            goal.metadata.extra.update(metadata_updates)
        goal.updated_at = _now()
        log.info("[GOAL] %s: %s -> %s", goal.id, previous.value, goal.state.value)
        return goal

    async def advance_goal_state(
        self,
        goal_id: str,
        target: GoalState | str,
        metadata_updates: dict | None = None,
    ) -> Goal:
        """Validated state change, serialized per goal id."""
        async with self._locks.holding(goal_id):
            goal = self.get_goal(goal_id)
            if goal is None:
                raise LookupError(f"Goal not found: {goal_id}")
            self._apply_state(goal, target, metadata_updates)
            await write_through_async(f"goal {goal.id}", goal_db.upsert_goal, goal.to_dict())
            return goal

    async def answer_questions(self, goal_id: str, answer: str) -> Goal:
        """Record a user's answer; the questions stay for the audit trail."""
        async with self._locks.holding(goal_id):
            goal = self.get_goal(goal_id)
            if goal is None:
                raise LookupError(f"Goal not found: {goal_id}")
            answers = goal.metadata.extra.setdefault("answers", [])
            answers.append(answer)
            goal.updated_at = _now()
            await write_through_async(f"goal {goal.id}", goal_db.upsert_goal, goal.to_dict())
            return goal

    # ── Planning ──────────────────────────────────────────────────────

    def _context_for(self, project_id: str) -> str:
        if self._project_context is None:
            return ""
        try:
            return self._project_context(project_id) or ""
        except Exception as e:
            log.warning("[GOAL] Project context unavailable for %s: %s", project_id, e)
            return ""

    def _request_plan(self, prompt: str, context: str, strict: bool) -> tuple[str, list[str], list[GoalPlanNode]]:
        system = PLANNER_SYSTEM_PROMPT
        system += f"Project context:\n{context}\n" if context else "Project context is unavailable. "
        if strict:
            system += STRICT_PLANNER_PROMPT
        system += PLANNER_RESPONSE_SHAPE

        raw = self._llm(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": f'Plan work for this request: "{prompt}"'},
            ],
            max_tokens=900,
            temperature=0.3,
        )
        parsed = extract_json_object(raw)
        if parsed is None:
            raise PlanningError("LLM planning response was not valid JSON")

        entries = parsed.get("childGoals")
        if not isinstance(entries, list):
            entries = parsed.get("childPrompts")
        if not isinstance(entries, list) or not entries:
            raise PlanningError("LLM planning response has no childGoals")

        plans = normalize_plan_tree(entries)
        if not plans:
            raise PlanningError("LLM planning produced no usable child prompts")

        parent_title = parsed.get("parentTitle") if isinstance(parsed.get("parentTitle"), str) else ""
        questions = normalize_clarifying_questions(parsed.get("questions") or parsed.get("clarifyingQuestions") or [])
        return parent_title.strip(), questions, plans

    def _ask_clarifications(self, prompt: str, context: str) -> list[str]:
        raw = self._llm(
            [
                {"role": "system", "content": CLARIFICATION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": "\n".join(["Project context:", context or "Unavailable", "", f'User request: "{prompt}"']),
                },
            ],
            max_tokens=300,
            temperature=0.2,
        )
        parsed = extract_json_object(raw) or {}
        if not parsed.get("needsClarification"):
            return []
        return normalize_clarifying_questions(parsed.get("questions") or [])

    def build_plan(self, project_id: str, prompt: str) -> tuple[str, list[str], list[GoalPlanNode]]:
        """
        Ask the planner for a goal tree.

        A low-information first answer gets one strict retry; if that fails the
        identify/build/wire-up heuristic plan is used. Style-only prompts skip
        the planner entirely.
        """
        if is_style_only_prompt(prompt):
            return "", [], build_style_only_plans(prompt)

        context = self._context_for(project_id)
        parent_title, questions, plans = self._request_plan(prompt, context, strict=False)

        if is_low_information_plan(prompt, plans):
            try:
                parent_title, questions, plans = self._request_plan(prompt, context, strict=True)
            except Exception as e:
                log.warning("[GOAL] Strict planning retry failed: %s", e)
                plans = build_heuristic_child_plans(prompt)

        if self._request_clarifications and not questions:
            try:
                questions = self._ask_clarifications(prompt, context)
            except Exception as e:
                log.warning("[GOAL] Clarification question generation failed: %s", e)

        return parent_title, questions, plans

    def materialize_plan(
        self,
        project_id: str,
        prompt: str,
        plans: list[GoalPlanNode],
        parent_title: str = "",
        questions=(),
    ) -> tuple[Goal, list[Goal]]:
        """Create the parent goal and its child tree, each moved draft -> planned."""
        parent = self.create_goal(project_id, prompt, title=parent_title or None, extra_questions=questions)
        self._persist(self._apply_state(parent, GoalState.PLANNED, None))

        created: list[Goal] = []

        def _create(nodes: list[GoalPlanNode], parent_id: str) -> None:
            for node in nodes:
                child = self.create_goal(
                    project_id, node.prompt, title=node.title,
                    parent_goal_id=parent_id, branch_name=parent.branch_name,
                )
                self._persist(self._apply_state(child, GoalState.PLANNED, None))
                created.append(child)
                _create(node.children, child.id)

        _create(plans, parent.id)
        return parent, created

    async def plan_goal(self, project_id: str, prompt: str) -> tuple[Goal, list[Goal]]:
        if not project_id:
            raise ValueError("project_id is required")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt is required")

        loop = asyncio.get_running_loop()
        parent_title, questions, plans = await loop.run_in_executor(
            None, self.build_plan, str(project_id), prompt,
        )
        parent, children = self.materialize_plan(project_id, prompt, plans, parent_title, questions)
        log.info("[GOAL] Planned %s with %d child goal(s)", parent.id, len(children))
        return parent, children

    def executable_steps(self, parent: Goal) -> list[Goal]:
        """Leaf goals below `parent` in depth-first order; the parent itself if it has none."""
        leaves: list[Goal] = []

        def _walk(goal: Goal) -> None:
            kids = self.children_of(goal.id)
            if not kids:
                leaves.append(goal)
                return
            for kid in kids:
                _walk(kid)

        _walk(parent)
        return leaves
