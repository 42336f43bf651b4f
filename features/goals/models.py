"""
Data models for the goals feature.

Goal is the persisted unit of requested work; GoalPlanNode is the transient
tree produced by planning and consumed right away to materialize goals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class GoalState(str, Enum):
    DRAFT = "draft"
    PLANNED = "planned"
    EXECUTING = "executing"
    NEEDS_USER_INPUT = "needs-user-input"
    VERIFYING = "verifying"
    READY_TO_MERGE = "ready-to-merge"
    MERGED = "merged"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class GoalMetadata:
    acceptance_criteria: list[str] = field(default_factory=list)
    clarifying_questions: list[str] = field(default_factory=list)
    style_only: bool = False
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "acceptanceCriteria": list(self.acceptance_criteria),
            "clarifyingQuestions": list(self.clarifying_questions),
            "styleOnly": self.style_only,
            **self.extra,
        }


@dataclass
class Goal:
    """A unit of requested work owned by a project."""
    id: str
    project_id: str
    prompt: str
    title: str
    branch_name: str
    state: GoalState = GoalState.DRAFT
    parent_goal_id: str | None = None
    metadata: GoalMetadata = field(default_factory=GoalMetadata)
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "parentGoalId": self.parent_goal_id,
            "prompt": self.prompt,
            "title": self.title,
            "branchName": self.branch_name,
            "state": self.state.value,
            "metadata": self.metadata.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class GoalPlanNode:
    prompt: str
    title: str
    children: list["GoalPlanNode"] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "prompt": self.prompt,
            "title": self.title,
            "children": [c.to_dict() for c in self.children],
        }


# Plan input after defensive parsing: a tagged union of leaves and nodes.

@dataclass(frozen=True)
class PlanLeaf:
    prompt: str


@dataclass(frozen=True)
class PlanNode:
    prompt: str
    title: str | None = None
    children: tuple = ()


PlanEntry = PlanLeaf | PlanNode
