"""
Goals feature — units of requested work, their lifecycle and planning.

Public API:
    from features.goals import GoalService, Goal, GoalState
    from features.goals import assert_transition, allowed_transitions
    from features.goals import db as goal_db
"""

from features.goals.lifecycle import (
    GoalStateError,
    InvalidTransition,
    UnknownState,
    allowed_transitions,
    assert_transition,
)
from features.goals.models import Goal, GoalMetadata, GoalPlanNode, GoalState
from features.goals.service import GoalService, PlanningError

__all__ = [
    "Goal",
    "GoalMetadata",
    "GoalPlanNode",
    "GoalService",
    "GoalState",
    "GoalStateError",
    "InvalidTransition",
    "PlanningError",
    "UnknownState",
    "allowed_transitions",
    "assert_transition",
]
