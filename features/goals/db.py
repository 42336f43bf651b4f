"""
Postgres backing store for goals.

Tables:
  agent_goals  — one row per goal; parent_goal_id links meta-goals to children

Every state change goes through GoalService, which writes through here.
"""

from __future__ import annotations

import logging

from utils.db import get_cursor, jsonb

log = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agent_goals (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    parent_goal_id  TEXT REFERENCES agent_goals(id) ON DELETE CASCADE,
    prompt          TEXT NOT NULL,
    title           TEXT NOT NULL,
    branch_name     TEXT NOT NULL,
    state           TEXT NOT NULL DEFAULT 'draft',
    metadata        JSONB DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ DEFAULT now(),
    updated_at      TIMESTAMPTZ DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_agent_goals_project ON agent_goals(project_id);
CREATE INDEX IF NOT EXISTS idx_agent_goals_parent ON agent_goals(parent_goal_id);
"""


def upsert_goal(goal: dict) -> None:
    """Insert or update a goal row (goal is Goal.to_dict())."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO agent_goals (
                id, project_id, parent_goal_id, prompt, title, branch_name,
                state, metadata, created_at, updated_at
            ) VALUES (
                %(id)s, %(project_id)s, %(parent_goal_id)s, %(prompt)s, %(title)s,
                %(branch_name)s, %(state)s, %(metadata)s, %(created_at)s, %(updated_at)s
            )
            ON CONFLICT (id) DO UPDATE SET
                title = EXCLUDED.title,
                state = EXCLUDED.state,
                metadata = EXCLUDED.metadata,
                updated_at = EXCLUDED.updated_at
        """, {
            "id": goal["id"],
            "project_id": goal["projectId"],
            "parent_goal_id": goal.get("parentGoalId"),
            "prompt": goal["prompt"],
            "title": goal["title"],
            "branch_name": goal["branchName"],
            "state": goal["state"],
            "metadata": jsonb(goal.get("metadata") or {}),
            "created_at": goal.get("createdAt"),
            "updated_at": goal.get("updatedAt"),
        })


def get_goal(goal_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute("SELECT * FROM agent_goals WHERE id = %s", (goal_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_goals(project_id: str) -> list[dict]:
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM agent_goals WHERE project_id = %s ORDER BY created_at ASC",
            (project_id,),
        )
        return [dict(row) for row in cur.fetchall()]
