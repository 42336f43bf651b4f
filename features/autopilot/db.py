"""
Postgres backing store for autopilot sessions.

Tables:
  autopilot_sessions  — one row per session; events/messages are JSONB arrays
                        rewritten on each persisted mutation
"""

from __future__ import annotations

from utils.db import get_cursor, jsonb

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS autopilot_sessions (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    prompt          TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending',
    status_message  TEXT,
    ui_session_id   TEXT,
    options         JSONB DEFAULT '{}'::jsonb,
    events          JSONB DEFAULT '[]'::jsonb,
    messages        JSONB DEFAULT '[]'::jsonb,
    result          JSONB,
    error           TEXT,
    created_at      TIMESTAMPTZ DEFAULT now(),
    updated_at      TIMESTAMPTZ DEFAULT now(),
    started_at      TIMESTAMPTZ,
    finished_at     TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_autopilot_sessions_ui
    ON autopilot_sessions(project_id, ui_session_id, status);
"""


def upsert_session(session: dict) -> None:
    """session is AutopilotSession.to_dict()."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO autopilot_sessions (
                id, project_id, prompt, status, status_message, ui_session_id, options,
                events, messages, result, error, created_at, updated_at, started_at, finished_at
            ) VALUES (
                %(id)s, %(project_id)s, %(prompt)s, %(status)s, %(status_message)s,
                %(ui_session_id)s, %(options)s, %(events)s, %(messages)s, %(result)s,
                %(error)s, %(created_at)s, %(updated_at)s, %(started_at)s, %(finished_at)s
            )
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                status_message = EXCLUDED.status_message,
                events = EXCLUDED.events,
                messages = EXCLUDED.messages,
                result = EXCLUDED.result,
                error = EXCLUDED.error,
                updated_at = EXCLUDED.updated_at,
                started_at = EXCLUDED.started_at,
                finished_at = EXCLUDED.finished_at
        """, {
            "id": session["id"],
            "project_id": session["projectId"],
            "prompt": session["prompt"],
            "status": session["status"],
            "status_message": session.get("statusMessage"),
            "ui_session_id": session.get("uiSessionId"),
            "options": jsonb(session.get("options") or {}),
            "events": jsonb(session.get("events") or []),
            "messages": jsonb(session.get("messages") or []),
            "result": jsonb(session.get("result")),
            "error": session.get("error"),
            "created_at": session.get("createdAt"),
            "updated_at": session.get("updatedAt"),
            "started_at": session.get("startedAt"),
            "finished_at": session.get("finishedAt"),
        })


def get_session(session_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute("SELECT * FROM autopilot_sessions WHERE id = %s", (session_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_active_sessions(project_id: str, ui_session_id: str, limit: int = 5) -> list[dict]:
    with get_cursor() as cur:
        cur.execute("""
            SELECT * FROM autopilot_sessions
            WHERE project_id = %s AND ui_session_id = %s
              AND status IN ('pending', 'running', 'paused')
            ORDER BY created_at DESC
            LIMIT %s
        """, (project_id, ui_session_id, limit))
        return [dict(row) for row in cur.fetchall()]
