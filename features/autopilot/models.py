"""
Data models for autopilot sessions.

A session's progress is its event log: the current and next step are derived
from it by features.autopilot.events and never stored alongside.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from features.goals.lifecycle import InvalidTransition, UnknownState


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not SESSION_TRANSITIONS[self]


SESSION_TRANSITIONS: dict[SessionStatus, tuple[SessionStatus, ...]] = {
    SessionStatus.PENDING: (SessionStatus.RUNNING, SessionStatus.CANCELLED, SessionStatus.FAILED),
    SessionStatus.RUNNING: (
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    ),
    SessionStatus.PAUSED: (SessionStatus.RUNNING, SessionStatus.CANCELLED, SessionStatus.FAILED),
    SessionStatus.COMPLETED: (),
    SessionStatus.FAILED: (),
    SessionStatus.CANCELLED: (),
}

ACTIVE_STATUSES = frozenset(s for s in SessionStatus if not s.is_terminal)


class InvalidSessionTransition(InvalidTransition):
    def __init__(self, from_state: str, to_state: str):
        super().__init__(from_state, to_state)
        self.args = (f"Invalid session transition from {from_state} to {to_state}",)


def _coerce(status) -> SessionStatus:
    try:
        return SessionStatus(status)
    except ValueError:
        raise UnknownState(status) from None


def assert_session_transition(from_status, to_status) -> None:
    src = _coerce(from_status)
    dst = _coerce(to_status)
    if dst not in SESSION_TRANSITIONS[src]:
        raise InvalidSessionTransition(src.value, dst.value)


class EventType(str, Enum):
    PLAN = "plan"
    STEP_START = "step:start"
    STEP_DONE = "step:done"
    MESSAGE = "message"
    CONTROL = "control"


@dataclass
class AutopilotEvent:
    id: str
    type: EventType
    message: str = ""
    payload: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "message": self.message,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AutopilotEvent":
        return cls(
            id=str(data["id"]),
            type=EventType(data["type"]),
            message=data.get("message") or "",
            payload=dict(data.get("payload") or {}),
            timestamp=data.get("timestamp") or _now(),
        )


@dataclass
class AutopilotSession:
    """A long-running controller driving one prompt through plan, steps and verification."""
    id: str
    project_id: str
    prompt: str
    status: SessionStatus = SessionStatus.PENDING
    status_message: str = "Waiting to start"
    ui_session_id: str | None = None
    options: dict = field(default_factory=dict)
    events: list[AutopilotEvent] = field(default_factory=list)
    messages: list[dict] = field(default_factory=list)
    result: Any = None
    error: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def move_to(self, status: SessionStatus | str, message: str | None = None) -> None:
        assert_session_transition(self.status, status)
        self.status = SessionStatus(status)
        if message:
            self.status_message = message
        now = _now()
        self.updated_at = now
        if self.status == SessionStatus.RUNNING and not self.started_at:
            self.started_at = now
        if self.is_terminal:
            self.finished_at = now

    def append_event(self, type: EventType | str, message: str = "", payload: dict | None = None) -> AutopilotEvent:
        event = AutopilotEvent(
            id=f"{self.id}:event:{len(self.events) + 1}",
            type=EventType(type),
            message=message,
            payload=dict(payload or {}),
        )
        self.events.append(event)
        self.updated_at = event.timestamp
        return event

    def to_dict(self, include_events: bool = True) -> dict:
        data = {
            "id": self.id,
            "projectId": self.project_id,
            "prompt": self.prompt,
            "status": self.status.value,
            "statusMessage": self.status_message,
            "uiSessionId": self.ui_session_id,
            "options": self.options,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "eventCount": len(self.events),
            "messageCount": len(self.messages),
            "messages": list(self.messages),
        }
        if include_events:
            data["events"] = [e.to_dict() for e in self.events]
        return data


@dataclass
class SessionReply:
    """Outcome of a message or control request; never an exception."""
    session: AutopilotSession | None
    accepted: bool
    note: str | None = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "note": self.note,
            "session": self.session.to_dict() if self.session else None,
        }
