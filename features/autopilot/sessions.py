"""
Autopilot engine — drives one prompt through planning, step execution and the
test gate, with one background driver task per session.

The driver is cooperative: cancel and pause requests are flags it checks
between steps. An in-flight step (LLM call, test job) is never interrupted;
it is abandoned once it returns.

Every mutation of a session (driver progress, user messages, control actions)
runs under that session's lock from utils.locks.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import config
from features.autopilot import db as autopilot_db
from features.autopilot.events import build_step_snapshot, pending_steps
from features.autopilot.models import (
    AutopilotEvent,
    AutopilotSession,
    EventType,
    SessionReply,
    SessionStatus,
)
from features.goals import Goal, GoalService, GoalState
from features.goals.lifecycle import GoalStateError, is_terminal
from features.testing.models import RateLimited, TestRunStatus
from utils.db import is_ready, write_through_async
from utils.llm import generate_response
from utils.locks import KeyedLocks

log = logging.getLogger(__name__)

CONTROL_ACTIONS = ("cancel", "pause", "resume")
DEFAULT_RESUME_LIMIT = config.AUTOPILOT_RESUME_LIMIT

STEP_SYSTEM_PROMPT = (
    "You are the implementation agent for one step of a larger coding goal. "
    "Describe the concrete file changes this step needs: which files to touch, "
    "what to add or change in each, and which tests prove it. Be brief and specific."
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def format_plan_summary(prompt: str, steps: list[str]) -> str:
    goal = (prompt or "").strip()
    title = f"Plan for: {goal}" if goal else "Plan"
    lines = [f"{idx}. {step}" for idx, step in enumerate(steps, start=1)]
    return "\n".join([title, *lines])


class SessionCancelled(Exception):
    """A cancel request was observed at a checkpoint."""


class VerificationFailed(RuntimeError):
    pass


@dataclass
class _Control:
    cancel_requested: bool = False
    pause_requested: bool = False
    awaiting_answer: str | None = None
    updates: list[dict] = field(default_factory=list)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


StepExecutor = Callable[[AutopilotSession, Goal], Awaitable[Any]]
Verifier = Callable[[AutopilotSession, Goal], Awaitable[dict]]


# ── Collaborators ─────────────────────────────────────────────────────

class LlmStepExecutor:
    """Default step executor: asks the model for an implementation note."""

    def __init__(self, llm: Callable[..., str] = generate_response):
        self._llm = llm

    def _describe(self, goal: Goal) -> str:
        lines = [f"Step: {goal.prompt}"]
        if goal.metadata.acceptance_criteria:
            lines.append("Acceptance criteria:")
            lines.extend(f"- {c}" for c in goal.metadata.acceptance_criteria)
        for answer in goal.metadata.extra.get("answers") or []:
            lines.append(f"User answer: {answer}")
        text = self._llm(
            [
                {"role": "system", "content": STEP_SYSTEM_PROMPT},
                {"role": "user", "content": "\n".join(lines)},
            ],
            max_tokens=800,
            temperature=0.2,
        )
        return (text or "").strip()[:4000]

    async def __call__(self, session: AutopilotSession, goal: Goal) -> dict:
        loop = asyncio.get_running_loop()
        note = await loop.run_in_executor(None, self._describe, goal)
        return {"note": note}


class GateVerifier:
    """Runs the test/coverage gate on the goal's branch; waits out rate limiting."""

    def __init__(self, orchestrator, sleep=asyncio.sleep, max_attempts: int = 3):
        self.orchestrator = orchestrator
        self._sleep = sleep
        self.max_attempts = max_attempts

    async def __call__(self, session: AutopilotSession, goal: Goal) -> dict:
        for _ in range(self.max_attempts):
            try:
                outcome = await self.orchestrator.request_test_run(
                    goal.project_id, goal.branch_name, scope="changed", source="automation",
                )
            except (LookupError, ValueError) as e:
                log.warning("[AUTOPILOT] Verification for %s could not run: %s", goal.id, e)
                return {"passed": False, "reason": str(e)}
            if isinstance(outcome, RateLimited):
                await self._sleep(outcome.retry_after_seconds)
                continue
            return {
                "passed": outcome.status == TestRunStatus.PASSED,
                "testRunId": outcome.id,
                "error": outcome.error,
            }
        return {"passed": False, "reason": "rate-limited"}


# ── Engine ────────────────────────────────────────────────────────────

def _session_from_row(row: dict) -> AutopilotSession:
    return AutopilotSession(
        id=row["id"],
        project_id=row["project_id"],
        prompt=row["prompt"],
        status=SessionStatus(row["status"]),
        status_message=row.get("status_message") or "",
        ui_session_id=row.get("ui_session_id"),
        options=dict(row.get("options") or {}),
        events=[AutopilotEvent.from_dict(e) for e in row.get("events") or []],
        messages=list(row.get("messages") or []),
        result=row.get("result"),
        error=row.get("error"),
        created_at=_iso(row.get("created_at")) or _now(),
        updated_at=_iso(row.get("updated_at")) or _now(),
        started_at=_iso(row.get("started_at")),
        finished_at=_iso(row.get("finished_at")),
    )


class AutopilotEngine:
    def __init__(
        self,
        goals: GoalService,
        step_executor: StepExecutor | None = None,
        verifier: Verifier | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self.goals = goals
        self._execute_step = step_executor or LlmStepExecutor()
        self._verify = verifier
        self._new_id = id_factory or (lambda: f"ap-{uuid.uuid4().hex[:10]}")
        self._sessions: dict[str, AutopilotSession] = {}
        self._controls: dict[str, _Control] = {}
        self._locks = KeyedLocks()

    # ── Lookup ────────────────────────────────────────────────────────

    def get_session(self, session_id: str) -> AutopilotSession | None:
        session = self._sessions.get(str(session_id or ""))
        if session is None and is_ready():
            try:
                row = autopilot_db.get_session(str(session_id))
            except Exception as e:
                log.warning("[AUTOPILOT] Could not load session %s: %s", session_id, e)
                row = None
            if row:
                session = self._sessions[row["id"]] = _session_from_row(row)
        return session

    def _require(self, session_id: str) -> AutopilotSession:
        session = self.get_session(session_id)
        if session is None:
            raise LookupError(f"Autopilot session not found: {session_id}")
        return session

    def _control(self, session: AutopilotSession) -> _Control:
        ctl = self._controls.get(session.id)
        if ctl is None:
            ctl = self._controls[session.id] = _Control(pause_requested=session.status == SessionStatus.PAUSED)
        return ctl

    def is_driving(self, session_id: str) -> bool:
        ctl = self._controls.get(session_id)
        return bool(ctl and ctl.running)

    def status_snapshot(self, session_id: str) -> dict | None:
        """Full session including its event log and the derived step progress."""
        session = self.get_session(session_id)
        if session is None:
            return None
        data = session.to_dict()
        data["steps"] = build_step_snapshot(session.events).to_dict()
        data["active"] = not session.is_terminal
        return data

    # ── Persistence / mutation helpers ────────────────────────────────

    async def _persist(self, session: AutopilotSession) -> None:
        await write_through_async(f"autopilot session {session.id}", autopilot_db.upsert_session, session.to_dict())

    async def _emit(
        self,
        session: AutopilotSession,
        event_type: EventType,
        message: str,
        payload: dict | None = None,
        status_message: str | None = None,
    ) -> None:
        async with self._locks.holding(session.id):
            session.append_event(event_type, message, payload)
            if status_message:
                session.status_message = status_message
            await self._persist(session)

    async def _transition(self, session: AutopilotSession, status: SessionStatus, message: str | None = None) -> None:
        async with self._locks.holding(session.id):
            if session.is_terminal or session.status == status:
                return
            previous = session.status
            session.move_to(status, message)
            await self._persist(session)
        log.info("[AUTOPILOT] %s: %s -> %s", session.id, previous.value, status.value)

    async def _finish(self, session: AutopilotSession, status: SessionStatus, message: str, result=None, error=None) -> None:
        async with self._locks.holding(session.id):
            if session.is_terminal:
                return
            if session.status == SessionStatus.PAUSED and status == SessionStatus.COMPLETED:
                session.move_to(SessionStatus.RUNNING)
            session.move_to(status, message)
            session.result = result
            session.error = error
            await self._persist(session)
        log.info("[AUTOPILOT] Session %s %s: %s", session.id, status.value, message)

    # ── Public operations ─────────────────────────────────────────────

    async def create(
        self,
        project_id,
        prompt: str,
        ui_session_id: str | None = None,
        options: dict | None = None,
    ) -> AutopilotSession:
        """Store a pending session and start its driver."""
        if not project_id:
            raise ValueError("project_id is required")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt is required")
        ui = ui_session_id.strip() if isinstance(ui_session_id, str) else ""

        session = AutopilotSession(
            id=self._new_id(),
            project_id=str(project_id),
            prompt=prompt.strip(),
            ui_session_id=ui or None,
            options=dict(options) if isinstance(options, dict) else {},
        )
        self._sessions[session.id] = session
        await self._persist(session)
        log.info("[AUTOPILOT] Created session %s for project %s", session.id, session.project_id)
        self._start_driver(session)
        return session

    async def advance_step(self, session_id: str, step_prompt: str, executor: Callable[[], Awaitable[Any]], goal_id: str | None = None):
        """Bracket one step with step:start / step:done around `executor()`."""
        session = self._require(session_id)
        prompt = step_prompt.strip() if isinstance(step_prompt, str) else ""
        if not prompt:
            raise ValueError("step_prompt is required")

        await self._emit(session, EventType.STEP_START, f"Step started: {prompt}", {"prompt": prompt, "goalId": goal_id}, status_message=prompt)
        result = await executor()
        await self._emit(
            session, EventType.STEP_DONE, f"Step completed: {prompt}",
            {"prompt": prompt, "goalId": goal_id, "result": result},
        )
        return result

    async def send_message(self, session_id: str, text: str, kind: str | None = None, metadata: dict | None = None) -> SessionReply:
        """
        Inject user input into a running session.

        Kinds pause/resume/cancel are routed to control(). Anything else is an
        answer while the session waits on clarifying questions, otherwise extra
        guidance that becomes a new step. Absent or finished sessions get a
        not-accepted reply, never an exception.
        """
        kind = kind.strip().lower() if isinstance(kind, str) and kind.strip() else None
        text = text.strip() if isinstance(text, str) else ""
        session = self.get_session(session_id)
        if session is None:
            return SessionReply(None, False, "Session not found")
        if kind in CONTROL_ACTIONS:
            return await self.control(session_id, kind, message=text)

        ctl = self._control(session)
        async with self._locks.holding(session.id):
            if session.is_terminal:
                return SessionReply(session, False, f"Session is already {session.status.value}")
            if not text:
                return SessionReply(session, False, "Message is empty")
            ctl.updates.append({
                "kind": kind,
                "text": text,
                "metadata": dict(metadata) if isinstance(metadata, dict) else None,
            })
            session.messages.append({"at": _now(), "kind": kind, "message": text})
            session.append_event(EventType.MESSAGE, text, {"role": "user", "kind": kind})
            await self._persist(session)
            ctl.wake.set()

        note = "Answer received" if ctl.awaiting_answer else "Message queued"
        return SessionReply(session, True, note)

    async def control(self, session_id: str, action: str, message: str | None = None) -> SessionReply:
        action = action.strip().lower() if isinstance(action, str) else ""
        session = self.get_session(session_id)
        if session is None:
            return SessionReply(None, False, "Session not found")
        if action not in CONTROL_ACTIONS:
            return SessionReply(session, False, f"Unsupported action: {action or 'none'}")

        ctl = self._control(session)
        async with self._locks.holding(session.id):
            if session.is_terminal:
                return SessionReply(session, False, f"Session is already {session.status.value}")
            if message:
                session.messages.append({"at": _now(), "kind": action, "message": message})

            if action == "cancel":
                ctl.cancel_requested = True
                if ctl.running:
                    session.status_message = "Cancellation requested"
                    note = "Cancellation requested"
                else:
                    session.move_to(SessionStatus.CANCELLED, "Cancelled")
                    note = "Cancelled"
            elif action == "pause":
                ctl.pause_requested = True
                if session.status == SessionStatus.RUNNING:
                    session.move_to(SessionStatus.PAUSED, "Paused")
                    note = "Paused"
                else:
                    note = "Pause requested"
            else:
                ctl.pause_requested = False
                if session.status == SessionStatus.PAUSED:
                    session.move_to(SessionStatus.RUNNING, "Resumed")
                note = "Resumed"

            session.append_event(EventType.CONTROL, action, {"action": action})
            await self._persist(session)
            ctl.wake.set()

        log.info("[AUTOPILOT] %s: %s (%s)", session.id, action, note)
        if action == "resume" and not session.is_terminal and not ctl.running:
            self._start_driver(session)
        return SessionReply(session, True, note)

    async def resume_sessions(self, project_id, ui_session_id: str, limit=DEFAULT_RESUME_LIMIT) -> list[AutopilotSession]:
        """Most recent active sessions tied to a client's UI session id; restarts idle drivers."""
        if not project_id:
            raise ValueError("project_id is required")
        ui = ui_session_id.strip() if isinstance(ui_session_id, str) else ""
        if not ui:
            raise ValueError("ui_session_id is required")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            limit = DEFAULT_RESUME_LIMIT

        self._hydrate_active(str(project_id), ui, limit)
        candidates = sorted(
            (
                s for s in self._sessions.values()
                if s.project_id == str(project_id) and s.ui_session_id == ui and not s.is_terminal
            ),
            key=lambda s: s.created_at,
            reverse=True,
        )[:limit]

        for session in candidates:
            if not self._control(session).running:
                log.info("[AUTOPILOT] Restarting driver for %s", session.id)
                self._start_driver(session)
        return candidates

    def _hydrate_active(self, project_id: str, ui_session_id: str, limit: int) -> None:
        if not is_ready():
            return
        try:
            rows = autopilot_db.list_active_sessions(project_id, ui_session_id, limit)
        except Exception as e:
            log.warning("[AUTOPILOT] Could not load active sessions: %s", e)
            return
        for row in rows:
            if row["id"] not in self._sessions:
                self._sessions[row["id"]] = _session_from_row(row)

    async def join(self, session_id: str, timeout: float | None = None) -> AutopilotSession:
        """Wait for a session's driver to finish (tests and shutdown)."""
        session = self._require(session_id)
        ctl = self._controls.get(session.id)
        if ctl and ctl.task:
            await asyncio.wait_for(asyncio.shield(ctl.task), timeout)
        return session

    async def shutdown(self) -> None:
        tasks = [c.task for c in self._controls.values() if c.running]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Driver ────────────────────────────────────────────────────────

    def _start_driver(self, session: AutopilotSession) -> asyncio.Task:
        ctl = self._control(session)
        if not ctl.running:
            ctl.task = asyncio.create_task(self._drive(session), name=f"autopilot-{session.id}")
        return ctl.task

    async def _wait_for(self, session: AutopilotSession, take: Callable[[], Any]):
        """Block until `take()` returns something; raises SessionCancelled on cancel."""
        ctl = self._control(session)
        while True:
            if ctl.cancel_requested:
                raise SessionCancelled()
            value = take()
            if value is not None:
                return value
            ctl.wake.clear()
            await ctl.wake.wait()

    async def _checkpoint(self, session: AutopilotSession) -> None:
        ctl = self._control(session)
        if ctl.pause_requested and session.status == SessionStatus.RUNNING:
            await self._transition(session, SessionStatus.PAUSED, "Paused")
        await self._wait_for(session, lambda: True if not ctl.pause_requested else None)
        if session.status == SessionStatus.PAUSED:
            await self._transition(session, SessionStatus.RUNNING, "Running")

    async def _drive(self, session: AutopilotSession) -> None:
        try:
            if session.status == SessionStatus.PENDING:
                await self._transition(session, SessionStatus.RUNNING, "Planning")
            await self._checkpoint(session)
            plan = self._plan_payload(session) or await self._plan(session)
            result = await self._run_plan(session, plan)
        except SessionCancelled:
            await self._abandon_goals(session)
            await self._finish(session, SessionStatus.CANCELLED, "Cancelled")
        except asyncio.CancelledError:
            log.info("[AUTOPILOT] Driver for %s stopped", session.id)
            raise
        except Exception as e:
            log.error("[AUTOPILOT] Session %s failed: %s", session.id, e)
            message = str(e) or type(e).__name__
            await self._finish(session, SessionStatus.FAILED, message, error=message)
        else:
            await self._finish(session, SessionStatus.COMPLETED, "Completed successfully", result=result)

    @staticmethod
    def _plan_payload(session: AutopilotSession) -> dict | None:
        for event in session.events:
            if event.type == EventType.PLAN and event.payload.get("goalId"):
                return event.payload
        return None

    async def _plan(self, session: AutopilotSession) -> dict:
        parent, children = await self.goals.plan_goal(session.project_id, session.prompt)
        steps = self.goals.executable_steps(parent)
        prompts = [g.prompt for g in steps]
        payload = {
            "prompt": session.prompt,
            "goalId": parent.id,
            "branchName": parent.branch_name,
            "steps": prompts,
            "stepGoals": [{"prompt": g.prompt, "goalId": g.id} for g in steps],
            "questions": list(parent.metadata.clarifying_questions),
            "summary": format_plan_summary(session.prompt, prompts),
        }
        await self._emit(session, EventType.PLAN, f"Planned {len(steps)} step(s)", payload)
        log.info("[AUTOPILOT] %s planned goal %s with %d step(s)", session.id, parent.id, len(steps))
        return payload

    def _goal(self, goal_id: str) -> Goal:
        goal = self.goals.get_goal(goal_id)
        if goal is None:
            raise LookupError(f"Goal not found: {goal_id}")
        return goal

    async def _run_plan(self, session: AutopilotSession, plan: dict) -> dict:
        parent = self._goal(plan["goalId"])
        if parent.state in (GoalState.PLANNED, GoalState.FAILED):
            await self.goals.advance_goal_state(parent.id, GoalState.EXECUTING)
        if parent.state in (GoalState.EXECUTING, GoalState.NEEDS_USER_INPUT):
            await self._await_answers(session, parent)

        while True:
            await self._checkpoint(session)
            await self._absorb_updates(session, parent)
            remaining = pending_steps(session.events)
            if not remaining:
                break
            step = remaining[0]
            goal = self._goal(step.goal_id) if step.goal_id else await self._add_step_goal(session, parent, step.prompt)
            await self._run_step(session, parent, goal, step.prompt)

        await self._checkpoint(session)
        verification = await self._verify_goal(session, parent)
        return {
            "goalId": parent.id,
            "branchName": parent.branch_name,
            "steps": list(build_step_snapshot(session.events).planned),
            "verification": verification,
        }

    async def _await_answers(self, session: AutopilotSession, goal: Goal) -> None:
        """Hold the goal in needs-user-input until the user answers its questions."""
        questions = goal.metadata.clarifying_questions
        if not questions or goal.metadata.extra.get("answers"):
            if goal.state == GoalState.NEEDS_USER_INPUT:
                await self.goals.advance_goal_state(goal.id, GoalState.EXECUTING)
            return

        if goal.state != GoalState.NEEDS_USER_INPUT:
            await self.goals.advance_goal_state(goal.id, GoalState.NEEDS_USER_INPUT)
        ctl = self._control(session)
        ctl.awaiting_answer = goal.id
        await self._emit(
            session, EventType.MESSAGE, "\n".join(questions),
            {"role": "autopilot", "goalId": goal.id, "questions": list(questions)},
            status_message="Waiting for answers to clarifying questions",
        )
        log.info("[AUTOPILOT] %s waiting on %d question(s) for %s", session.id, len(questions), goal.id)

        def take():
            return ctl.updates.pop(0) if ctl.updates else None

        try:
            update = await self._wait_for(session, take)
        finally:
            ctl.awaiting_answer = None
        await self.goals.answer_questions(goal.id, update["text"])
        await self.goals.advance_goal_state(goal.id, GoalState.EXECUTING)

    async def _absorb_updates(self, session: AutopilotSession, parent: Goal) -> None:
        """Late answers are recorded on the goal; other messages become extra steps."""
        ctl = self._control(session)
        updates, ctl.updates = ctl.updates, []
        added = []
        for update in updates:
            if update["kind"] == "answer":
                await self.goals.answer_questions(parent.id, update["text"])
            else:
                added.append(update["text"])
        if not added:
            return

        goals = []
        for text in added:
            goal = self.goals.create_goal(parent.project_id, text, parent_goal_id=parent.id, branch_name=parent.branch_name)
            await self.goals.advance_goal_state(goal.id, GoalState.PLANNED)
            goals.append(goal)
        await self._emit(
            session, EventType.PLAN, f"Plan updated with {len(goals)} step(s)",
            {"addedPrompts": [g.prompt for g in goals], "stepGoals": [{"prompt": g.prompt, "goalId": g.id} for g in goals]},
        )

    async def _add_step_goal(self, session: AutopilotSession, parent: Goal, prompt: str) -> Goal:
        goal = self.goals.create_goal(parent.project_id, prompt, parent_goal_id=parent.id, branch_name=parent.branch_name)
        await self.goals.advance_goal_state(goal.id, GoalState.PLANNED)
        return goal

    async def _run_step(self, session: AutopilotSession, parent: Goal, goal: Goal, prompt: str) -> None:
        own_goal = goal.id != parent.id
        if own_goal and goal.state in (GoalState.PLANNED, GoalState.FAILED):
            await self.goals.advance_goal_state(goal.id, GoalState.EXECUTING)

        try:
            await self.advance_step(session.id, prompt, lambda: self._execute_step(session, goal), goal_id=goal.id)
        except Exception as e:
            if own_goal:
                await self.goals.advance_goal_state(goal.id, GoalState.FAILED, {"error": str(e)})
            raise

        # Step goals wait in verifying until the root goal's gate settles them.
        if own_goal and goal.state == GoalState.EXECUTING:
            await self.goals.advance_goal_state(goal.id, GoalState.VERIFYING)

    async def _settle_children(self, parent: Goal, verification: dict) -> None:
        """Move every goal below `parent` to the gate's outcome."""
        target = GoalState.READY_TO_MERGE if verification.get("passed") else GoalState.FAILED
        for goal in self.goals.descendants(parent.id):
            if goal.state == GoalState.PLANNED and self.goals.children_of(goal.id):
                # Grouping goals never run a step of their own.
                await self.goals.advance_goal_state(goal.id, GoalState.EXECUTING)
            if goal.state == GoalState.EXECUTING:
                await self.goals.advance_goal_state(goal.id, GoalState.VERIFYING)
            if goal.state == GoalState.VERIFYING:
                await self.goals.advance_goal_state(goal.id, target, {"verification": verification})

    async def _verify_goal(self, session: AutopilotSession, parent: Goal) -> dict:
        if parent.state == GoalState.READY_TO_MERGE:
            verification = parent.metadata.extra.get("verification") or {"passed": True}
            await self._settle_children(parent, verification)
            return verification
        if parent.state == GoalState.EXECUTING:
            await self.goals.advance_goal_state(parent.id, GoalState.VERIFYING)
        if self._verify is None:
            verification = {"passed": True, "skipped": True}
        else:
            await self._emit(session, EventType.MESSAGE, "Running tests", {"role": "autopilot"}, status_message="Verifying")
            verification = await self._verify(session, parent)

        await self._settle_children(parent, verification)
        if verification.get("passed"):
            await self.goals.advance_goal_state(parent.id, GoalState.READY_TO_MERGE, {"verification": verification})
            return verification

        await self.goals.advance_goal_state(parent.id, GoalState.FAILED, {"verification": verification})
        reason = verification.get("error") or verification.get("reason") or "tests did not pass"
        raise VerificationFailed(f"Verification failed: {reason}")

    async def _abandon_goals(self, session: AutopilotSession) -> None:
        plan = self._plan_payload(session)
        if not plan:
            return
        root = self.goals.get_goal(plan["goalId"])
        if root is None:
            return
        for goal in [root, *self.goals.descendants(root.id)]:
            if is_terminal(goal.state) or goal.state == GoalState.READY_TO_MERGE:
                continue
            try:
                await self.goals.advance_goal_state(goal.id, GoalState.CANCELLED)
            except GoalStateError as e:
                log.warning("[AUTOPILOT] Could not cancel goal %s: %s", goal.id, e)
