"""
Autopilot feature — long-running sessions that plan a prompt into goals,
execute the steps and verify the branch through the test gate.

Public API:
    from features.autopilot import AutopilotEngine, AutopilotSession
    from features.autopilot import build_step_snapshot
    from features.autopilot.poller import AutopilotPoller
"""

from features.autopilot.events import StepSnapshot, build_step_snapshot
from features.autopilot.models import (
    AutopilotEvent,
    AutopilotSession,
    EventType,
    InvalidSessionTransition,
    SessionReply,
    SessionStatus,
    assert_session_transition,
)
from features.autopilot.sessions import AutopilotEngine, GateVerifier, LlmStepExecutor

__all__ = [
    "AutopilotEngine",
    "AutopilotEvent",
    "AutopilotSession",
    "EventType",
    "GateVerifier",
    "InvalidSessionTransition",
    "LlmStepExecutor",
    "SessionReply",
    "SessionStatus",
    "StepSnapshot",
    "assert_session_transition",
    "build_step_snapshot",
]
