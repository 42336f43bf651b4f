"""
FastAPI application — REST API for the autopilot orchestrator.

Endpoints:
  GET  /health                                        — Health check
  POST /projects/{id}/goals                           — Create a goal
  POST /projects/{id}/goals/plan                      — Plan a prompt into a goal tree
  GET  /projects/{id}/goals                           — Goal tree of a project
  GET  /goals/{goal_id}                               — One goal + allowed transitions
  POST /goals/{goal_id}/state                         — Validated state change
  POST /goals/{goal_id}/answers                       — Answer clarifying questions
  POST /projects/{id}/autopilot                       — Start an autopilot session
  POST /projects/{id}/autopilot/resume                — Resume sessions for a UI session id
  GET  /projects/{id}/autopilot/{sid}                 — Session snapshot
  POST /projects/{id}/autopilot/{sid}/message         — Guidance / answers / pause-resume
  POST /projects/{id}/autopilot/{sid}/control         — cancel | pause | resume
  POST /projects/{id}/jobs                            — Start a workspace test job
  GET  /jobs/{job_id}                                 — Job status
  POST /projects/{id}/tests/run                       — Rate-limited gated test run
  GET  /tests/runs/{run_id}                           — Test run
  POST /projects/{id}/branches/{name}/proof           — Record job proof for a branch
  POST /projects/{id}/branches/{name}/staged          — Sync automated staged paths
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from temporalio.client import Client

import config
from activities.jobs import LocalJobRunner, default_runner
from activities.test_run import build_test_command
from features.autopilot import AutopilotEngine, GateVerifier
from features.autopilot import db as autopilot_db
from features.goals import GoalService, GoalStateError, UnknownState, allowed_transitions
from features.goals import db as goal_db
from features.testing import RateLimited, TestGateContext, TestRunImmutable
from features.testing import db as test_db
from features.testing.executors import TemporalWorkspaceExecutor
from features.testing.gate import TestGateOrchestrator
from features.testing.settings import load_global_settings, project_settings_loader
from utils.db import init_schema, is_ready
from utils.llm import generate_response
from utils.repo_scanner import discover_workspaces, resolve_project_path

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


# ── Service wiring ────────────────────────────────────────────────────

@dataclass
class Services:
    goals: GoalService
    gate: TestGateOrchestrator
    engine: AutopilotEngine
    jobs: LocalJobRunner
    projects_root: Path

    def project_path(self, project_id) -> Path:
        return resolve_project_path(self.projects_root, project_id)


def _project_context(projects_root: Path):
    def describe(project_id: str) -> str:
        path = resolve_project_path(projects_root, project_id)
        if not path.is_dir():
            return ""
        workspaces = discover_workspaces(path)
        return "Workspaces: " + ", ".join(f"{w.name} ({w.kind.value})" for w in workspaces)
    return describe


def build_services(
    projects_root: Path | str = config.PROJECTS_ROOT,
    llm=generate_response,
    job_runner: LocalJobRunner | None = None,
    workspace_executor=None,
    step_executor=None,
    context: TestGateContext | None = None,
    changed_paths_provider=None,
) -> Services:
    projects_root = Path(projects_root)
    jobs = job_runner or default_runner()

    def project_path(project_id: str) -> str:
        return str(resolve_project_path(projects_root, project_id))

    goals = GoalService(llm=llm, project_context=_project_context(projects_root))
    gate = TestGateOrchestrator(
        context or TestGateContext(),
        job_runner=jobs,
        workspace_executor=workspace_executor,
        project_path=project_path,
        changed_paths_provider=changed_paths_provider,
        global_settings=load_global_settings,
        project_settings=project_settings_loader(project_path),
    )
    engine = AutopilotEngine(goals, step_executor=step_executor, verifier=GateVerifier(gate))
    return Services(goals=goals, gate=gate, engine=engine, jobs=jobs, projects_root=projects_root)


services = build_services()
temporal_client: Client | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client
    # Initialize Postgres
    try:
        init_schema(goal_db.SCHEMA_SQL, test_db.SCHEMA_SQL, autopilot_db.SCHEMA_SQL)
        log.info("Postgres database initialized")
    except Exception as e:
        log.warning("Could not connect to Postgres: %s (state will be in-memory only)", e)
    # Connect to Temporal
    try:
        temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
        services.gate.executor = TemporalWorkspaceExecutor(temporal_client)
        log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
    except Exception as e:
        log.warning("Could not connect to Temporal: %s (tests will run in-process)", e)
        temporal_client = None
    yield
    await services.engine.shutdown()


app = FastAPI(
    title="Autopilot Orchestrator",
    description="Goal planning, autopilot sessions and a test/coverage merge gate",
    version="1.0.0",
    lifespan=lifespan,
)


# ── Error mapping ─────────────────────────────────────────────────────

def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(LookupError)
async def not_found_handler(request: Request, exc: LookupError):
    return _error(404, exc)


@app.exception_handler(UnknownState)
async def unknown_state_handler(request: Request, exc: UnknownState):
    return _error(400, exc)


@app.exception_handler(GoalStateError)
async def invalid_transition_handler(request: Request, exc: GoalStateError):
    return _error(409, exc)


@app.exception_handler(TestRunImmutable)
async def immutable_run_handler(request: Request, exc: TestRunImmutable):
    return _error(409, exc)


@app.exception_handler(ValueError)
async def bad_request_handler(request: Request, exc: ValueError):
    return _error(400, exc)


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "autopilot",
        "temporal_connected": temporal_client is not None,
        "database_ready": is_ready(),
    }


# ── Goals ─────────────────────────────────────────────────────────────

class GoalCreateRequest(BaseModel):
    prompt: str
    title: str | None = None
    parent_goal_id: str | None = None


class GoalPlanRequest(BaseModel):
    prompt: str


class GoalStateRequest(BaseModel):
    state: str
    metadata: dict | None = None


class GoalAnswerRequest(BaseModel):
    answer: str


def _goal_payload(goal) -> dict:
    data = goal.to_dict()
    data["allowedTransitions"] = allowed_transitions(goal.state)
    return data


@app.post("/projects/{project_id}/goals")
def create_goal(project_id: str, req: GoalCreateRequest):
    goal = services.goals.create_goal(
        project_id, req.prompt, title=req.title, parent_goal_id=req.parent_goal_id,
    )
    return _goal_payload(goal)


@app.post("/projects/{project_id}/goals/plan")
async def plan_goal(project_id: str, req: GoalPlanRequest):
    """Plan a prompt into a parent goal with a child goal tree."""
    parent, children = await services.goals.plan_goal(project_id, req.prompt)
    return {
        "parent": _goal_payload(parent),
        "children": [c.to_dict() for c in children],
        "tree": services.goals.goal_tree(project_id, parent.id),
    }


@app.get("/projects/{project_id}/goals")
def list_goals(project_id: str):
    return {"goals": services.goals.goal_tree(project_id)}


@app.get("/goals/{goal_id}")
def get_goal(goal_id: str):
    goal = services.goals.get_goal(goal_id)
    if goal is None:
        raise HTTPException(status_code=404, detail=f"Goal not found: {goal_id}")
    return _goal_payload(goal)


@app.post("/goals/{goal_id}/state")
async def set_goal_state(goal_id: str, req: GoalStateRequest):
    goal = await services.goals.advance_goal_state(goal_id, req.state, req.metadata)
    return _goal_payload(goal)


@app.post("/goals/{goal_id}/answers")
async def answer_goal(goal_id: str, req: GoalAnswerRequest):
    if not req.answer.strip():
        raise HTTPException(status_code=400, detail="answer is required")
    goal = await services.goals.answer_questions(goal_id, req.answer.strip())
    return _goal_payload(goal)


# ── Autopilot ─────────────────────────────────────────────────────────

class AutopilotStartRequest(BaseModel):
    prompt: str
    ui_session_id: str | None = None
    options: dict | None = None


class AutopilotResumeRequest(BaseModel):
    ui_session_id: str
    limit: int = 1


class AutopilotMessageRequest(BaseModel):
    text: str = ""
    kind: str | None = None
    metadata: dict | None = None


class AutopilotControlRequest(BaseModel):
    action: str


def _owned_session(project_id: str, session_id: str):
    session = services.engine.get_session(session_id)
    if session is None or session.project_id != str(project_id):
        raise HTTPException(status_code=404, detail=f"Autopilot session not found: {session_id}")
    return session


@app.post("/projects/{project_id}/autopilot")
async def start_autopilot(project_id: str, req: AutopilotStartRequest):
    session = await services.engine.create(project_id, req.prompt, req.ui_session_id, req.options)
    return services.engine.status_snapshot(session.id)


@app.post("/projects/{project_id}/autopilot/resume")
async def resume_autopilot(project_id: str, req: AutopilotResumeRequest):
    sessions = await services.engine.resume_sessions(project_id, req.ui_session_id, limit=req.limit)
    return {"success": True, "resumed": [s.to_dict(include_events=False) for s in sessions]}


@app.get("/projects/{project_id}/autopilot/{session_id}")
def get_autopilot(project_id: str, session_id: str):
    _owned_session(project_id, session_id)
    return services.engine.status_snapshot(session_id)


@app.post("/projects/{project_id}/autopilot/{session_id}/message")
async def message_autopilot(project_id: str, session_id: str, req: AutopilotMessageRequest):
    _owned_session(project_id, session_id)
    reply = await services.engine.send_message(session_id, req.text, kind=req.kind, metadata=req.metadata)
    return reply.to_dict()


@app.post("/projects/{project_id}/autopilot/{session_id}/control")
async def control_autopilot(project_id: str, session_id: str, req: AutopilotControlRequest):
    _owned_session(project_id, session_id)
    reply = await services.engine.control(session_id, req.action)
    return reply.to_dict()


# ── Jobs ──────────────────────────────────────────────────────────────

class JobStartRequest(BaseModel):
    type: str = Field(description='"<workspace>:test", e.g. "frontend:test"')


@app.post("/projects/{project_id}/jobs")
def start_job(project_id: str, req: JobStartRequest):
    """Start a workspace's coverage test command as a tracked job."""
    workspace_name, _, kind = req.type.partition(":")
    if kind != "test":
        raise HTTPException(status_code=400, detail=f"Unsupported job type: {req.type}")
    path = services.project_path(project_id)
    if not path.is_dir():
        raise HTTPException(status_code=404, detail=f"Project not found: {project_id}")
    workspace = next((w for w in discover_workspaces(path) if w.name == workspace_name), None)
    if workspace is None:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_name}")
    job = services.jobs.start_job(req.type, project_id, build_test_command(workspace), workspace.cwd)
    return asdict(job)


@app.get("/jobs/{job_id}")
def get_job(job_id: str):
    job = services.jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return asdict(job)


# ── Test gate ─────────────────────────────────────────────────────────

class TestRunRequest(BaseModel):
    branch: str
    scope: str = "all"
    changed_paths: list[str] | None = None
    source: str = "manual"


class ProofRequest(BaseModel):
    frontend_job_id: str | None = None
    backend_job_id: str | None = None
    job_ids: list[str] | None = None
    source: str = "automation"


class StagedPathsRequest(BaseModel):
    paths: list[str] = []


@app.post("/projects/{project_id}/tests/run")
async def run_tests(project_id: str, req: TestRunRequest):
    """Run the gate for a branch; 429 with Retry-After when requested too soon."""
    outcome = await services.gate.request_test_run(
        project_id, req.branch, scope=req.scope, changed_paths=req.changed_paths, source=req.source,
    )
    if isinstance(outcome, RateLimited):
        return JSONResponse(
            status_code=429,
            content=outcome.to_dict(),
            headers={"Retry-After": str(outcome.retry_after_seconds)},
        )
    return outcome.to_dict()


@app.get("/tests/runs/{run_id}")
def get_test_run(run_id: str):
    run = services.gate.get_test_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Test run not found: {run_id}")
    return run.to_dict()


@app.post("/projects/{project_id}/branches/{branch_name:path}/proof")
def record_proof(project_id: str, branch_name: str, req: ProofRequest):
    result = services.gate.record_job_proof(
        project_id,
        branch_name,
        frontend_job_id=req.frontend_job_id,
        backend_job_id=req.backend_job_id,
        job_ids=req.job_ids,
        source=req.source,
    )
    return result.to_dict()


@app.post("/projects/{project_id}/branches/{branch_name:path}/staged")
def sync_staged(project_id: str, branch_name: str, req: StagedPathsRequest):
    changed = services.gate.sync_staged_paths(project_id, branch_name, req.paths)
    return {"changed": changed, "branch": services.gate.get_branch(project_id, branch_name).to_dict()}
