"""Shared fixtures and fakes for the orchestrator tests."""

import json
from datetime import datetime, timezone

import pytest

from features.goals import GoalService
from features.testing import TestGateContext
from features.testing.gate import TestGateOrchestrator
from features.testing.models import WorkspaceRunResult
from models.schemas import JobRecord, JobStatus


class FakeLLM:
    """Language-model stand-in: replays canned responses and records every call."""

    def __init__(self, *responses, default=""):
        self.responses = list(responses)
        self.default = default
        self.calls = []

    def __call__(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        if self.responses:
            response = self.responses.pop(0)
        else:
            response = self.default
        if isinstance(response, Exception):
            raise response
        return response


def plan_response(*prompts, title="", questions=()):
    return json.dumps({
        "parentTitle": title,
        "childGoals": [{"prompt": p} for p in prompts],
        "questions": list(questions),
    })


class FakeJobRunner:
    """Job runner that only knows the jobs a test registers."""

    def __init__(self):
        self.jobs = {}

    def add(self, job_id, job_type="frontend:test", project_id="proj", status=JobStatus.SUCCEEDED):
        job = JobRecord(
            id=job_id,
            project_id=project_id,
            type=job_type,
            status=status,
            exit_code=0 if status == JobStatus.SUCCEEDED else 1,
            command=["npm", "test"],
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.jobs[job_id] = job
        return job

    def start_job(self, job_type, project_id, command, cwd, env=None):
        job = self.add(f"job-{len(self.jobs) + 1}", job_type, project_id, status=JobStatus.RUNNING)
        job.command = list(command)
        job.cwd = cwd
        return job

    def get_job(self, job_id):
        return self.jobs.get(job_id)


class FakeWorkspaceExecutor:
    """Returns a prepared outcome per workspace name and records the plans it got."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.plans = []

    async def run_all(self, plans):
        self.plans.extend(plans)
        results = []
        for plan in plans:
            outcome = self.outcomes.get(plan.workspace)
            if outcome is None:
                outcome = passing_result(plan.workspace, plan.kind)
            results.append(outcome)
        return results


def passing_result(workspace, kind="node", pct=100.0, **overrides):
    values = {
        "workspace": workspace,
        "kind": kind,
        "status": JobStatus.SUCCEEDED.value,
        "job_id": f"job-{workspace}",
        "exit_code": 0,
        "coverage": {"lines": pct, "statements": pct, "functions": pct, "branches": pct},
    }
    values.update(overrides)
    return WorkspaceRunResult(**values)


class Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def gate_context(clock):
    return TestGateContext(min_interval_ms=10_000, now_provider=clock)


@pytest.fixture
def project_dir(tmp_path):
    """A project with a Node frontend and a Python backend."""
    root = tmp_path / "projects" / "proj"
    (root / "frontend").mkdir(parents=True)
    (root / "frontend" / "package.json").write_text(json.dumps({"scripts": {"test": "vitest"}}))
    (root / "backend").mkdir()
    (root / "backend" / "pyproject.toml").write_text("[project]\nname = 'backend'\n")
    return root


@pytest.fixture
def job_runner():
    return FakeJobRunner()


@pytest.fixture
def workspace_executor():
    return FakeWorkspaceExecutor()


@pytest.fixture
def make_orchestrator(gate_context, job_runner, workspace_executor, project_dir):
    def _make(changed_paths=None, **kwargs):
        options = {
            "job_runner": job_runner,
            "workspace_executor": workspace_executor,
            "project_path": lambda pid: str(project_dir.parent / pid),
            "changed_paths_provider": lambda path, branch: list(changed_paths or []),
        }
        options.update(kwargs)
        return TestGateOrchestrator(gate_context, **options)
    return _make


@pytest.fixture
def fake_llm():
    return FakeLLM


@pytest.fixture
def make_goal_service():
    def _make(*responses, request_clarifications=True, default=""):
        llm = FakeLLM(*responses, default=default)
        return GoalService(llm=llm, request_clarifications=request_clarifications), llm
    return _make
