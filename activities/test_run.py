"""
Activity: Test Runner — runs one workspace's test suite with coverage and
reads the coverage reports it leaves behind.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict
from pathlib import Path

from temporalio import activity

from activities.jobs import LocalJobRunner, default_runner
from features.testing.changed_files import collect_uncovered_lines
from features.testing.models import WorkspacePlan, WorkspaceRunResult
from models.schemas import JobStatus, WorkspaceDescriptor, WorkspaceKind

log = logging.getLogger(__name__)

MAX_RESULT_LOG_LINES = 200


def build_test_command(workspace: WorkspaceDescriptor) -> list[str]:
    """Coverage-producing test command for a workspace."""
    if workspace.kind == WorkspaceKind.PYTHON:
        return ["python", "-m", "pytest", "--cov", "--cov-report=json:coverage.json"]
    script = workspace.scripts.get("test:coverage") if workspace.scripts else None
    if isinstance(script, str) and script.strip():
        return ["npm", "run", "test:coverage"]
    return ["npm", "test", "--", "--coverage"]


def _read_json(path: Path) -> dict | None:
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def read_node_coverage(cwd: str) -> tuple[dict | None, dict | None, dict | None]:
    """(totals, per-file summary, coverage-final) from an Istanbul coverage/ dir."""
    coverage_dir = Path(cwd) / "coverage"
    summary = _read_json(coverage_dir / "coverage-summary.json")
    totals = None
    if summary and isinstance(summary.get("total"), dict):
        total = summary["total"]
        totals = {
            metric: (total.get(metric) or {}).get("pct")
            for metric in ("lines", "statements", "functions", "branches")
        }
    final = _read_json(coverage_dir / "coverage-final.json")
    return totals, summary, final


def read_python_coverage(cwd: str) -> dict | None:
    """Percentages from a pytest-cov JSON report; only metrics it measures."""
    report = _read_json(Path(cwd) / "coverage.json")
    totals = report.get("totals") if report else None
    if not isinstance(totals, dict):
        return None

    coverage: dict = {}
    statements = totals.get("num_statements")
    if isinstance(statements, (int, float)) and statements > 0:
        pct = round(100.0 * totals.get("covered_lines", 0) / statements, 2)
        coverage["lines"] = pct
        coverage["statements"] = pct
    elif isinstance(totals.get("percent_covered"), (int, float)):
        coverage["lines"] = coverage["statements"] = round(totals["percent_covered"], 2)

    branches = totals.get("num_branches")
    if isinstance(branches, (int, float)) and branches > 0:
        coverage["branches"] = round(100.0 * totals.get("covered_branches", 0) / branches, 2)
    return coverage or None


def _run_job(runner: LocalJobRunner, plan: WorkspacePlan, job_type: str, command: list[str]):
    job = runner.start_job(job_type, plan.project_id, command, plan.cwd)
    return runner.wait_for_job_completion(job.id, timeout=plan.timeout_sec + 30)


def execute_workspace_plan(plan: WorkspacePlan, runner: LocalJobRunner) -> WorkspaceRunResult:
    """Install (if needed), run the coverage command, then collect coverage."""
    started = time.monotonic()
    result = WorkspaceRunResult(workspace=plan.workspace, kind=plan.kind, status=JobStatus.FAILED.value)

    if plan.install_dependencies and plan.kind == WorkspaceKind.NODE.value:
        log.info("Installing dependencies for %s", plan.workspace)
        install = _run_job(runner, plan, f"{plan.workspace}:install", ["npm", "install"])
        if install.status != JobStatus.SUCCEEDED:
            result.error = f"Dependency install failed (exit={install.exit_code})"
            result.logs = install.logs[-MAX_RESULT_LOG_LINES:]
            result.duration_ms = int((time.monotonic() - started) * 1000)
            return result

    log.info("Running %s tests: %s", plan.workspace, " ".join(plan.command))
    job = _run_job(runner, plan, f"{plan.workspace}:test", plan.command)
    result.job_id = job.id
    result.status = job.status.value
    result.exit_code = job.exit_code
    result.logs = job.logs[-MAX_RESULT_LOG_LINES:]
    if job.status != JobStatus.SUCCEEDED:
        result.error = f"{plan.workspace} tests failed (exit={job.exit_code})"

    if plan.kind == WorkspaceKind.NODE.value:
        totals, summary, final = read_node_coverage(plan.cwd)
        result.coverage = totals
        result.file_coverage = summary
        if plan.changed_files:
            result.uncovered_lines = collect_uncovered_lines(plan.workspace, final, plan.changed_files)
    else:
        result.coverage = read_python_coverage(plan.cwd)

    result.duration_ms = int((time.monotonic() - started) * 1000)
    log.info(
        "%s tests: %s (exit=%s, coverage=%s)",
        plan.workspace, result.status, result.exit_code, result.coverage,
    )
    return result


@activity.defn
def run_workspace_tests(plan: dict) -> dict:
    """Temporal activity wrapper: dict in, dict out."""
    result = execute_workspace_plan(WorkspacePlan(**plan), default_runner())
    return asdict(result)
