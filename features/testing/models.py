"""
Data models for the test/coverage gate.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

METRICS = ("lines", "statements", "functions", "branches")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CoverageThresholds:
    lines: float = 100
    statements: float = 100
    functions: float = 100
    branches: float = 100

    @classmethod
    def uniform(cls, target: float) -> "CoverageThresholds":
        return cls(lines=target, statements=target, functions=target, branches=target)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CoveragePolicy:
    """Run-wide settings for the changed-files sub-check."""
    changed_file_thresholds: CoverageThresholds
    enforce_changed_file_coverage: bool = True


class TestRunStatus(str, Enum):
    __test__ = False  # keep pytest from collecting this

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


class TestRunImmutable(RuntimeError):
    __test__ = False

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Test run {run_id} is already {status}")


_RUN_TRANSITIONS = {
    TestRunStatus.PENDING: (TestRunStatus.RUNNING,),
    TestRunStatus.RUNNING: (TestRunStatus.PASSED, TestRunStatus.FAILED),
    TestRunStatus.PASSED: (),
    TestRunStatus.FAILED: (),
}


@dataclass
class TestRun:
    """One test-execution attempt for a branch. Immutable once terminal."""
    __test__ = False

    id: str
    project_id: str
    branch_id: str
    status: TestRunStatus = TestRunStatus.PENDING
    summary: dict = field(default_factory=dict)
    details: dict = field(default_factory=dict)
    error: str | None = None
    source: str = "manual"
    created_at: str = field(default_factory=_now)
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return not _RUN_TRANSITIONS[self.status]

    def move_to(self, status: TestRunStatus | str) -> None:
        status = TestRunStatus(status)
        if status not in _RUN_TRANSITIONS[self.status]:
            raise TestRunImmutable(self.id, self.status.value)
        self.status = status
        if self.is_terminal:
            self.completed_at = _now()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "branchId": self.branch_id,
            "status": self.status.value,
            "summary": self.summary,
            "details": self.details,
            "error": self.error,
            "source": self.source,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }


class BranchStatus(str, Enum):
    ACTIVE = "active"
    NEEDS_FIX = "needs-fix"
    READY_FOR_MERGE = "ready-for-merge"
    MERGED = "merged"


@dataclass
class Branch:
    id: str
    project_id: str
    name: str
    status: BranchStatus = BranchStatus.ACTIVE
    last_test_run_id: str | None = None
    staged_files: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "name": self.name,
            "status": self.status.value,
            "lastTestRunId": self.last_test_run_id,
            "stagedFiles": list(self.staged_files),
            "updatedAt": self.updated_at,
        }


@dataclass
class WorkspacePlan:
    """Everything a worker needs to test one workspace."""
    workspace: str
    cwd: str
    kind: str
    command: list[str]
    project_id: str
    thresholds: dict
    install_dependencies: bool = False
    changed_files: list[str] = field(default_factory=list)
    timeout_sec: int = 900


@dataclass
class WorkspaceRunResult:
    workspace: str
    kind: str
    status: str
    job_id: str | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    logs: list[str] = field(default_factory=list)
    coverage: dict | None = None
    file_coverage: dict | None = None  # Istanbul coverage-summary.json, per file
    uncovered_lines: list[dict] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "workspace": self.workspace,
            "kind": self.kind,
            "status": self.status,
            "jobId": self.job_id,
            "exitCode": self.exit_code,
            "durationMs": self.duration_ms,
            "logs": self.logs,
            "coverage": self.coverage,
            "error": self.error,
        }


@dataclass(frozen=True)
class Admission:
    admitted: bool
    retry_after_ms: int = 0

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.retry_after_ms / 1000) if self.retry_after_ms > 0 else 0


@dataclass
class RateLimited:
    """Returned instead of a TestRun when a request arrives too soon."""
    retry_after_ms: int
    retry_after_seconds: int
    message: str = "Test runs are rate-limited. Please wait before retrying."

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "retryAfterMs": self.retry_after_ms,
            "retryAfterSeconds": self.retry_after_seconds,
        }


@dataclass
class ProofResult:
    recorded: bool
    reason: str | None = None
    proof_key: str | None = None
    test_run: TestRun | None = None

    def to_dict(self) -> dict:
        return {
            "recorded": self.recorded,
            "reason": self.reason,
            "proofKey": self.proof_key,
            "testRun": self.test_run.to_dict() if self.test_run else None,
        }
