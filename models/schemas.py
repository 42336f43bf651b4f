"""
Shared models exchanged with external collaborators.

Feature-specific models live in features/<name>/models.py; this module only
holds what the project inspector and the job runner hand back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class WorkspaceKind(str, Enum):
    NODE = "node"
    PYTHON = "python"


@dataclass
class WorkspaceDescriptor:
    """An independently testable sub-project (frontend, backend, root)."""
    name: str
    cwd: str
    kind: WorkspaceKind = WorkspaceKind.NODE
    scripts: dict = field(default_factory=dict)  # package.json scripts, node only


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobRecord:
    """A process started by the job runner."""
    id: str
    project_id: str
    type: str  # e.g. "frontend:test", "backend:test"
    status: JobStatus = JobStatus.PENDING
    exit_code: int | None = None
    logs: list[str] = field(default_factory=list)
    cwd: str = ""
    command: list[str] = field(default_factory=list)
    created_at: str | None = None
    completed_at: str | None = None

    @property
    def is_test_job(self) -> bool:
        return self.type.endswith(":test") or self.type.endswith(":coverage")

    @property
    def workspace_label(self) -> str:
        return self.type.split(":", 1)[0] if ":" in self.type else self.type
