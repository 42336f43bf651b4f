"""
Repo scanner — discovers the testable workspaces of a target project.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from models.schemas import WorkspaceDescriptor, WorkspaceKind

log = logging.getLogger(__name__)

WORKSPACE_DIRS = ("frontend", "backend")
PYTHON_MARKERS = ("pyproject.toml", "setup.py", "setup.cfg", "requirements.txt", "pytest.ini")
_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def resolve_project_path(projects_root: Path | str, project_id) -> Path:
    """Directory of a project under `projects_root`; rejects ids that could escape it."""
    project_id = str(project_id or "").strip()
    if not _PROJECT_ID_RE.match(project_id) or ".." in project_id:
        raise ValueError(f"Invalid project id: {project_id!r}")
    return Path(projects_root) / project_id


def _read_scripts(package_json: Path) -> dict:
    try:
        data = json.loads(package_json.read_text(errors="replace"))
    except (OSError, ValueError) as e:
        log.warning("Could not read %s: %s", package_json, e)
        return {}
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def describe_workspace(name: str, path: Path) -> WorkspaceDescriptor | None:
    """Return a descriptor if `path` holds a Node or Python project."""
    package_json = path / "package.json"
    if package_json.is_file():
        return WorkspaceDescriptor(
            name=name, cwd=str(path), kind=WorkspaceKind.NODE,
            scripts=_read_scripts(package_json),
        )
    if any((path / marker).is_file() for marker in PYTHON_MARKERS):
        return WorkspaceDescriptor(name=name, cwd=str(path), kind=WorkspaceKind.PYTHON)
    return None


def discover_workspaces(project_path: Path | str) -> list[WorkspaceDescriptor]:
    """
    Find the workspaces of a project.

    `frontend/` and `backend/` are used when either exists; otherwise the
    project root itself is the single workspace named "root".
    """
    project_path = Path(project_path)
    if not project_path.is_dir():
        raise ValueError(f"Project path does not exist: {project_path}")

    workspaces = []
    for name in WORKSPACE_DIRS:
        sub = project_path / name
        if sub.is_dir():
            ws = describe_workspace(name, sub)
            if ws:
                workspaces.append(ws)

    if not workspaces:
        root = describe_workspace("root", project_path)
        if root:
            workspaces.append(root)

    log.info(
        "Discovered %d workspace(s) in %s: %s",
        len(workspaces), project_path, ", ".join(w.name for w in workspaces) or "none",
    )
    return workspaces
