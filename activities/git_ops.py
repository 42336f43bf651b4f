"""
Activity: Git Operations — the small slice of git the test gate needs to
discover which paths a branch changed.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

log = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    def __init__(self, args: tuple[str, ...], stderr: str, returncode: int):
        self.args_ = args
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")


def run_git_command(repo_path: str, *args: str) -> dict:
    """Run a git command in the target repo; raises GitCommandError on failure."""
    result = subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=repo_path,
        timeout=30,
    )
    if result.returncode != 0:
        log.warning("git %s failed: %s", " ".join(args), result.stderr)
        raise GitCommandError(args, result.stderr, result.returncode)
    return {"stdout": result.stdout, "stderr": result.stderr}


def ensure_git_repository(repo_path: str) -> bool:
    """True if `repo_path` is inside a git work tree."""
    if not Path(repo_path).is_dir():
        return False
    try:
        out = run_git_command(repo_path, "rev-parse", "--is-inside-work-tree")
    except (GitCommandError, OSError, subprocess.TimeoutExpired):
        return False
    return out["stdout"].strip() == "true"


def _paths(stdout: str) -> list[str]:
    return [line.strip() for line in stdout.splitlines() if line.strip()]


def list_branch_changed_paths(repo_path: str, branch: str, base: str = "main") -> list[str]:
    """Paths changed on `branch` since it diverged from `base`."""
    out = run_git_command(repo_path, "diff", "--name-only", f"{base}...{branch}")
    return _paths(out["stdout"])
