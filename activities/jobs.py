"""
Activity: Job Runner — spawns test/install processes and tracks their status.

Jobs run on background threads so callers can start several and wait on each
independently. Only the status is interpreted by the gate; logs are kept for
display.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

import config
from models.schemas import JobRecord, JobStatus

log = logging.getLogger(__name__)

MAX_LOG_LINES = 400


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_env(cwd: str, extra: dict | None = None) -> dict:
    """Environment for subprocesses, including the workspace's venv if present."""
    env = os.environ.copy()
    venv = Path(cwd) / ".venv"
    if venv.exists():
        env["VIRTUAL_ENV"] = str(venv)
        env["PATH"] = f"{venv / 'bin'}:{env.get('PATH', '')}"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    env["CI"] = "true"
    if extra:
        env.update(extra)
    return env


class LocalJobRunner:
    """In-process job runner backed by subprocess + threads."""

    def __init__(self, timeout_sec: int = 900):
        self.timeout_sec = timeout_sec
        self._jobs: dict[str, JobRecord] = {}
        self._done: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def start_job(
        self,
        job_type: str,
        project_id: str,
        command: list[str],
        cwd: str,
        env: dict | None = None,
    ) -> JobRecord:
        job = JobRecord(
            id=f"job-{uuid.uuid4().hex[:10]}",
            project_id=str(project_id),
            type=job_type,
            cwd=cwd,
            command=list(command),
            created_at=_now(),
        )
        done = threading.Event()
        with self._lock:
            self._jobs[job.id] = job
            self._done[job.id] = done

        thread = threading.Thread(
            target=self._run, args=(job, env, done), name=f"job-{job.id}", daemon=True,
        )
        thread.start()
        log.info("[JOB] Started %s (%s): %s", job.id, job_type, " ".join(command))
        return job

    def _run(self, job: JobRecord, env: dict | None, done: threading.Event) -> None:
        job.status = JobStatus.RUNNING
        try:
            proc = subprocess.run(
                job.command,
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
                cwd=job.cwd,
                env=build_env(job.cwd, env),
            )
            lines = [f"stdout: {line}" for line in proc.stdout.splitlines()]
            lines += [f"stderr: {line}" for line in proc.stderr.splitlines()]
            job.logs = lines[-MAX_LOG_LINES:]
            job.exit_code = proc.returncode
            job.status = JobStatus.SUCCEEDED if proc.returncode == 0 else JobStatus.FAILED
        except subprocess.TimeoutExpired:
            job.logs.append(f"stderr: job timed out after {self.timeout_sec}s")
            job.exit_code = -1
            job.status = JobStatus.FAILED
        except Exception as e:
            job.logs.append(f"stderr: {e}")
            job.exit_code = -1
            job.status = JobStatus.FAILED
        job.completed_at = _now()
        log.info("[JOB] %s finished: %s (exit=%s)", job.id, job.status.value, job.exit_code)
        done.set()

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def wait_for_job_completion(self, job_id: str, timeout: float | None = None) -> JobRecord:
        """Block until the job reaches a final status."""
        with self._lock:
            job = self._jobs.get(job_id)
            done = self._done.get(job_id)
        if job is None or done is None:
            raise LookupError(f"Job not found: {job_id}")
        if not done.wait(timeout if timeout is not None else self.timeout_sec + 30):
            log.warning("[JOB] Gave up waiting for %s", job_id)
        return job


_default_runner: LocalJobRunner | None = None


def default_runner() -> LocalJobRunner:
    global _default_runner
    if _default_runner is None:
        _default_runner = LocalJobRunner(timeout_sec=config.TEST_JOB_TIMEOUT_SEC)
    return _default_runner
