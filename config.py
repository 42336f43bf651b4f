"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
PROJECTS_ROOT = Path(os.getenv("PROJECTS_ROOT", str(PROJECT_ROOT / "projects")))

# Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/autopilot")

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = os.getenv("TEMPORAL_TASK_QUEUE", "autopilot-test-gate")
TEMPORAL_NAMESPACE = "default"

# Goals
GOAL_BRANCH_PREFIX = "agent"
MAX_PLAN_DEPTH = int(os.getenv("MAX_PLAN_DEPTH", "4"))
MAX_PLAN_NODES = int(os.getenv("MAX_PLAN_NODES", "40"))

# Test / coverage gate
DEFAULT_COVERAGE_TARGET = 100
CHANGED_FILE_COVERAGE_TARGET = float(os.getenv("CHANGED_FILE_COVERAGE_TARGET", "100"))
ENFORCE_CHANGED_FILE_COVERAGE = os.getenv("ENFORCE_CHANGED_FILE_COVERAGE", "true").lower() in ("1", "true", "yes")
MIN_TEST_RUN_INTERVAL_MS = 10_000
GATE_STATE_TTL_SECONDS = float(os.getenv("GATE_STATE_TTL_SECONDS", "3600"))
TEST_JOB_TIMEOUT_SEC = int(os.getenv("TEST_JOB_TIMEOUT_SEC", "900"))

# Coverage settings files (JSON): global {"coverageTarget": N}; per project
# {"coverage": {"<workspace>": {"mode", "coverageTarget", "effectiveCoverageTarget"}}}
GLOBAL_SETTINGS_PATH = Path(os.getenv("AUTOPILOT_SETTINGS_PATH", str(PROJECT_ROOT / "settings.json")))
PROJECT_SETTINGS_FILE = ".autopilot.json"

# Source extensions that count towards changed-file coverage
COVERAGE_SOURCE_EXTENSIONS = {".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".vue"}

# Autopilot client polling (seconds)
AUTOPILOT_POLL_INTERVAL_SEC = 2.0
AUTOPILOT_POLL_FAST_INTERVAL_SEC = 1.0
AUTOPILOT_POLL_ERROR_INTERVAL_SEC = 4.0
AUTOPILOT_RESUME_LIMIT = 5
