"""
Testing feature — coverage policy, rate-limited test runs and the merge gate.

The orchestrator itself lives in features.testing.gate and is imported
explicitly; activities.test_run depends on this package's models.
"""

from features.testing.context import TestGateContext, gate_key
from features.testing.coverage_policy import (
    SettingsUnavailable,
    resolve_coverage_policy,
    resolve_coverage_target,
    resolve_gate_policy,
)
from features.testing.models import (
    Branch,
    BranchStatus,
    CoveragePolicy,
    CoverageThresholds,
    ProofResult,
    RateLimited,
    TestRun,
    TestRunImmutable,
    TestRunStatus,
)

__all__ = [
    "Branch",
    "BranchStatus",
    "CoveragePolicy",
    "CoverageThresholds",
    "ProofResult",
    "RateLimited",
    "SettingsUnavailable",
    "TestGateContext",
    "TestRun",
    "TestRunImmutable",
    "TestRunStatus",
    "gate_key",
    "resolve_coverage_policy",
    "resolve_coverage_target",
    "resolve_gate_policy",
]
