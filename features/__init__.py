"""
Features package — each sub-package encapsulates a self-contained feature.

  features/goals/      — goals, their lifecycle, metadata and plan normalization
  features/testing/    — the test gate: rate limiting, coverage policy, proofs
  features/autopilot/  — autopilot sessions, their event log and the UI poller

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    models.py        — data models specific to this feature
    db.py            — database layer (if applicable)
    ...              — any other feature-specific modules
"""
