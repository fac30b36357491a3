"""conformance-harness.

Drives scripted interaction sequences against a server under test and
scores the results:
- test module / test set graph with shared-variable dependencies
- per-sequence execution with wait/resume/cancel
- result aggregation into per-sequence, per-group and run verdicts
- date/period search comparison helpers
"""

__all__ = [
    "assertions",
    "cli",
    "client",
    "config",
    "dependencies",
    "engine",
    "errors",
    "graph",
    "models",
    "observability",
    "orchestrator",
    "persistence",
    "reporting",
    "search",
    "sequences",
    "validation",
    "variables",
]
