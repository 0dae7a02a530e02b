# services/assessment/__init__.py
"""assessment service package initializer: explicit exports only; no runtime side effects."""

__all__ = [
    "aggregator",
    "app",
    "dispatcher",
    "errors",
    "grader",
    "grading",
    "metrics",
    "models",
    "notifier",
    "orchestrator",
    "repo",
    "routes",
    "sql_repo",
    "state_machine",
    "sweeper",
    "validator",
]
