"""Prometheus metrics for the attempt lifecycle and grading."""

from prometheus_client import Counter, Histogram

attempts_started = Counter("assessment_attempts_started_total", "Attempts created")
attempts_resumed = Counter("assessment_attempts_resumed_total", "Start calls that returned an existing attempt")
attempts_ended = Counter("assessment_attempts_ended_total", "Attempts leaving in_progress", ["reason"])
answers_submitted = Counter("assessment_answers_submitted_total", "Answer upserts")
attempts_graded = Counter("assessment_attempts_graded_total", "Grading runs by resulting status", ["status"])
grading_failures = Counter("assessment_grading_failures_total", "Answers that could not be auto-graded")
batch_grading_failures = Counter("assessment_batch_grading_failures_total", "Attempts a batch grading run could not grade")
grading_seconds = Histogram(
    "assessment_grading_seconds",
    "Wall time of one auto-grade run (seconds)",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
