"""Prometheus collectors for browser jobs and media renders."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

__all__ = [
    "JOB_OUTCOMES",
    "JOB_DURATION_SECONDS",
    "STEP_FAILURES",
    "RENDER_OUTCOMES",
    "RENDER_ACTIVE",
    "record_job_outcome",
    "record_step_failure",
    "record_render_outcome",
    "set_render_active",
]

JOB_OUTCOMES = Counter(
    "jobworker_jobs_total",
    "Browser jobs by terminal outcome",
    labelnames=("outcome",),
)
JOB_DURATION_SECONDS = Histogram(
    "jobworker_job_duration_seconds",
    "Wall-clock duration of browser jobs",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
)
STEP_FAILURES = Counter(
    "jobworker_step_failures_total",
    "Failed browser job steps by action name",
    labelnames=("action",),
)
RENDER_OUTCOMES = Counter(
    "jobworker_renders_total",
    "Media renders by HTTP status",
    labelnames=("status",),
)
RENDER_ACTIVE = Gauge(
    "jobworker_renders_active",
    "Media renders currently holding the render slot",
)


def record_job_outcome(outcome: str, took_ms: int) -> None:
    JOB_OUTCOMES.labels(outcome=outcome).inc()
    JOB_DURATION_SECONDS.observe(max(took_ms, 0) / 1000)


def record_step_failure(action: str) -> None:
    STEP_FAILURES.labels(action=action).inc()


def record_render_outcome(status_code: int) -> None:
    RENDER_OUTCOMES.labels(status=str(status_code)).inc()


def set_render_active(active: int) -> None:
    RENDER_ACTIVE.set(active)
