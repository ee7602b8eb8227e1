"""
Prometheus metrics for the assessment service.
Exposed by the FastAPI app at /metrics.
"""
from prometheus_client import Counter, Histogram

attempts_started = Counter(
    "assessment_attempts_started_total",
    "Total number of attempts started",
)

# Attempts leaving in_progress, by resulting status
attempts_settled = Counter(
    "assessment_attempts_settled_total",
    "Attempts that left in_progress, by resulting status",
    ["status"],
)

# Optimistic-concurrency retries per service operation
concurrency_retries = Counter(
    "assessment_concurrency_retries_total",
    "Commands retried after an aggregate version conflict",
    ["operation"],
)

event_sink_failures = Counter(
    "assessment_event_sink_failures_total",
    "Graded-attempt events that could not be delivered",
)

expiry_failures = Counter(
    "assessment_expiry_failures_total",
    "Overdue attempts the sweeper could not expire",
)

grading_seconds = Histogram(
    "assessment_grading_seconds",
    "Wall time spent grading one attempt submission",
    buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)


def mark_settled(status: str) -> None:
    """Increment the settled-attempt counter for a resulting status."""
    attempts_settled.labels(status=status).inc()


def mark_retry(operation: str) -> None:
    concurrency_retries.labels(operation=operation).inc()
