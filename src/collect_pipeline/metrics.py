"""
Prometheus metrics for pull runs.

Provides instrumentation for:
- Pull outcomes per form
- Submissions downloaded and skipped
- Errors by pull step
- Pull duration
"""

from prometheus_client import Counter, Histogram

pulls_total = Counter(
    "collect_pulls_total",
    "Total number of form pulls by terminal outcome",
    ["server_type", "outcome"],  # outcome: success, success_with_errors, cancelled
)

submissions_downloaded_total = Counter(
    "collect_submissions_downloaded_total",
    "Total number of submissions downloaded",
    ["form_id"],
)

submissions_skipped_total = Counter(
    "collect_submissions_skipped_total",
    "Total number of submissions skipped because they were already pulled",
    ["form_id"],
)

attachments_downloaded_total = Counter(
    "collect_attachments_downloaded_total",
    "Total number of form and submission attachments downloaded",
    ["form_id", "kind"],  # kind: form, submission
)

pull_errors_total = Counter(
    "collect_pull_errors_total",
    "Total number of failed pull steps",
    ["form_id", "step"],
)

pull_duration_seconds = Histogram(
    "collect_pull_duration_seconds",
    "Time spent pulling one form",
    ["server_type"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0),
)


def record_pull_outcome(server_type: str, outcome: str, duration_seconds: float) -> None:
    """
    Record the terminal outcome of one form pull.

    Args:
        server_type: aggregate or central
        outcome: Outcome value (success, success_with_errors, cancelled)
        duration_seconds: Wall time of the pull
    """
    pulls_total.labels(server_type=server_type, outcome=outcome).inc()
    pull_duration_seconds.labels(server_type=server_type).observe(duration_seconds)


def record_pull_error(form_id: str, step: str) -> None:
    pull_errors_total.labels(form_id=form_id, step=step).inc()


def record_submission_downloaded(form_id: str) -> None:
    submissions_downloaded_total.labels(form_id=form_id).inc()


def record_submission_skipped(form_id: str) -> None:
    submissions_skipped_total.labels(form_id=form_id).inc()


def record_attachment_downloaded(form_id: str, kind: str) -> None:
    attachments_downloaded_total.labels(form_id=form_id, kind=kind).inc()


__all__ = [
    "attachments_downloaded_total",
    "pull_duration_seconds",
    "pull_errors_total",
    "pulls_total",
    "record_attachment_downloaded",
    "record_pull_error",
    "record_pull_outcome",
    "record_submission_downloaded",
    "record_submission_skipped",
    "submissions_downloaded_total",
    "submissions_skipped_total",
]
