"""Prometheus metrics for routing decisions, stage failures and simulated latency"""

from prometheus_client import Counter, Histogram

# Decision metrics
pipeline_runs_counter = Counter(
    "stop_pipeline_runs_total",
    "Routing pipeline runs",
    ["selection"],  # FORCED | AUTO | NONE
)

authorization_counter = Counter(
    "stop_authorization_total",
    "Simulated authorization outcomes",
    ["outcome"],  # approved | declined
)

# Stage metrics
stage_errors_counter = Counter(
    "stop_stage_errors_total",
    "Pipeline stages that ended in error",
    ["stage"],
)

processing_time_histogram = Histogram(
    "stop_simulated_processing_ms",
    "Simulated end-to-end processing time per run (ms)",
    buckets=[100, 150, 200, 250, 300, 400, 500],
)

# Policy admin
policy_mutations_counter = Counter(
    "stop_policy_mutations_total",
    "Policy registry edits through the admin API",
    ["operation"],
)


def record_run(selection: str, approved: bool | None, processing_time_ms: int) -> None:
    """Record per-run decision metrics"""
    pipeline_runs_counter.labels(selection=selection).inc()
    if approved is not None:
        authorization_counter.labels(outcome="approved" if approved else "declined").inc()
    processing_time_histogram.observe(processing_time_ms)
