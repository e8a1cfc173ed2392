"""
Prometheus metrics: pipeline transitions (API + expiry), hook jobs (dispatcher + worker), queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# Executor: accepted and rejected stage transitions
pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Total accepted event pipeline stage transitions",
    ["from_stage", "to_stage", "automatic"],
)
pipeline_transitions_rejected_total = Counter(
    "pipeline_transitions_rejected_total",
    "Total stage transitions rejected before any write",
    ["reason"],
)
pipeline_expired_total = Counter(
    "pipeline_expired_total",
    "Total pipelines cancelled by the expiry sweep",
    ["stage"],
)

# Hooks: dispatch and processing outcomes
hooks_dispatched_total = Counter(
    "hooks_dispatched_total",
    "Total automation hooks dispatched (run inline or queued)",
    ["hook"],
)
hooks_processed_total = Counter(
    "hooks_processed_total",
    "Total automation hooks run successfully",
)
hooks_failed_total = Counter(
    "hooks_failed_total",
    "Total automation hook runs that failed (retried or sent to DLQ)",
)
hooks_dlq_total = Counter(
    "hooks_dlq_total",
    "Total hook jobs moved to DLQ after max retries",
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
