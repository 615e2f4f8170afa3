"""
Prometheus metrics for the pipeline

Dead-letter volume and circuit-breaker state are the primary health signals.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


REGISTRY = CollectorRegistry(auto_describe=True)

EVENTS_PROCESSED = Counter(
    "adrec_events_processed_total",
    "Events taken through encode, score and dispatch",
    ["outcome"],
    registry=REGISTRY,
)
DEAD_LETTERS = Counter(
    "adrec_dead_letters_total",
    "Events routed to the dead-letter path",
    ["reason"],
    registry=REGISTRY,
)
NOTIFICATIONS = Counter(
    "adrec_notifications_total",
    "Notification outcomes",
    ["outcome"],
    registry=REGISTRY,
)
ARCHIVE_BATCHES = Counter(
    "adrec_archive_batches_total",
    "Archive batches durably written",
    registry=REGISTRY,
)
ARCHIVE_FLUSH_FAILURES = Counter(
    "adrec_archive_flush_failures_total",
    "Failed archive write attempts",
    registry=REGISTRY,
)
ARCHIVE_BUFFER = Gauge(
    "adrec_archive_buffer_records",
    "Records buffered in the archiver",
    registry=REGISTRY,
)
VOCABULARY_ASSIGNMENTS = Counter(
    "adrec_vocabulary_assignments_total",
    "New vocabulary indices assigned",
    ["field"],
    registry=REGISTRY,
)
VOCABULARY_OVERFLOW = Counter(
    "adrec_vocabulary_overflow_total",
    "Values routed to the hashing fallback because the field is full",
    ["field"],
    registry=REGISTRY,
)
STALE_VOCABULARY = Counter(
    "adrec_stale_vocabulary_scores_total",
    "Scores computed by a model trained on an older vocabulary",
    registry=REGISTRY,
)
CIRCUIT_STATE = Gauge(
    "adrec_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["endpoint"],
    registry=REGISTRY,
)
CONSUMER_PAUSED = Gauge(
    "adrec_consumer_paused",
    "1 while a partition consumer waits on archive backpressure",
    ["partition"],
    registry=REGISTRY,
)
WATERMARK = Gauge(
    "adrec_archive_watermark_seconds",
    "All events at or before this timestamp are durably archived",
    registry=REGISTRY,
)
SCORING_LATENCY = Histogram(
    "adrec_scoring_latency_seconds",
    "Latency of individual scoring attempts",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=REGISTRY,
)


def render_latest() -> bytes:
    """Prometheus text exposition of the pipeline registry"""
    return generate_latest(REGISTRY)
