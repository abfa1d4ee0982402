"""
Operational Metrics for Finledger

Prometheus metrics for ingestion throughput, provider health, snapshot
computation and the authority workflow.
"""

from prometheus_client import Counter, Histogram

# --- API Metrics ---
API_ERRORS_TOTAL = Counter(
    "finledger_ops_api_errors_total",
    "Total number of API errors by status code and path",
    ["path", "method", "status_code"],
)

# --- Ingestion Metrics ---
FINANCE_EVENTS_INGESTED_TOTAL = Counter(
    "finledger_ops_finance_events_ingested_total",
    "Finance events processed by ingestion, by provider, mode and outcome",
    ["provider", "mode", "outcome"],  # mode: poll|webhook|direct, outcome: written|duplicate|unmapped
)

PROVIDER_SYNC_TOTAL = Counter(
    "finledger_ops_provider_sync_total",
    "Provider poll runs by provider and status",
    ["provider", "status"],  # status: success|failure|timeout
)

PROVIDER_SYNC_DURATION = Histogram(
    "finledger_ops_provider_sync_duration_seconds",
    "Duration of provider fetches during poll ingestion",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10),
)

WEBHOOK_SIGNATURE_FAILURES_TOTAL = Counter(
    "finledger_ops_webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    ["provider"],
)

# --- Snapshot Metrics ---
SNAPSHOT_COMPUTE_TOTAL = Counter(
    "finledger_ops_snapshot_compute_total",
    "Snapshot computations by outcome",
    ["outcome"],  # computed|cached|fallback|empty|failed
)

SNAPSHOT_COMPUTE_DURATION = Histogram(
    "finledger_ops_snapshot_compute_duration_seconds",
    "Duration of full snapshot computation",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

# --- Receipts & Authority ---
RECEIPT_WRITE_FAILURES_TOTAL = Counter(
    "finledger_ops_receipt_write_failures_total",
    "Receipt writes that failed and were not durably recorded",
    ["action_type"],
)

AUTHORITY_TRANSITIONS_TOTAL = Counter(
    "finledger_ops_authority_transitions_total",
    "Authority workflow transitions by transition and outcome",
    ["transition", "outcome"],  # outcome: changed|noop|conflict|policy_denied|executed
)
