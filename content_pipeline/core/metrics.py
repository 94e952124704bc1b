# File: content_pipeline/core/metrics.py
from prometheus_client import Counter, Histogram

MESSAGES_CONSUMED_TOTAL = Counter(
    "pipeline_messages_consumed_total",
    "Total number of broker messages consumed, by handler outcome.",
    ["topic", "outcome"]
)

MESSAGES_PRODUCED_TOTAL = Counter(
    "pipeline_messages_produced_total",
    "Total number of messages produced to the broker.",
    ["topic", "status"]
)

HANDLER_DURATION_SECONDS = Histogram(
    "pipeline_handler_duration_seconds",
    "Time taken by a stage handler to process one message.",
    ["stage"],
    buckets=[0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120]
)

HANDLER_ERRORS_TOTAL = Counter(
    "pipeline_handler_errors_total",
    "Total number of handler errors, by classification.",
    ["stage", "kind"]
)

JOB_RETRIES_TOTAL = Counter(
    "pipeline_job_retries_total",
    "Total number of jobs republished for another attempt.",
    ["stage"]
)

CHUNKS_PRODUCED_TOTAL = Counter(
    "pipeline_chunks_produced_total",
    "Total number of chunks produced by extraction.",
    ["format"]
)

CHUNKS_INDEXED_TOTAL = Counter(
    "pipeline_chunks_indexed_total",
    "Total number of chunks written to an index backend.",
    ["stage"]
)

STATE_TRANSITIONS_TOTAL = Counter(
    "pipeline_state_transitions_total",
    "Document state transitions, by outcome of the compare-and-set.",
    ["to_state", "result"]
)

STALE_DOCUMENTS_SWEPT_TOTAL = Counter(
    "pipeline_stale_documents_swept_total",
    "Documents moved to Failed by the stale stage sweep.",
    ["from_state"]
)

RPC_CALLS_TOTAL = Counter(
    "pipeline_rpc_calls_total",
    "RPC calls issued over the broker, by result.",
    ["topic", "status"]
)

BLOB_DOWNLOAD_DURATION_SECONDS = Histogram(
    "pipeline_blob_download_duration_seconds",
    "Time taken to download a document from the blob store.",
    buckets=[0.1, 0.5, 1, 2, 5, 10]
)
