"""Prometheus metrics for the scan extraction worker."""

from prometheus_client import Counter, Gauge, Histogram

# Job counter - tracks scans processed by the worker
# Labels: outcome (succeeded, failed, aborted)
scan_jobs_counter = Counter(
    "scanflow_jobs_total",
    "Total number of scan jobs processed",
    ["outcome"],
)

# Job failure counter - tracks failures by pipeline stage
# Labels: stage (input, download, extraction, persistence)
scan_job_failures_counter = Counter(
    "scanflow_job_failures_total",
    "Total number of failed scan jobs",
    ["stage"],
)

# Job duration histogram - end to end processing time in seconds
# Buckets: extraction calls dominate and can take minutes
scan_job_duration = Histogram(
    "scanflow_job_duration_seconds",
    "Scan job processing duration in seconds",
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

# Extraction retry counter
# Labels: reason (timeout, rate_limit, server_error, network, other)
extraction_retry_counter = Counter(
    "scanflow_extraction_retries_total",
    "Total number of extraction retries",
    ["reason"],
)

# Extraction attempts per job
extraction_attempts = Histogram(
    "scanflow_extraction_attempts",
    "Extraction attempts used per scan job",
    buckets=(1, 2, 3, 4, 5, 7, 10),
)

# Extraction cost counter, in USD
# Labels: provider, model
extraction_cost_counter = Counter(
    "scanflow_extraction_cost_usd_total",
    "Total extraction spend in USD",
    ["provider", "model"],
)

# In-flight jobs gauge
jobs_in_flight_gauge = Gauge(
    "scanflow_jobs_in_flight",
    "Number of scan jobs currently being processed",
)


def retry_reason(error: BaseException) -> str:
    """Bucket a retried error for the retry counter label."""
    status_code = getattr(error, "status_code", None)
    if getattr(error, "is_timeout", False) or isinstance(error, TimeoutError):
        return "timeout"
    if status_code == 429:
        return "rate_limit"
    if isinstance(status_code, int) and status_code >= 500:
        return "server_error"
    if isinstance(error, OSError):
        return "network"
    return "other"


__all__ = [
    "scan_jobs_counter",
    "scan_job_failures_counter",
    "scan_job_duration",
    "extraction_retry_counter",
    "extraction_attempts",
    "extraction_cost_counter",
    "jobs_in_flight_gauge",
    "retry_reason",
]
