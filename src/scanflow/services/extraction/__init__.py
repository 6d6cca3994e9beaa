"""Extraction pipeline services: retry policy and job processing."""

from scanflow.services.extraction.processor import (
    FailureStage,
    ProcessingCounts,
    ScanAborted,
    ScanFailed,
    ScanJobProcessor,
    ScanOutcome,
    ScanSucceeded,
)
from scanflow.services.extraction.retry import (
    DEFAULT_RETRY_CONFIG,
    AttemptOutcome,
    RetryConfig,
    RetryResult,
    calculate_retry_delay,
    execute_with_retry,
    get_retry_after_seconds,
    is_retryable,
)

__all__ = [
    "DEFAULT_RETRY_CONFIG",
    "AttemptOutcome",
    "FailureStage",
    "ProcessingCounts",
    "RetryConfig",
    "RetryResult",
    "ScanAborted",
    "ScanFailed",
    "ScanJobProcessor",
    "ScanOutcome",
    "ScanSucceeded",
    "calculate_retry_delay",
    "execute_with_retry",
    "get_retry_after_seconds",
    "is_retryable",
]
