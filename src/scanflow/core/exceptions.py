"""
Exception hierarchy for the scan extraction pipeline.

Each error carries a machine-readable ``code`` and a ``details`` dict. The
processor turns them into the scan's error message and the monitoring
sink attaches ``to_dict()`` to reported failures.
"""

from typing import Any


class ScanflowException(Exception):
    """
    Root of every error scanflow raises on purpose.

    Attributes:
        message: Text stored as the scan's error message
        code: Stable identifier for dashboards and alerts
        details: Structured fields for logs and monitoring
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or type(self).__name__
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ScanflowException):
    """A setting the worker needs is missing."""

    def __init__(self, setting: str, message: str | None = None) -> None:
        super().__init__(
            message=message or f"Setting '{setting}' is not configured",
            code="CONFIGURATION_ERROR",
            details={"setting": setting},
        )


# =============================================================================
# Scan State Errors
# =============================================================================


class ScanNotFoundError(ScanflowException):
    """No scan row with the job's id."""

    def __init__(self, scan_id: str) -> None:
        super().__init__(
            message=f"Scan '{scan_id}' not found",
            code="SCAN_NOT_FOUND",
            details={"scan_id": scan_id},
        )


class InvalidTransitionError(ScanflowException):
    """A status write would move a scan out of a terminal state."""

    def __init__(self, scan_id: str, current: str, target: str) -> None:
        super().__init__(
            message=f"Cannot move scan '{scan_id}' from '{current}' to '{target}'",
            code="INVALID_TRANSITION",
            details={"scan_id": scan_id, "current": current, "target": target},
        )


# =============================================================================
# Pipeline Errors
# =============================================================================


class InputResolutionError(ScanflowException):
    """The job's input location could not be turned into a storage path."""

    def __init__(self, location: str | None, reason: str) -> None:
        shown = location if location else "<empty>"
        super().__init__(
            message=f"Cannot resolve storage path from '{shown}': {reason}",
            code="INPUT_RESOLUTION_ERROR",
            details={"location": location, "reason": reason},
        )


class StorageDownloadError(ScanflowException):
    """Downloading the scan file from storage failed."""

    def __init__(
        self,
        path: str,
        reason: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message=f"Failed to download '{path}': {reason}",
            code="STORAGE_DOWNLOAD_ERROR",
            details={"path": path, "status_code": status_code},
        )
        self.status_code = status_code


class ExtractionError(ScanflowException):
    """The extraction provider failed or returned an unusable answer."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="EXTRACTION_ERROR",
            details={"provider": provider, "status_code": status_code},
        )
        self.status_code = status_code


class ExtractionTimeoutError(ExtractionError):
    """A single extraction call exceeded its time budget."""

    is_timeout = True

    def __init__(self, timeout_seconds: float, provider: str | None = None) -> None:
        super().__init__(
            message=f"Extraction timed out after {timeout_seconds:g}s",
            provider=provider,
        )
        self.details["timeout_seconds"] = timeout_seconds


class PersistenceError(ScanflowException):
    """Writing job status, results or cost records failed."""

    def __init__(self, operation: str, original_error: Exception | None = None) -> None:
        message = f"Database write failed during {operation}"
        if original_error is not None:
            message = f"{message}: {original_error}"
        super().__init__(
            message=message,
            code="PERSISTENCE_ERROR",
            details={"operation": operation},
        )
        self.original_error = original_error
