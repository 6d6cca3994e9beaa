"""SQLAlchemy models for scanflow."""

from scanflow.models.scan import (
    TERMINAL_STATUSES,
    MappingSheetScan,
    ScanStatus,
    UploadMode,
)
from scanflow.models.scan_cost import ScanCost

__all__ = [
    "TERMINAL_STATUSES",
    "MappingSheetScan",
    "ScanCost",
    "ScanStatus",
    "UploadMode",
]
