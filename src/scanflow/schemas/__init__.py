"""Pydantic schemas for scanflow."""

from scanflow.schemas.scan_job import ScanJob, ScanJobPayload

__all__ = ["ScanJob", "ScanJobPayload"]
