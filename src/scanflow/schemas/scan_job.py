"""Scan job schemas for validating queued work items."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from scanflow.models.scan import MappingSheetScan, ScanStatus, UploadMode


class ScanJobPayload(BaseModel):
    """Payload of a queued scan extraction job."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scan_id: str = Field(..., alias="scanId", min_length=1, description="Scan being processed")
    file_url: Optional[str] = Field(
        None, alias="fileUrl", description="Public or signed URL of the upload"
    )
    file_path: Optional[str] = Field(
        None, alias="filePath", description="Storage-relative path of the upload"
    )
    selected_pages: Optional[list[PositiveInt]] = Field(
        None, alias="selectedPages", description="Pages to focus on (1-indexed)"
    )
    upload_mode: UploadMode = Field(
        default=UploadMode.EXISTING_PROJECT,
        alias="uploadMode",
        description="Chooses the terminal success status",
    )

    @field_validator("selected_pages")
    @classmethod
    def dedupe_pages(cls, v: Optional[list[int]]) -> Optional[list[int]]:
        """Sort and dedupe page hints; an empty list means no hint."""
        if not v:
            return None
        return sorted(set(v))

    @property
    def location(self) -> str | None:
        """The embedded path wins over the URL."""
        return self.file_path or self.file_url


class ScanJob(BaseModel):
    """A dequeued unit of work."""

    id: str
    payload: ScanJobPayload
    attempts: int = Field(default=0, ge=0, description="Dequeue attempts so far")
    status: ScanStatus = ScanStatus.PENDING

    @classmethod
    def from_raw(
        cls,
        job_id: str,
        payload: dict[str, Any],
        attempts: int = 0,
        status: ScanStatus | str = ScanStatus.PENDING,
    ) -> "ScanJob":
        """Build a job from a raw queue row."""
        return cls(
            id=job_id,
            payload=ScanJobPayload.model_validate(payload),
            attempts=attempts,
            status=ScanStatus(status),
        )

    @classmethod
    def from_scan(cls, scan: MappingSheetScan) -> "ScanJob":
        """Build a job for a pending scan row."""
        return cls(
            id=scan.id,
            payload=ScanJobPayload(
                scan_id=scan.id,
                file_url=scan.file_url,
                selected_pages=scan.get_selected_pages(),
                upload_mode=scan.upload_mode_enum,
            ),
            attempts=scan.retry_count,
            status=scan.status_enum,
        )
