"""
MappingSheetScan model for uploaded scan extraction.

A scan row tracks:
- Where the uploaded file lives in storage
- Which pages the uploader asked the extractor to focus on
- Extraction status and the terminal outcome
- Extracted structured content and the failure trail
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from scanflow.db.base import BaseModel


# =============================================================================
# Enums
# =============================================================================


class ScanStatus(str, Enum):
    """Status of a mapping sheet scan."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REVIEW_NEW_PROJECT = "review_new_project"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal statuses are never left by the processor."""
        return self in TERMINAL_STATUSES

    @property
    def is_success(self) -> bool:
        return self in (ScanStatus.COMPLETED, ScanStatus.REVIEW_NEW_PROJECT)


TERMINAL_STATUSES = frozenset(
    {ScanStatus.COMPLETED, ScanStatus.REVIEW_NEW_PROJECT, ScanStatus.FAILED}
)


class UploadMode(str, Enum):
    """Whether the scan targets a new or an existing project."""

    NEW_PROJECT = "new_project"
    EXISTING_PROJECT = "existing_project"


# =============================================================================
# Models
# =============================================================================


class MappingSheetScan(BaseModel):
    """
    MappingSheetScan - one uploaded mapping sheet and its extraction state.

    Rows are created by the upload flow; the worker only moves the status
    forward and fills in result and error fields.
    """

    __tablename__ = "mapping_sheet_scans"

    file_url: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
        doc="Storage path, public URL or signed URL of the upload",
    )
    file_name: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    upload_mode: Mapped[str] = mapped_column(
        String(32),
        default=UploadMode.EXISTING_PROJECT.value,
        nullable=False,
    )
    project_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        index=True,
        doc="Existing project the scan belongs to, if any",
    )

    # JSON array of 1-indexed page numbers
    selected_pages: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(32),
        default=ScanStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Results (JSON)
    extracted_data: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    ai_provider: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    page_count: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    # Error tracking
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        doc="Human-readable error message",
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        doc="Dequeue attempts recorded when the scan failed",
    )

    # Timing
    extraction_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    extraction_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (Index("ix_mapping_sheet_scans_status_created", "status", "created_at"),)

    def __repr__(self) -> str:
        return f"<MappingSheetScan {self.id} ({self.status})>"

    @property
    def status_enum(self) -> ScanStatus:
        """Get status as enum."""
        return ScanStatus(self.status)

    @property
    def upload_mode_enum(self) -> UploadMode:
        """Get upload mode as enum."""
        return UploadMode(self.upload_mode)

    def get_selected_pages(self) -> list[int] | None:
        """Parse selected pages JSON."""
        if not self.selected_pages:
            return None
        try:
            pages = json.loads(self.selected_pages)
        except json.JSONDecodeError:
            return None
        return pages or None

    def set_selected_pages(self, pages: list[int] | None) -> None:
        self.selected_pages = json.dumps(pages) if pages else None

    def get_extracted_data(self) -> dict[str, Any]:
        """Parse extracted data JSON."""
        try:
            return json.loads(self.extracted_data or "{}")
        except json.JSONDecodeError:
            return {}

    def set_extracted_data(self, data: dict[str, Any]) -> None:
        self.extracted_data = json.dumps(data)
