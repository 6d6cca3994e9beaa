"""
Scan extraction cost ledger model.

One row per committed extraction, used for spend reporting per scan,
provider and model.
"""

from sqlalchemy import Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from scanflow.db.base import BaseModel


class ScanCost(BaseModel):
    """
    Append-only cost record for a successful extraction.

    Written once per extraction the processor commits, before the scan's
    terminal status is set.
    """

    __tablename__ = "mapping_sheet_scan_costs"

    scan_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("mapping_sheet_scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    provider: Mapped[str] = mapped_column(
        String(50),  # e.g., "claude"
        nullable=False,
    )
    model: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # Resource consumption
    input_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    output_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    images_processed: Mapped[int | None] = mapped_column(
        Integer,  # Pages sent to the provider
        nullable=True,
    )
    cost_usd: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )
    processing_time_ms: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    __table_args__ = (Index("ix_mapping_sheet_scan_costs_provider_created", "provider", "created_at"),)

    def __repr__(self) -> str:
        return f"<ScanCost {self.scan_id} {self.provider}/{self.model} ${self.cost_usd:.4f}>"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
