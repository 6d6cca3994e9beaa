"""
Scan job service for the extraction pipeline.

Owns every database write the worker makes: status transitions, results,
failure trail and the cost ledger. Status writes are conditional updates so
a scan that reached a terminal state is never moved again.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scanflow.core.exceptions import (
    InvalidTransitionError,
    PersistenceError,
    ScanNotFoundError,
)
from scanflow.db.session import get_db_context
from scanflow.extraction.base import ExtractionResult
from scanflow.models.scan import TERMINAL_STATUSES, MappingSheetScan, ScanStatus
from scanflow.models.scan_cost import ScanCost
from scanflow.schemas.scan_job import ScanJob

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class ScanJobService:
    """Service for scan status, results and cost records."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    async def get_scan(self, scan_id: str) -> MappingSheetScan:
        """
        Get scan by ID, reloading it from the database.

        Raises:
            ScanNotFoundError: If scan not found
        """
        try:
            scan = await self.db.get(MappingSheetScan, scan_id, populate_existing=True)
        except SQLAlchemyError as e:
            raise PersistenceError("get_scan", e) from e
        if not scan:
            raise ScanNotFoundError(scan_id)
        return scan

    async def list_pending_jobs(self, limit: int = 100) -> list[ScanJob]:
        """
        List pending scans ready for processing, oldest first.

        Args:
            limit: Maximum jobs to return

        Returns:
            List of ScanJob instances
        """
        query = (
            select(MappingSheetScan)
            .where(MappingSheetScan.status == ScanStatus.PENDING.value)
            .order_by(MappingSheetScan.created_at.asc())
            .limit(limit)
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError("list_pending_jobs", e) from e
        return [ScanJob.from_scan(scan) for scan in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Update Operations
    # -------------------------------------------------------------------------

    async def _update_status(self, operation: str, scan_id: str, **values) -> int:
        """Conditional status update; returns the number of rows changed."""
        stmt = (
            update(MappingSheetScan)
            .where(
                MappingSheetScan.id == scan_id,
                MappingSheetScan.status.not_in(_TERMINAL_VALUES),
            )
            .values(updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(operation, e) from e
        return result.rowcount

    async def mark_processing(self, scan_id: str) -> ScanStatus:
        """
        Move a scan to processing unless it is already terminal.

        Args:
            scan_id: Scan UUID

        Returns:
            The scan's status after the call

        Raises:
            ScanNotFoundError: If scan not found
            PersistenceError: If the write failed
        """
        updated = await self._update_status(
            "mark_processing",
            scan_id,
            status=ScanStatus.PROCESSING.value,
            extraction_attempted_at=datetime.now(timezone.utc),
        )
        if updated:
            logger.info(f"Started processing scan {scan_id}")
            return ScanStatus.PROCESSING

        scan = await self.get_scan(scan_id)
        logger.info(f"Scan {scan_id} already {scan.status}, not reprocessing")
        return scan.status_enum

    async def record_cost(self, scan_id: str, result: ExtractionResult) -> ScanCost:
        """
        Append a cost record for a committed extraction.

        Raises:
            PersistenceError: If the write failed
        """
        cost = ScanCost(
            scan_id=scan_id,
            provider=result.provider,
            model=result.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            images_processed=result.images_processed,
            cost_usd=result.cost_usd,
            processing_time_ms=result.processing_time_ms,
        )
        self.db.add(cost)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("record_cost", e) from e

        logger.info(
            f"Recorded extraction cost for scan {scan_id}: "
            f"${result.cost_usd:.4f} ({result.total_tokens} tokens)"
        )
        return cost

    async def complete(
        self,
        scan_id: str,
        result: ExtractionResult,
        status: ScanStatus,
    ) -> None:
        """
        Store extraction results and set a terminal success status.

        Args:
            scan_id: Scan UUID
            result: Successful extraction result
            status: completed or review_new_project

        Raises:
            ValueError: If status is not a success status
            InvalidTransitionError: If the scan is already terminal
            PersistenceError: If the write failed
        """
        if not status.is_success:
            raise ValueError(f"complete() requires a success status, got '{status.value}'")

        updated = await self._update_status(
            "complete",
            scan_id,
            status=status.value,
            extracted_data=json.dumps(result.extracted_data),
            ai_provider=result.provider,
            page_count=result.images_processed,
            error_message=None,
            extraction_completed_at=datetime.now(timezone.utc),
        )
        if not updated:
            await self._raise_not_updated(scan_id, status)

        logger.info(f"Completed scan {scan_id} with status {status.value}")

    async def mark_failed(
        self,
        scan_id: str,
        error_message: str,
        retry_count: int = 0,
    ) -> None:
        """
        Mark scan as failed with a readable error message.

        Args:
            scan_id: Scan UUID
            error_message: Error description
            retry_count: Dequeue attempts reported by the queue

        Raises:
            InvalidTransitionError: If the scan is already terminal
            PersistenceError: If the write failed
        """
        updated = await self._update_status(
            "mark_failed",
            scan_id,
            status=ScanStatus.FAILED.value,
            error_message=error_message,
            retry_count=retry_count,
            extraction_completed_at=datetime.now(timezone.utc),
        )
        if not updated:
            await self._raise_not_updated(scan_id, ScanStatus.FAILED)

        logger.warning(f"Scan {scan_id} failed: {error_message}")

    async def _raise_not_updated(self, scan_id: str, target: ScanStatus) -> None:
        scan = await self.get_scan(scan_id)
        raise InvalidTransitionError(scan_id, scan.status, target.value)


@asynccontextmanager
async def scan_job_service_context() -> AsyncIterator[ScanJobService]:
    """
    Open a database session and yield a service bound to it.

    Usage:
        async with scan_job_service_context() as service:
            await service.mark_processing(scan_id)
    """
    async with get_db_context() as db:
        yield ScanJobService(db)
