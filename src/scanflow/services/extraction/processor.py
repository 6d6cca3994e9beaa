"""
Scan job processor.

Drives one scan through the extraction pipeline:

    pending -> processing -> completed | review_new_project | failed

Steps run in a fixed order: resolve the storage path, mark the scan as
processing, download it, extract with retries, then write the cost record
before the results and terminal status. Once a terminal write succeeds no
other status write is made for the job.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, assert_never

from scanflow.core.config import settings
from scanflow.core.exceptions import (
    ExtractionError,
    ExtractionTimeoutError,
    InputResolutionError,
    InvalidTransitionError,
    PersistenceError,
    ScanNotFoundError,
)
from scanflow.core.logging import log_context
from scanflow.extraction.base import ExtractionClient, ExtractionResult
from scanflow.models.scan import ScanStatus, UploadMode
from scanflow.monitoring.metrics import (
    extraction_attempts,
    extraction_cost_counter,
    extraction_retry_counter,
    jobs_in_flight_gauge,
    retry_reason,
    scan_job_duration,
    scan_job_failures_counter,
    scan_jobs_counter,
)
from scanflow.monitoring.sink import MonitoringSink
from scanflow.schemas.scan_job import ScanJob
from scanflow.services.extraction.retry import (
    AttemptOutcome,
    RetryConfig,
    execute_with_retry,
)
from scanflow.services.scan_job_service import ScanJobService, scan_job_service_context
from scanflow.services.storage import DEFAULT_BUCKET, resolve_storage_path

logger = logging.getLogger(__name__)


class StorageClient(Protocol):
    async def download(self, path: str) -> bytes: ...


ServiceFactory = Callable[[], AbstractAsyncContextManager[ScanJobService]]


# =============================================================================
# Outcomes
# =============================================================================


class FailureStage(str, Enum):
    """Pipeline step that produced a failure."""

    INPUT = "input"
    DOWNLOAD = "download"
    EXTRACTION = "extraction"
    PERSISTENCE = "persistence"


@dataclass(frozen=True)
class ScanSucceeded:
    status: ScanStatus
    extraction: ExtractionResult


@dataclass(frozen=True)
class ScanFailed:
    stage: FailureStage
    error_message: str
    error: BaseException | None = field(default=None, compare=False)


@dataclass(frozen=True)
class ScanAborted:
    """No terminal write was made by this attempt."""

    reason: str
    existing_status: ScanStatus | None = None


ScanOutcome = ScanSucceeded | ScanFailed | ScanAborted


@dataclass(frozen=True)
class ProcessingCounts:
    """Aggregate job counts for batch bookkeeping."""

    succeeded: int = 0
    failed: int = 0

    def __add__(self, other: "ProcessingCounts") -> "ProcessingCounts":
        if not isinstance(other, ProcessingCounts):
            return NotImplemented
        return ProcessingCounts(
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
        )

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> dict[str, int]:
        return {"succeeded": self.succeeded, "failed": self.failed}


def success_status_for(upload_mode: UploadMode) -> ScanStatus:
    """Terminal success status chosen by the upload mode."""
    if upload_mode == UploadMode.NEW_PROJECT:
        return ScanStatus.REVIEW_NEW_PROJECT
    return ScanStatus.COMPLETED


# =============================================================================
# Processor
# =============================================================================


class ScanJobProcessor:
    """
    Processes scan extraction jobs.

    Collaborators are injected once and shared read-only by concurrent jobs;
    each job gets its own database session from ``service_factory``.
    """

    def __init__(
        self,
        storage: StorageClient,
        extraction_client: ExtractionClient,
        sink: MonitoringSink,
        service_factory: ServiceFactory = scan_job_service_context,
        retry_config: RetryConfig | None = None,
        extraction_timeout_seconds: float | None = None,
        bucket: str = DEFAULT_BUCKET,
    ):
        self.storage = storage
        self.extraction_client = extraction_client
        self.sink = sink
        self.service_factory = service_factory
        self.retry_config = retry_config or settings.retry_config()
        self.extraction_timeout_seconds = (
            extraction_timeout_seconds or settings.extraction_timeout_seconds
        )
        self.bucket = bucket

    async def process(self, job: ScanJob) -> ProcessingCounts:
        """
        Run one job to a terminal state.

        Args:
            job: Dequeued scan job

        Returns:
            ProcessingCounts with one succeeded or failed job
        """
        context: dict[str, Any] = {
            "scan_id": job.payload.scan_id,
            "job_id": job.id,
            "attempts": job.attempts,
        }
        start_time = time.monotonic()
        jobs_in_flight_gauge.inc()

        try:
            with log_context(scan_id=job.payload.scan_id), self.sink.job_scope(context):
                outcome = await self._run(job)
                return self._report(outcome, context)
        finally:
            jobs_in_flight_gauge.dec()
            scan_job_duration.observe(time.monotonic() - start_time)

    async def process_batch(
        self,
        jobs: Iterable[ScanJob],
        concurrency: int | None = None,
    ) -> ProcessingCounts:
        """Process jobs concurrently, at most ``concurrency`` at a time."""
        semaphore = asyncio.Semaphore(concurrency or settings.worker_concurrency)

        async def run(job: ScanJob) -> ProcessingCounts:
            async with semaphore:
                return await self.process(job)

        results = await asyncio.gather(*(run(job) for job in jobs))
        return sum(results, ProcessingCounts())

    async def _run(self, job: ScanJob) -> ScanOutcome:
        scan_id = job.payload.scan_id

        async with self.service_factory() as service:
            # 1. Resolve input location
            try:
                path = resolve_storage_path(job.payload.location, self.bucket)
            except InputResolutionError as e:
                return await self._fail(service, job, FailureStage.INPUT, e)
            self.sink.add_breadcrumb("Resolved storage path", {"path": path})

            # 2. pending -> processing
            try:
                status = await service.mark_processing(scan_id)
            except (PersistenceError, ScanNotFoundError) as e:
                logger.error(f"Could not start scan {scan_id}: {e}")
                return ScanAborted(reason=str(e))
            if status.is_terminal:
                return ScanAborted(reason=f"Scan already {status.value}", existing_status=status)
            self.sink.add_breadcrumb("Marked processing")

            # 3. Download
            try:
                document = await self.storage.download(path)
            except Exception as e:
                logger.exception(f"Download failed for scan {scan_id}: {e}")
                return await self._fail(service, job, FailureStage.DOWNLOAD, e)
            self.sink.add_breadcrumb("Downloaded scan", {"bytes": len(document)})

            # 4. Extract
            pages = job.payload.selected_pages
            retry_result = await execute_with_retry(
                lambda: self._extract_once(document, pages),
                self.retry_config,
                on_retry=self._on_retry,
            )
            extraction_attempts.observe(retry_result.attempts)
            if not retry_result.success:
                assert retry_result.error is not None
                return await self._fail(service, job, FailureStage.EXTRACTION, retry_result.error)

            result = retry_result.unwrap()
            usage = {k: v for k, v in result.to_dict().items() if k != "extracted_data"}
            self.sink.add_breadcrumb(
                "Extraction finished", {**usage, "attempts": retry_result.attempts}
            )

            # 5. Cost record, then results and terminal status
            success_status = success_status_for(job.payload.upload_mode)
            try:
                await service.record_cost(scan_id, result)
                await service.complete(scan_id, result, success_status)
            except PersistenceError as e:
                return await self._fail(service, job, FailureStage.PERSISTENCE, e)
            except (InvalidTransitionError, ScanNotFoundError) as e:
                return ScanAborted(reason=str(e))

            extraction_cost_counter.labels(result.provider, result.model).inc(result.cost_usd)
            return ScanSucceeded(status=success_status, extraction=result)

    async def _extract_once(
        self,
        document: bytes,
        pages: list[int] | None,
    ) -> ExtractionResult:
        """One bounded extraction call; unusable results are raised."""
        provider = getattr(self.extraction_client, "provider", None)
        try:
            result = await asyncio.wait_for(
                self.extraction_client.extract(document, pages),
                timeout=self.extraction_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ExtractionTimeoutError(self.extraction_timeout_seconds, provider) from None

        if not result.success:
            raise ExtractionError(result.error or "Extraction returned no data", provider=provider)
        return result

    def _on_retry(self, outcome: AttemptOutcome) -> None:
        extraction_retry_counter.labels(retry_reason(outcome.error)).inc()
        self.sink.add_breadcrumb(
            "Retrying extraction",
            {
                "attempt": outcome.attempt + 1,
                "delay_ms": outcome.delay_ms,
                "error": str(outcome.error),
            },
        )

    async def _fail(
        self,
        service: ScanJobService,
        job: ScanJob,
        stage: FailureStage,
        error: BaseException,
    ) -> ScanOutcome:
        """Write the failed status; the outcome is aborted if that write fails."""
        message = str(error) or type(error).__name__
        try:
            await service.mark_failed(job.payload.scan_id, message, retry_count=job.attempts)
        except InvalidTransitionError as e:
            return ScanAborted(reason=str(e))
        except (PersistenceError, ScanNotFoundError) as e:
            logger.error(f"Could not record failure for scan {job.payload.scan_id}: {e}")
            return ScanAborted(reason=f"Failure not recorded ({message}): {e}")
        return ScanFailed(stage=stage, error_message=message, error=error)

    def _report(self, outcome: ScanOutcome, context: dict[str, Any]) -> ProcessingCounts:
        scan_id = context["scan_id"]

        match outcome:
            case ScanSucceeded(status=status, extraction=extraction):
                scan_jobs_counter.labels("succeeded").inc()
                self.sink.record_success(
                    {**context, "status": status.value, "cost_usd": extraction.cost_usd}
                )
                logger.info(f"Scan {scan_id} finished as {status.value}")
                return ProcessingCounts(succeeded=1)

            case ScanFailed(stage=stage, error_message=message):
                scan_jobs_counter.labels("failed").inc()
                scan_job_failures_counter.labels(stage.value).inc()
                self.sink.record_failure(
                    outcome.error or message,
                    {**context, "stage": stage.value, "error_message": message},
                )
                logger.warning(f"Scan {scan_id} failed at {stage.value}: {message}")
                return ProcessingCounts(failed=1)

            case ScanAborted(reason=reason, existing_status=existing):
                scan_jobs_counter.labels("aborted").inc()
                if existing is not None:
                    logger.info(f"Scan {scan_id} skipped: {reason}")
                    if existing.is_success:
                        return ProcessingCounts(succeeded=1)
                    return ProcessingCounts(failed=1)
                self.sink.record_failure(reason, {**context, "stage": "aborted"})
                logger.error(f"Scan {scan_id} aborted: {reason}")
                return ProcessingCounts(failed=1)

            case _:
                assert_never(outcome)
