"""
Scan extraction worker.

Polls the database for pending scans and runs them through the
ScanJobProcessor, several at a time. On SIGINT/SIGTERM it stops polling,
waits for in-flight jobs, flushes monitoring and exits.

Usage:
    scanflow-worker
"""

import asyncio
import signal
import sys
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from prometheus_client import start_http_server

from scanflow.core.config import settings
from scanflow.core.exceptions import PersistenceError, ScanflowException
from scanflow.core.logging import LoggerMixin, get_logger, setup_logging
from scanflow.db.session import close_db, init_db
from scanflow.extraction.claude import ClaudeExtractionClient
from scanflow.monitoring.sink import MonitoringSink
from scanflow.schemas.scan_job import ScanJob
from scanflow.services.extraction.processor import ProcessingCounts, ScanJobProcessor
from scanflow.services.scan_job_service import ScanJobService, scan_job_service_context
from scanflow.services.storage import SupabaseStorageClient

logger = get_logger(__name__)


class ScanWorker(LoggerMixin):
    """Polling loop that keeps up to ``concurrency`` jobs running."""

    def __init__(
        self,
        processor: ScanJobProcessor,
        sink: MonitoringSink,
        service_factory: Callable[
            [], AbstractAsyncContextManager[ScanJobService]
        ] = scan_job_service_context,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        batch_size: int | None = None,
        flush_timeout_ms: int | None = None,
    ):
        self.processor = processor
        self.sink = sink
        self.service_factory = service_factory
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        self.batch_size = batch_size or settings.worker_batch_size
        self.flush_timeout_ms = (
            flush_timeout_ms if flush_timeout_ms is not None else settings.monitoring_flush_timeout_ms
        )

        self.counts = ProcessingCounts()
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def poll_once(self) -> int:
        """
        Fetch pending jobs and start the ones not already running.

        Returns:
            Number of jobs started
        """
        if len(self._in_flight) >= self.concurrency:
            return 0

        try:
            async with self.service_factory() as service:
                jobs = await service.list_pending_jobs(limit=self.batch_size)
        except PersistenceError as e:
            self.logger.error(f"Failed to poll pending scans: {e}")
            return 0

        started = 0
        for job in jobs:
            if len(self._in_flight) >= self.concurrency:
                break
            if job.id in self._in_flight:
                continue
            self._start(job)
            started += 1

        if started:
            self.logger.info(f"Started {started} scan jobs ({len(self._in_flight)} in flight)")
        return started

    def _start(self, job: ScanJob) -> None:
        self._in_flight.add(job.id)
        task = asyncio.create_task(self._run_job(job), name=f"scan-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_job(self, job: ScanJob) -> None:
        try:
            counts = await self.processor.process(job)
        except Exception as e:
            self.logger.exception(f"Unexpected error processing scan {job.id}: {e}")
            counts = ProcessingCounts(failed=1)
        finally:
            self._in_flight.discard(job.id)
        self.counts = self.counts + counts

    async def run(self, stop_event: asyncio.Event) -> ProcessingCounts:
        """
        Poll until ``stop_event`` is set, then shut down cleanly.

        Returns:
            Counts for every job processed during the run
        """
        self.logger.info(
            f"Scan worker started (concurrency={self.concurrency}, "
            f"poll_interval={self.poll_interval}s)"
        )
        try:
            while not stop_event.is_set():
                await self.poll_once()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

        self.logger.info(
            f"Scan worker stopped: {self.counts.succeeded} succeeded, {self.counts.failed} failed"
        )
        return self.counts

    async def shutdown(self) -> None:
        """Wait for in-flight jobs, then flush and close monitoring."""
        if self._tasks:
            self.logger.info(f"Waiting for {len(self._tasks)} in-flight scan jobs")
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if not await self.sink.flush(self.flush_timeout_ms):
            self.logger.warning(f"Monitoring flush did not finish within {self.flush_timeout_ms}ms")
        self.sink.close()


async def _serve() -> ProcessingCounts:
    storage = SupabaseStorageClient()
    extraction_client = ClaudeExtractionClient()
    sink = MonitoringSink(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment or settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
    )

    processor = ScanJobProcessor(
        storage=storage,
        extraction_client=extraction_client,
        sink=sink,
        bucket=settings.storage_bucket,
    )
    worker = ScanWorker(processor, sink)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    sink.open()
    try:
        await init_db()
        return await worker.run(stop_event)
    finally:
        sink.close()
        await storage.close()
        await close_db()


def main() -> None:
    """Console entry point."""
    setup_logging(settings.log_level, settings.use_json_logs)
    logger.info(f"Starting {settings.app_name} worker v{settings.app_version}")

    if settings.metrics_port:
        try:
            start_http_server(settings.metrics_port)
            logger.info(f"Prometheus metrics HTTP server started on port {settings.metrics_port}")
        except OSError as e:
            logger.warning(f"Failed to start Prometheus HTTP server on port {settings.metrics_port}: {e}")

    try:
        asyncio.run(_serve())
    except ScanflowException as e:
        logger.error(f"Failed to start worker: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
