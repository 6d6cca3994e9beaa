"""
Error reporting sink backed by Sentry.

The sink is constructed once per process, opened at startup and closed on
shutdown. Without a DSN every call is a no-op. Reporting must never break
job processing, so every failure inside the sink is logged at DEBUG and
dropped.
"""

import asyncio
import contextlib
import logging
from collections.abc import Iterator
from typing import Any

import sentry_sdk

from scanflow.core.exceptions import ScanflowException

logger = logging.getLogger(__name__)


class MonitoringSink:
    """
    Process-wide error reporting sink.

    Example:
        sink = MonitoringSink(dsn=settings.sentry_dsn, environment="production")
        sink.open()
        with sink.job_scope({"scan_id": scan_id}):
            sink.add_breadcrumb("Downloading scan", {"path": path})
            ...
        await sink.flush(2000)
        sink.close()
    """

    def __init__(
        self,
        dsn: str | None = None,
        environment: str | None = None,
        release: str | None = None,
    ) -> None:
        self.dsn = dsn
        self.environment = environment
        self.release = release
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def open(self) -> None:
        """Initialize the Sentry client; inactive without a DSN."""
        if self._active:
            return
        if not self.dsn:
            logger.info("Monitoring disabled: no Sentry DSN configured")
            return
        try:
            sentry_sdk.init(
                dsn=self.dsn,
                environment=self.environment,
                release=self.release,
                traces_sample_rate=0.0,
            )
        except Exception as e:
            logger.debug(f"Monitoring init failed: {e}")
            return
        self._active = True
        logger.info(f"Monitoring enabled (environment={self.environment})")

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            sentry_sdk.get_client().close()
        except Exception as e:
            logger.debug(f"Monitoring close failed: {e}")

    @contextlib.contextmanager
    def job_scope(self, context: dict[str, Any] | None = None) -> Iterator[None]:
        """Isolate breadcrumbs and tags for one job."""
        if not self._active:
            yield
            return
        with sentry_sdk.isolation_scope() as scope:
            try:
                for key, value in (context or {}).items():
                    scope.set_tag(key, value)
            except Exception as e:
                logger.debug(f"Monitoring tag failed: {e}")
            yield

    def add_breadcrumb(self, message: str, data: dict[str, Any] | None = None) -> None:
        if not self._active:
            return
        try:
            sentry_sdk.add_breadcrumb(category="scan", message=message, data=data or {}, level="info")
        except Exception as e:
            logger.debug(f"Monitoring breadcrumb failed: {e}")

    def record_failure(self, error: BaseException | str, context: dict[str, Any] | None = None) -> None:
        """Report a failed job, with its context attached."""
        if not self._active:
            return
        try:
            with sentry_sdk.new_scope() as scope:
                scope.set_context("scan_job", context or {})
                if isinstance(error, ScanflowException):
                    scope.set_context("error", error.to_dict()["error"])
                for key in ("scan_id", "stage"):
                    if context and context.get(key) is not None:
                        scope.set_tag(key, str(context[key]))
                if isinstance(error, BaseException):
                    sentry_sdk.capture_exception(error)
                else:
                    sentry_sdk.capture_message(error, level="error")
        except Exception as e:
            logger.debug(f"Monitoring record_failure failed: {e}")

    def record_success(self, context: dict[str, Any] | None = None) -> None:
        if not self._active:
            return
        try:
            sentry_sdk.add_breadcrumb(
                category="scan", message="Scan job succeeded", data=context or {}, level="info"
            )
        except Exception as e:
            logger.debug(f"Monitoring record_success failed: {e}")

    async def flush(self, timeout_ms: int) -> bool:
        """
        Send buffered events, waiting at most ``timeout_ms``.

        Returns:
            True if the flush finished within the timeout
        """
        if not self._active:
            return True
        timeout = max(timeout_ms, 0) / 1000
        try:
            await asyncio.wait_for(asyncio.to_thread(sentry_sdk.flush, timeout), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Monitoring flush timed out after {timeout_ms}ms")
            return False
        except Exception as e:
            logger.debug(f"Monitoring flush failed: {e}")
            return False
        return True
