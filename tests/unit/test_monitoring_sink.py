"""
Unit tests for the Sentry-backed monitoring sink.
"""

import time
from unittest.mock import patch

import pytest

from scanflow.core.exceptions import StorageDownloadError
from scanflow.monitoring.sink import MonitoringSink

DSN = "https://public@o0.ingest.sentry.io/0"


@pytest.fixture
def mock_sentry():
    with patch("scanflow.monitoring.sink.sentry_sdk") as sentry:
        yield sentry


@pytest.fixture
def active_sink(mock_sentry) -> MonitoringSink:
    sink = MonitoringSink(dsn=DSN, environment="test", release="scanflow@0.1.0")
    sink.open()
    return sink


class TestInactiveSink:
    """Without a DSN every call is a no-op."""

    @pytest.mark.asyncio
    async def test_calls_are_noops(self, mock_sentry):
        sink = MonitoringSink(dsn=None)
        sink.open()

        sink.add_breadcrumb("Downloaded scan", {"bytes": 10})
        sink.record_failure(RuntimeError("boom"), {"scan_id": "s1"})
        sink.record_success({"scan_id": "s1"})
        with sink.job_scope({"scan_id": "s1"}):
            pass

        assert sink.active is False
        assert await sink.flush(100) is True
        sink.close()
        mock_sentry.init.assert_not_called()
        mock_sentry.capture_exception.assert_not_called()
        mock_sentry.add_breadcrumb.assert_not_called()


class TestActiveSink:
    """Test reporting through the Sentry SDK."""

    def test_open_initializes_sdk(self, active_sink, mock_sentry):
        assert active_sink.active is True
        kwargs = mock_sentry.init.call_args.kwargs
        assert kwargs["dsn"] == DSN
        assert kwargs["environment"] == "test"
        assert kwargs["release"] == "scanflow@0.1.0"

    def test_open_is_idempotent(self, active_sink, mock_sentry):
        active_sink.open()
        mock_sentry.init.assert_called_once()

    def test_record_failure_with_exception(self, active_sink, mock_sentry):
        error = RuntimeError("download failed")
        scope = mock_sentry.new_scope.return_value.__enter__.return_value

        active_sink.record_failure(error, {"scan_id": "s1", "stage": "download"})

        mock_sentry.capture_exception.assert_called_once_with(error)
        scope.set_context.assert_called_once_with("scan_job", {"scan_id": "s1", "stage": "download"})
        scope.set_tag.assert_any_call("scan_id", "s1")
        scope.set_tag.assert_any_call("stage", "download")

    def test_record_failure_attaches_error_details(self, active_sink, mock_sentry):
        error = StorageDownloadError("a.pdf", "404 Not Found", status_code=404)
        scope = mock_sentry.new_scope.return_value.__enter__.return_value

        active_sink.record_failure(error, {"scan_id": "s1"})

        scope.set_context.assert_any_call(
            "error",
            {
                "code": "STORAGE_DOWNLOAD_ERROR",
                "message": "Failed to download 'a.pdf': 404 Not Found",
                "details": {"path": "a.pdf", "status_code": 404},
            },
        )

    def test_record_failure_with_message(self, active_sink, mock_sentry):
        active_sink.record_failure("Scan aborted", {"scan_id": "s1"})
        mock_sentry.capture_message.assert_called_once_with("Scan aborted", level="error")

    def test_breadcrumbs(self, active_sink, mock_sentry):
        active_sink.add_breadcrumb("Marked processing", {"scan_id": "s1"})

        kwargs = mock_sentry.add_breadcrumb.call_args.kwargs
        assert kwargs["message"] == "Marked processing"
        assert kwargs["data"] == {"scan_id": "s1"}

    def test_job_scope_tags(self, active_sink, mock_sentry):
        scope = mock_sentry.isolation_scope.return_value.__enter__.return_value

        with active_sink.job_scope({"scan_id": "s1"}):
            pass

        scope.set_tag.assert_called_once_with("scan_id", "s1")

    def test_sdk_errors_are_swallowed(self, active_sink, mock_sentry):
        mock_sentry.capture_exception.side_effect = RuntimeError("transport down")
        mock_sentry.add_breadcrumb.side_effect = RuntimeError("transport down")

        active_sink.record_failure(ValueError("x"), {})
        active_sink.add_breadcrumb("step")
        active_sink.record_success({})

    def test_close(self, active_sink, mock_sentry):
        active_sink.close()

        mock_sentry.get_client.return_value.close.assert_called_once()
        assert active_sink.active is False
        active_sink.record_failure(RuntimeError("after close"))
        mock_sentry.capture_exception.assert_not_called()


class TestFlush:
    """Test bounded flushing."""

    @pytest.mark.asyncio
    async def test_flush_completes(self, active_sink, mock_sentry):
        assert await active_sink.flush(2000) is True
        mock_sentry.flush.assert_called_once_with(2.0)

    @pytest.mark.asyncio
    async def test_flush_times_out(self, active_sink, mock_sentry):
        mock_sentry.flush.side_effect = lambda timeout: time.sleep(0.3)

        started = time.monotonic()
        assert await active_sink.flush(50) is False
        assert time.monotonic() - started < 0.25

    @pytest.mark.asyncio
    async def test_flush_error_returns_false(self, active_sink, mock_sentry):
        mock_sentry.flush.side_effect = RuntimeError("no transport")
        assert await active_sink.flush(100) is False

    def test_init_failure_leaves_sink_inactive(self, mock_sentry):
        mock_sentry.init.side_effect = Exception("bad dsn")
        sink = MonitoringSink(dsn="not-a-dsn")

        sink.open()

        assert sink.active is False

