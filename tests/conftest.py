"""
Pytest configuration and fixtures for scanflow tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

import io
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from pypdf import PdfWriter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from scanflow.db.base import Base
from scanflow.extraction.base import ExtractionResult
from scanflow.models.scan import MappingSheetScan, ScanStatus, UploadMode
from scanflow.monitoring.sink import MonitoringSink
from scanflow.services.extraction.retry import RetryConfig
from scanflow.services.scan_job_service import ScanJobService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def test_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def service_factory(session_factory):
    """Factory yielding a ScanJobService on a fresh session, as the worker does."""

    @asynccontextmanager
    async def factory():
        async with session_factory() as session:
            yield ScanJobService(session)

    return factory


@pytest_asyncio.fixture
async def make_scan(session_factory):
    """Create a scan row and return its id."""
    counter = {"n": 0}

    async def _make_scan(
        file_url: str = "scans/project-1/sheet.pdf",
        status: ScanStatus = ScanStatus.PENDING,
        upload_mode: UploadMode = UploadMode.EXISTING_PROJECT,
        selected_pages: list[int] | None = None,
    ) -> str:
        counter["n"] += 1
        scan = MappingSheetScan(
            file_url=file_url,
            file_name=file_url.rsplit("/", 1)[-1],
            upload_mode=upload_mode.value,
            status=status.value,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
        )
        scan.set_selected_pages(selected_pages)
        async with session_factory() as session:
            session.add(scan)
            await session.commit()
        return scan.id

    return _make_scan


@pytest_asyncio.fixture
async def load_scan(session_factory):
    """Read a scan back in a new session."""

    async def _load(scan_id: str) -> MappingSheetScan:
        async with session_factory() as session:
            return await session.get(MappingSheetScan, scan_id)

    return _load


# =============================================================================
# Pipeline collaborators
# =============================================================================


@pytest.fixture
def fast_retry_config() -> RetryConfig:
    """Retry policy with tiny delays and no jitter."""
    return RetryConfig(
        max_attempts=3,
        initial_delay_ms=10,
        max_delay_ms=100,
        backoff_multiplier=2.0,
        jitter_max_ms=0,
    )


@pytest.fixture
def mock_sleep():
    """Skip real backoff waits."""
    with patch("scanflow.services.extraction.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.fixture
def sample_pdf() -> bytes:
    """A three page blank PDF."""
    writer = PdfWriter()
    for _ in range(3):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def mock_sink() -> MagicMock:
    return MagicMock(spec=MonitoringSink)


def make_result(**overrides: Any) -> ExtractionResult:
    values: dict[str, Any] = {
        "success": True,
        "provider": "claude",
        "model": "claude-sonnet-4-5",
        "extracted_data": {"project": {"name": "Tower A"}},
        "input_tokens": 1200,
        "output_tokens": 300,
        "images_processed": 3,
        "cost_usd": 0.0081,
        "processing_time_ms": 950,
    }
    values.update(overrides)
    return ExtractionResult(**values)


class FakeExtractionClient:
    """Returns or raises the queued outcomes in order."""

    provider = "claude"

    def __init__(self, *outcomes: ExtractionResult | Exception):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[bytes, list[int] | None]] = []

    async def extract(self, document: bytes, selected_pages: list[int] | None = None):
        self.calls.append((document, selected_pages))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeStorage:
    """In-memory storage keyed by path."""

    def __init__(self, files: dict[str, bytes] | None = None, error: Exception | None = None):
        self.files = files or {}
        self.error = error
        self.downloads: list[str] = []

    async def download(self, path: str) -> bytes:
        self.downloads.append(path)
        if self.error is not None:
            raise self.error
        return self.files[path]


@pytest.fixture(name="make_result")
def make_result_fixture():
    return make_result


@pytest.fixture
def fake_client():
    """Build a FakeExtractionClient from queued outcomes."""
    return FakeExtractionClient


@pytest.fixture
def fake_storage():
    """Build a FakeStorage from files or an error."""
    return FakeStorage
