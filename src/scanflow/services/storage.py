"""
Supabase Storage access for uploaded scans.

Resolves the location stored on a job (bare path, public URL or signed URL)
into a bucket-relative path and downloads the file over HTTP.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import unquote, urlparse

import httpx

from scanflow.core.config import settings
from scanflow.core.exceptions import ConfigurationError, InputResolutionError, StorageDownloadError

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "mapping-sheet-scans"


class LocationForm(str, Enum):
    """How the job referenced the uploaded file."""

    PATH = "path"
    PUBLIC_URL = "public_url"
    SIGNED_URL = "signed_url"


@dataclass(frozen=True)
class StorageLocation:
    """A file inside a storage bucket."""

    bucket: str
    path: str
    form: LocationForm


def parse_storage_location(location: str | None, bucket: str = DEFAULT_BUCKET) -> StorageLocation:
    """
    Turn a job's file location into a bucket-relative storage path.

    Accepted forms:
        scans/abc.pdf
        https://x.supabase.co/storage/v1/object/public/<bucket>/scans/abc.pdf
        https://x.supabase.co/storage/v1/object/sign/<bucket>/scans/abc.pdf?token=...

    Args:
        location: Path or URL from the job payload
        bucket: Bucket the path must live in

    Returns:
        StorageLocation with the decoded path

    Raises:
        InputResolutionError: If no path can be derived
    """
    if location is None or not location.strip():
        raise InputResolutionError(location, "no file location on job")

    location = location.strip()

    if not location.lower().startswith(("http://", "https://")):
        path = location.lstrip("/")
        if not path:
            raise InputResolutionError(location, "empty path")
        return StorageLocation(bucket=bucket, path=path, form=LocationForm.PATH)

    parsed = urlparse(location)
    segments = parsed.path.split("/")

    # Path format: /storage/v1/object/{public|sign}/<bucket>/path/to/file.pdf
    try:
        bucket_index = next(i for i, seg in enumerate(segments) if unquote(seg) == bucket)
    except StopIteration:
        raise InputResolutionError(location, f"bucket '{bucket}' not found in URL") from None

    path = unquote("/".join(segments[bucket_index + 1 :])).strip("/")
    if not path:
        raise InputResolutionError(location, "URL has no file path after the bucket")

    is_signed = "sign" in segments[:bucket_index] or "token=" in parsed.query
    form = LocationForm.SIGNED_URL if is_signed else LocationForm.PUBLIC_URL
    return StorageLocation(bucket=bucket, path=path, form=form)


def resolve_storage_path(location: str | None, bucket: str = DEFAULT_BUCKET) -> str:
    """Resolve a job location to a bucket-relative path."""
    return parse_storage_location(location, bucket).path


class SupabaseStorageClient:
    """
    Downloads objects from a Supabase Storage bucket using the service role key.

    The underlying httpx client is created lazily and can be injected for
    testing.
    """

    def __init__(
        self,
        base_url: str | None = None,
        service_key: str | None = None,
        bucket: str | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.supabase_url or "").rstrip("/")
        self.service_key = service_key or settings.supabase_service_role_key
        self.bucket = bucket or settings.storage_bucket
        self.timeout_seconds = timeout_seconds or settings.storage_timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

        if not self.base_url:
            raise ConfigurationError("supabase_url")
        if not self.service_key:
            raise ConfigurationError("supabase_service_role_key")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    def object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{path.lstrip('/')}"

    async def download(self, path: str) -> bytes:
        """
        Download a file's bytes.

        Args:
            path: Bucket-relative path

        Returns:
            File content

        Raises:
            StorageDownloadError: On transport failure or non-2xx response
        """
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }

        try:
            response = await self._get_client().get(self.object_url(path), headers=headers)
        except httpx.HTTPError as e:
            raise StorageDownloadError(path, f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise StorageDownloadError(
                path,
                f"{response.status_code} {response.reason_phrase}".strip(),
                status_code=response.status_code,
            )

        logger.debug(f"Downloaded {len(response.content)} bytes from {self.bucket}/{path}")
        return response.content

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
