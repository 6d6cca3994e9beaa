"""Base types for extraction module."""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class ExtractionResult:
    """Result of a single extraction call against a provider."""

    success: bool
    provider: str
    model: str
    extracted_data: dict[str, Any] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    images_processed: int | None = None  # pages sent to the provider
    cost_usd: float = 0.0
    processing_time_ms: int = 0
    error: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "provider": self.provider,
            "model": self.model,
            "extracted_data": self.extracted_data,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "images_processed": self.images_processed,
            "cost_usd": self.cost_usd,
            "processing_time_ms": self.processing_time_ms,
            "error": self.error,
        }


@runtime_checkable
class ExtractionClient(Protocol):
    """
    A provider that turns scan bytes into structured content.

    Transport and HTTP failures are raised; a response that arrives but
    cannot be used is returned with ``success=False``.
    """

    provider: str

    async def extract(
        self,
        document: bytes,
        selected_pages: list[int] | None = None,
    ) -> ExtractionResult: ...
