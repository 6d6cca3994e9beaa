"""Claude client for mapping sheet extraction.

Sends the scan to the Anthropic Messages API as a document (PDF) or image
block and parses the JSON answer. SDK-level retries are disabled so the
caller's retry policy decides what is attempted again; API and transport
errors are raised unchanged.
"""

import base64
import io
import json
import logging
import time
from typing import Any

import anthropic
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from scanflow.core.config import settings
from scanflow.core.exceptions import ConfigurationError
from scanflow.extraction.base import ExtractionResult

logger = logging.getLogger(__name__)

PROVIDER = "claude"

# USD per million tokens (input, output), matched by model prefix
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4": (15.0, 75.0),
    "claude-sonnet-4": (3.0, 15.0),
    "claude-3-7-sonnet": (3.0, 15.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "claude-haiku-4": (1.0, 5.0),
    "claude-3-5-haiku": (0.8, 4.0),
}
DEFAULT_PRICING = MODEL_PRICING["claude-sonnet-4"]

SYSTEM_PROMPT = (
    "You extract data from scanned construction project mapping sheets. "
    "Respond with a single JSON object and nothing else."
)

EXTRACTION_PROMPT = """Read this mapping sheet and return JSON with these keys:

{
  "project": {"name": str|null, "address": str|null, "value": str|null,
              "builder": str|null, "start_date": str|null, "finish_date": str|null},
  "site_contacts": [{"role": str, "name": str|null, "phone": str|null, "email": str|null}],
  "contractor_roles": [{"role": str, "company": str, "eba": bool|null}],
  "trade_contractors": [{"trade": str, "company": str, "estimated_workers": int|null,
                         "eba": bool|null}],
  "notes": str|null,
  "confidence": float
}

Use null for anything you cannot read. Do not invent values."""


def clean_json_response(content: str) -> str:
    """
    Strip markdown fences and surrounding prose from a JSON answer.

    Args:
        content: Raw text returned by the model

    Returns:
        The JSON portion of the answer
    """
    content = content.strip()

    if content[:7].lower() == "```json":
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]

    start = content.find("{")
    end = content.rfind("}")
    if start >= 0 and end > start:
        content = content[start : end + 1]

    return content.strip()


def detect_media_type(document: bytes) -> str | None:
    """Identify supported formats from magic bytes."""
    if document.startswith(b"%PDF"):
        return "application/pdf"
    if document.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if document.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    return None


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost in USD for a call, from the per-model price table."""
    input_price, output_price = next(
        (price for prefix, price in MODEL_PRICING.items() if model.startswith(prefix)),
        DEFAULT_PRICING,
    )
    cost = (input_tokens * input_price + output_tokens * output_price) / 1_000_000
    return round(cost, 6)


def format_page_hint(pages: list[int]) -> str:
    if len(pages) == 1:
        return f"Focus on page {pages[0]} of the document."
    listed = ", ".join(str(p) for p in pages[:-1])
    return f"Focus on pages {listed} and {pages[-1]} of the document."


class ClaudeExtractionClient:
    """
    Extraction provider backed by the Anthropic Messages API.

    Example:
        client = ClaudeExtractionClient(api_key="sk-ant-...")
        result = await client.extract(pdf_bytes, selected_pages=[1, 2])
        if result.success:
            print(result.extracted_data["project"])
    """

    provider = PROVIDER

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        """Initialize the Claude client.

        Args:
            api_key: Anthropic API key. Defaults to settings.anthropic_api_key.
            model: Model name. Defaults to settings.claude_model.
            max_tokens: Output token limit per call.
            client: Preconfigured SDK client (used in tests).
        """
        self.model = model or settings.claude_model
        self.max_tokens = max_tokens or settings.extraction_max_tokens

        if client is not None:
            self.client = client
        else:
            api_key = api_key or settings.anthropic_api_key
            if not api_key:
                raise ConfigurationError("anthropic_api_key")
            self.client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def extract(
        self,
        document: bytes,
        selected_pages: list[int] | None = None,
    ) -> ExtractionResult:
        """
        Extract structured mapping sheet data from a scan.

        Args:
            document: PDF, PNG or JPEG bytes
            selected_pages: 1-indexed pages to focus on (hint only)

        Returns:
            ExtractionResult; success is False for unusable input or answers

        Raises:
            anthropic.APIError: On API or transport failure
        """
        start_time = time.monotonic()

        media_type = detect_media_type(document) if document else None
        if media_type is None:
            reason = "Empty document" if not document else "Unsupported file type"
            return self._failure(reason, start_time)

        if media_type == "application/pdf":
            try:
                page_count = len(PdfReader(io.BytesIO(document)).pages)
            except (PyPdfError, ValueError, KeyError) as e:
                return self._failure(f"Unreadable PDF: {e}", start_time)
        else:
            page_count = 1

        pages = self._valid_pages(selected_pages, page_count)
        content = self._build_content(document, media_type, pages)

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": content}],
        )

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        text = "".join(block.text for block in response.content if block.type == "text")

        result = ExtractionResult(
            success=True,
            provider=self.provider,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            images_processed=page_count,
            cost_usd=calculate_cost(self.model, input_tokens, output_tokens),
        )

        try:
            data = json.loads(clean_json_response(text))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse Claude response as JSON: {e}")
            result.success = False
            result.error = f"Invalid JSON in model response: {e}"
        else:
            if isinstance(data, dict):
                result.extracted_data = data
            else:
                result.success = False
                result.error = f"Expected a JSON object, got {type(data).__name__}"

        if response.stop_reason == "max_tokens" and not result.success:
            result.error = f"{result.error} (response truncated at {self.max_tokens} tokens)"

        result.processing_time_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            f"Claude extraction finished: success={result.success} "
            f"tokens={result.total_tokens} cost=${result.cost_usd:.4f} "
            f"time={result.processing_time_ms}ms"
        )
        return result

    def _valid_pages(self, selected_pages: list[int] | None, page_count: int) -> list[int]:
        if not selected_pages:
            return []
        pages = sorted({p for p in selected_pages if 1 <= p <= page_count})
        dropped = sorted(set(selected_pages) - set(pages))
        if dropped:
            logger.warning(
                f"Ignoring page hints outside 1-{page_count}: {', '.join(map(str, dropped))}"
            )
        return pages

    def _build_content(
        self,
        document: bytes,
        media_type: str,
        pages: list[int],
    ) -> list[dict[str, Any]]:
        source = {
            "type": "base64",
            "media_type": media_type,
            "data": base64.standard_b64encode(document).decode("ascii"),
        }
        block_type = "document" if media_type == "application/pdf" else "image"

        prompt = EXTRACTION_PROMPT
        if pages:
            prompt = f"{format_page_hint(pages)}\n\n{prompt}"

        return [
            {"type": block_type, "source": source},
            {"type": "text", "text": prompt},
        ]

    def _failure(self, error: str, start_time: float) -> ExtractionResult:
        logger.warning(f"Claude extraction not attempted: {error}")
        return ExtractionResult(
            success=False,
            provider=self.provider,
            model=self.model,
            error=error,
            processing_time_ms=int((time.monotonic() - start_time) * 1000),
        )
