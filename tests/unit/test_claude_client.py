"""
Unit tests for the Claude extraction client.

The Anthropic SDK client is replaced with a mock; no network calls are made.
"""

import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from scanflow.extraction.base import ExtractionClient
from scanflow.extraction.claude.client import (
    ClaudeExtractionClient,
    calculate_cost,
    clean_json_response,
    detect_media_type,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _response(text: str, input_tokens: int = 1000, output_tokens: int = 200, stop_reason="end_turn"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason=stop_reason,
    )


@pytest.fixture
def sdk_client():
    client = MagicMock()
    client.messages.create = AsyncMock(
        return_value=_response('```json\n{"project": {"name": "Tower A"}, "confidence": 0.9}\n```')
    )
    return client


@pytest.fixture
def claude(sdk_client) -> ClaudeExtractionClient:
    return ClaudeExtractionClient(model="claude-sonnet-4-5", max_tokens=4096, client=sdk_client)


class TestHelpers:
    """Test response cleaning, format detection and pricing."""

    def test_clean_fenced_json(self):
        assert clean_json_response('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_clean_json_with_prose(self):
        text = 'Here is the data:\n{"a": {"b": 2}}\nLet me know if you need more.'
        assert clean_json_response(text) == '{"a": {"b": 2}}'

    def test_clean_plain_json(self):
        assert clean_json_response('  {"a": 1}  ') == '{"a": 1}'

    def test_detect_media_type(self, sample_pdf):
        assert detect_media_type(sample_pdf) == "application/pdf"
        assert detect_media_type(PNG_BYTES) == "image/png"
        assert detect_media_type(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
        assert detect_media_type(b"GIF89a") is None

    def test_sonnet_pricing(self):
        # $3 / $15 per million tokens
        assert calculate_cost("claude-sonnet-4-5", 1_000_000, 0) == 3.0
        assert calculate_cost("claude-sonnet-4-5-20250929", 0, 1_000_000) == 15.0
        assert calculate_cost("claude-sonnet-4-5", 1000, 200) == pytest.approx(0.006)

    def test_unknown_model_uses_default_price(self):
        assert calculate_cost("some-future-model", 1_000_000, 0) == 3.0


class TestExtract:
    """Test extraction calls."""

    def test_satisfies_protocol(self, claude):
        assert isinstance(claude, ExtractionClient)

    @pytest.mark.asyncio
    async def test_pdf_extraction(self, claude, sdk_client, sample_pdf):
        result = await claude.extract(sample_pdf)

        assert result.success is True
        assert result.provider == "claude"
        assert result.model == "claude-sonnet-4-5"
        assert result.extracted_data["project"]["name"] == "Tower A"
        assert result.input_tokens == 1000
        assert result.output_tokens == 200
        assert result.images_processed == 3
        assert result.cost_usd == pytest.approx(0.006)
        assert result.error is None

        kwargs = sdk_client.messages.create.await_args.kwargs
        assert kwargs["model"] == "claude-sonnet-4-5"
        assert kwargs["max_tokens"] == 4096
        document_block, text_block = kwargs["messages"][0]["content"]
        assert document_block["type"] == "document"
        assert document_block["source"]["media_type"] == "application/pdf"
        assert base64.standard_b64decode(document_block["source"]["data"]) == sample_pdf
        assert "Focus on" not in text_block["text"]

    @pytest.mark.asyncio
    async def test_page_hints_become_prompt(self, claude, sdk_client, sample_pdf):
        result = await claude.extract(sample_pdf, selected_pages=[3, 2])

        text_block = sdk_client.messages.create.await_args.kwargs["messages"][0]["content"][1]
        assert text_block["text"].startswith("Focus on pages 2 and 3")
        assert result.images_processed == 3

    @pytest.mark.asyncio
    async def test_out_of_range_hints_dropped(self, claude, sdk_client, sample_pdf):
        await claude.extract(sample_pdf, selected_pages=[2, 9])

        text_block = sdk_client.messages.create.await_args.kwargs["messages"][0]["content"][1]
        assert text_block["text"].startswith("Focus on page 2 of")

    @pytest.mark.asyncio
    async def test_image_extraction(self, claude, sdk_client):
        result = await claude.extract(PNG_BYTES)

        block = sdk_client.messages.create.await_args.kwargs["messages"][0]["content"][0]
        assert block["type"] == "image"
        assert block["source"]["media_type"] == "image/png"
        assert result.images_processed == 1

    @pytest.mark.asyncio
    async def test_invalid_json_is_semantic_failure(self, claude, sdk_client, sample_pdf):
        sdk_client.messages.create.return_value = _response("I could not read this sheet.")

        result = await claude.extract(sample_pdf)

        assert result.success is False
        assert "Invalid JSON" in result.error
        # Tokens were still spent
        assert result.input_tokens == 1000
        assert result.cost_usd > 0

    @pytest.mark.asyncio
    async def test_truncated_answer_noted(self, claude, sdk_client, sample_pdf):
        sdk_client.messages.create.return_value = _response('{"project": {', stop_reason="max_tokens")

        result = await claude.extract(sample_pdf)

        assert result.success is False
        assert "truncated" in result.error

    @pytest.mark.asyncio
    async def test_json_array_rejected(self, claude, sdk_client, sample_pdf):
        sdk_client.messages.create.return_value = _response("[1, 2]")

        result = await claude.extract(sample_pdf)

        assert result.success is False
        assert "JSON object" in result.error

    @pytest.mark.asyncio
    async def test_unreadable_pdf(self, claude, sdk_client):
        result = await claude.extract(b"%PDF-1.4 garbage without structure")

        assert result.success is False
        assert "Unreadable PDF" in result.error
        sdk_client.messages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_and_empty_input(self, claude, sdk_client):
        assert (await claude.extract(b"GIF89a....")).error == "Unsupported file type"
        assert (await claude.extract(b"")).error == "Empty document"
        sdk_client.messages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_api_errors_propagate(self, claude, sdk_client, sample_pdf):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        response = httpx.Response(429, request=request, headers={"retry-after": "5"})
        error = anthropic.RateLimitError("rate limited", response=response, body=None)
        sdk_client.messages.create.side_effect = error

        with pytest.raises(anthropic.RateLimitError) as exc_info:
            await claude.extract(sample_pdf)

        assert exc_info.value.status_code == 429


class TestConstruction:
    def test_sdk_retries_disabled(self):
        client = ClaudeExtractionClient(api_key="sk-ant-test")
        assert isinstance(client.client, anthropic.AsyncAnthropic)
        assert client.client.max_retries == 0
