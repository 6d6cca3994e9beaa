"""Claude (Anthropic) extraction provider.

Reads mapping sheet scans (PDF or image) and returns structured project,
contact and contractor data.
"""

from scanflow.extraction.claude.client import ClaudeExtractionClient, clean_json_response

__all__ = [
    "ClaudeExtractionClient",
    "clean_json_response",
]
