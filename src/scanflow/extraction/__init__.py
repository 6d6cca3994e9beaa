"""Extraction providers for uploaded mapping sheet scans."""

from scanflow.extraction.base import ExtractionClient, ExtractionResult

__all__ = [
    "ExtractionClient",
    "ExtractionResult",
]
