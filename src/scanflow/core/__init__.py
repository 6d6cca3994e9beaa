"""Core configuration and utilities for scanflow."""

from scanflow.core.config import settings
from scanflow.core.logging import setup_logging

__all__ = ["settings", "setup_logging"]
