"""
scanflow - background extraction worker for uploaded mapping sheet scans.

Takes a queued scan job, downloads the uploaded file from storage, runs it
through an AI extraction provider with retry and backoff, and persists the
structured result together with a cost record.
"""

__version__ = "0.1.0"
__author__ = "scanflow Team"
__license__ = "MIT"

__all__ = ["__version__"]
