"""Database layer for scanflow."""

from scanflow.db.base import Base
from scanflow.db.session import (
    AsyncSessionLocal,
    close_db,
    engine,
    get_db_context,
    init_db,
)

__all__ = [
    "Base",
    "AsyncSessionLocal",
    "close_db",
    "engine",
    "get_db_context",
    "init_db",
]
