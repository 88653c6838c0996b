"""
Infrastructure: database sessions, keyed locks and notification events.
"""

from shared.infrastructure.db import get_db_context, safe_commit, create_db_engine
from shared.infrastructure.locks import KeyedLockManager, session_key, table_key

__all__ = [
    "get_db_context",
    "safe_commit",
    "create_db_engine",
    "KeyedLockManager",
    "session_key",
    "table_key",
]
