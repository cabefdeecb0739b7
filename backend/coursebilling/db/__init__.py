"""
Ledger persistence: models, repositories and the store.
"""

from .base import Base, utcnow
from .engine import create_db_engine
from .store import LedgerSession, LedgerStore

__all__ = ["Base", "utcnow", "create_db_engine", "LedgerSession", "LedgerStore"]
