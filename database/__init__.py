"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  flow = await store.get_flow("welcome")
"""
from database.models import (
    Base, FlowRow, NodeRow, ContactRow, SessionRow,
    MessageLogRow, ErrorLogRow,
)
from database.session import Database, get_database, get_session, init_db, close_db
from database.store_base import BaseFlowStore
from database.store import SqlFlowStore
from database.store_memory import InMemoryFlowStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "FlowRow", "NodeRow", "ContactRow", "SessionRow",
    "MessageLogRow", "ErrorLogRow",
    # Session management
    "Database", "get_database", "get_session", "init_db", "close_db",
    # Store interface
    "BaseFlowStore",
    # Store backends
    "SqlFlowStore", "InMemoryFlowStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
