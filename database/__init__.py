"""
Database layer — idempotency ledger persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_idempotency_store
  store = create_idempotency_store({"idempotency_backend": "memory"})
  status = await store.get_status("email_123")
"""
from database.models import Base, NotificationJobIdempotencyRow
from database.session import create_engine, create_session_factory, session_scope, init_models
from database.idempotency import (
    IdempotencyRecord,
    IdempotencyStore,
    InMemoryIdempotencyStore,
    SqlIdempotencyStore,
    create_idempotency_store,
)

__all__ = [
    # ORM models
    "Base", "NotificationJobIdempotencyRow",
    # Session management
    "create_engine", "create_session_factory", "session_scope", "init_models",
    # Ledger
    "IdempotencyRecord", "IdempotencyStore",
    "InMemoryIdempotencyStore", "SqlIdempotencyStore",
    "create_idempotency_store",
]
