"""
Idempotency ledger — remembers which keyed notification jobs were delivered.

A queue may deliver the same job more than once (redelivery after a crash
between send and ack). Jobs that carry an idempotency key consult the ledger
before sending; a key already marked SENT is acknowledged without a second
send.

Backends:
  - sql:    SQLAlchemy async (table `notification_job_idempotency`)
  - memory: dict-based, single process (development, tests)
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from database.models import NotificationJobIdempotencyRow
from database.session import create_engine, create_session_factory, init_models, session_scope
from models.schemas import IdempotencyStatus

logger = structlog.get_logger()

_MAX_ERROR_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IdempotencyRecord:
    key: str
    kind: str
    status: IdempotencyStatus
    attempts: int = 0
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None


class IdempotencyStore(ABC):

    async def initialize(self) -> None:
        """Prepare the backend (create tables). No-op by default."""
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        ...

    async def get_status(self, key: str) -> Optional[IdempotencyStatus]:
        record = await self.get(key)
        return record.status if record else None

    @abstractmethod
    async def mark_sent(self, key: str, kind: str) -> None:
        """Record a successful send; bumps the attempt counter and clears the last error."""
        ...

    @abstractmethod
    async def mark_failed(self, key: str, kind: str, error: str) -> None:
        """Record a failed send attempt."""
        ...


class InMemoryIdempotencyStore(IdempotencyStore):

    def __init__(self):
        self._records: dict[str, IdempotencyRecord] = {}

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self._records.get(key)

    async def mark_sent(self, key: str, kind: str) -> None:
        record = self._records.setdefault(key, IdempotencyRecord(key, kind, IdempotencyStatus.SENT))
        record.status = IdempotencyStatus.SENT
        record.attempts += 1
        record.last_error = None
        record.sent_at = _utcnow()

    async def mark_failed(self, key: str, kind: str, error: str) -> None:
        record = self._records.setdefault(key, IdempotencyRecord(key, kind, IdempotencyStatus.FAILED))
        record.status = IdempotencyStatus.FAILED
        record.attempts += 1
        record.last_error = error[:_MAX_ERROR_LENGTH]


class SqlIdempotencyStore(IdempotencyStore):
    """Ledger backed by any SQLAlchemy-supported database."""

    def __init__(self, db_url: str, echo: bool = False):
        self._engine = create_engine(db_url, echo=echo)
        self._factory = create_session_factory(self._engine)

    async def initialize(self) -> None:
        await init_models(self._engine)

    async def close(self) -> None:
        await self._engine.dispose()

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        async with session_scope(self._factory) as db:
            row = await db.get(NotificationJobIdempotencyRow, key)
            return self._row_to_record(row) if row else None

    async def mark_sent(self, key: str, kind: str) -> None:
        async with session_scope(self._factory) as db:
            row = await db.get(NotificationJobIdempotencyRow, key)
            if row is None:
                row = NotificationJobIdempotencyRow(key=key, kind=kind, attempts=0)
                db.add(row)
            row.status = IdempotencyStatus.SENT.value
            row.attempts = (row.attempts or 0) + 1
            row.last_error = None
            row.sent_at = _utcnow()

    async def mark_failed(self, key: str, kind: str, error: str) -> None:
        async with session_scope(self._factory) as db:
            row = await db.get(NotificationJobIdempotencyRow, key)
            if row is None:
                row = NotificationJobIdempotencyRow(key=key, kind=kind, attempts=0)
                db.add(row)
            row.status = IdempotencyStatus.FAILED.value
            row.attempts = (row.attempts or 0) + 1
            row.last_error = error[:_MAX_ERROR_LENGTH]

    @staticmethod
    def _row_to_record(row: NotificationJobIdempotencyRow) -> IdempotencyRecord:
        return IdempotencyRecord(
            key=row.key,
            kind=row.kind,
            status=IdempotencyStatus(row.status),
            attempts=row.attempts or 0,
            last_error=row.last_error,
            sent_at=row.sent_at,
        )


def create_idempotency_store(config: dict[str, Any] = None) -> IdempotencyStore:
    """
    Factory: create the idempotency ledger backend.

    Args:
        config: dict with keys:
            idempotency_backend: "sql" | "memory"  (default: "memory")
            url: database URL for the sql backend
    """
    config = config or {}
    backend = config.get("idempotency_backend", "memory")

    if backend == "sql":
        store: IdempotencyStore = SqlIdempotencyStore(config.get("url", ""), echo=bool(config.get("echo", False)))
    elif backend == "memory":
        store = InMemoryIdempotencyStore()
    else:
        raise ValueError(f"Unknown idempotency backend: {backend!r}")

    logger.info("idempotency_store_created", backend=backend)
    return store
