"""Durable mirror of the in-memory queue and ledger state.

Both services keep their authoritative state in memory and hand a JSON-ready
snapshot to :class:`SnapshotStore` after every mutation.  Writes are queued on a
single background thread so they never sit on the request path; a failed write
is logged and the in-memory state stays as it is.
"""

from __future__ import annotations
import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Optional
from threading import Lock

from sqlalchemy import create_engine, Column, String, Text, DateTime
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()

QUEUE_SNAPSHOT = "queue"
LEDGER_SNAPSHOT = "ledger"


class PersistenceFailure(RuntimeError):
    """Raised when a snapshot cannot be read or written."""


class Snapshot(Base):
    __tablename__ = "snapshots"

    name = Column(String, primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def make_engine(db_url: str) -> Engine:
    if db_url.startswith("sqlite") and ":memory:" in db_url:
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(db_url, connect_args={"check_same_thread": False} if db_url.startswith("sqlite") else {})


class SnapshotStore:
    def __init__(self, db_url: str = "sqlite:///:memory:", *, engine: Optional[Engine] = None):
        self.engine = engine or make_engine(db_url)
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot-writer")
        self._pending: list[Future] = []
        self._pending_lock = Lock()
        self._closed = False

    def load(self, name: str) -> Optional[dict]:
        """Return the stored snapshot or ``None`` when nothing usable is stored."""
        db = self.SessionLocal()
        try:
            row = db.get(Snapshot, name)
            if row is None:
                return None
            data = json.loads(row.payload)
        except (SQLAlchemyError, ValueError):
            logger.exception("failed to load %s snapshot; starting empty", name)
            return None
        finally:
            db.close()
        return data if isinstance(data, dict) else None

    def write(self, name: str, data: dict) -> None:
        payload = json.dumps(data, default=_json_default)
        db = self.SessionLocal()
        try:
            row = db.get(Snapshot, name)
            if row is None:
                db.add(Snapshot(name=name, payload=payload))
            else:
                row.payload = payload
                row.updated_at = datetime.utcnow()
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceFailure(f"could not persist {name} snapshot: {exc}") from exc
        finally:
            db.close()

    def save(self, name: str, data: dict) -> None:
        """Schedule a snapshot write without waiting for it."""
        if self._closed:
            logger.warning("snapshot store closed; dropping %s snapshot", name)
            return
        future = self._writer.submit(self._write_logged, name, data)
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def _write_logged(self, name: str, data: dict) -> None:
        try:
            self.write(name, data)
        except PersistenceFailure:
            logger.exception("snapshot write failed for %s", name)

    def flush(self, timeout: Optional[float] = None) -> None:
        with self._pending_lock:
            pending = list(self._pending)
            self._pending.clear()
        for future in pending:
            future.result(timeout=timeout)

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._writer.shutdown(wait=True)
        self.engine.dispose()
