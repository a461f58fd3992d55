"""Durable document storage over an embedded key-value database file."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import Column, Engine, LargeBinary, String, create_engine, event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .errors import NotFound, StoreUnavailable
from .models import StoredDocument

logger = logging.getLogger(__name__)

DOCUMENT_PREFIX = "doc:"
SEQUENCE_KEY = "meta:sequence"


class Base(DeclarativeBase):
    """Base class for the key-value table."""


class KVEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(LargeBinary, nullable=False)


def _set_sqlite_pragma(dbapi_conn, connection_record) -> None:  # noqa: ANN001
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


class KeyValueStore:
    """Byte-valued get/put/delete/scan, durable across process restarts."""

    def __init__(self, path: Path) -> None:
        self.path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            future=True,
        )
        event.listen(self.engine, "connect", _set_sqlite_pragma)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def session(self) -> Session:
        return self._sessions()

    def get(self, key: str) -> bytes | None:
        with self.session() as session:
            entry = session.get(KVEntry, key)
            return entry.value if entry is not None else None

    def put(self, key: str, value: bytes) -> None:
        with self.session() as session, session.begin():
            session.merge(KVEntry(key=key, value=value))

    def delete(self, key: str) -> bool:
        with self.session() as session, session.begin():
            entry = session.get(KVEntry, key)
            if entry is None:
                return False
            session.delete(entry)
            return True

    def scan(self, prefix: str = "") -> Iterator[tuple[str, bytes]]:
        with self.session() as session:
            stmt = select(KVEntry).where(KVEntry.key.startswith(prefix, autoescape=True)).order_by(KVEntry.key)
            rows = session.scalars(stmt).all()
        for row in rows:
            yield row.key, row.value

    def close(self) -> None:
        self.engine.dispose()


def _encode(document: StoredDocument) -> bytes:
    payload = {
        "document_id": document.document_id,
        "text": document.text,
        "metadata": document.metadata,
        "sequence": document.sequence,
        "revision": document.revision,
        "stored_at": document.stored_at.isoformat(),
    }
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def _decode(raw: bytes) -> StoredDocument:
    payload = json.loads(raw)
    return StoredDocument(
        document_id=payload["document_id"],
        text=payload["text"],
        metadata=payload.get("metadata", {}),
        sequence=int(payload.get("sequence", 0)),
        revision=int(payload.get("revision", 1)),
        stored_at=datetime.fromisoformat(payload["stored_at"]),
    )


class ContextStore:
    """Document lookups and writes keyed by document id.

    Absence becomes ``NotFound`` and database failures become
    ``StoreUnavailable``. Calls run in worker threads so a slow disk only
    suspends the calling task.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv
        self._write_lock = threading.Lock()

    @staticmethod
    def _key(document_id: str) -> str:
        return f"{DOCUMENT_PREFIX}{document_id}"

    async def get(self, document_id: str) -> StoredDocument:
        return await asyncio.to_thread(self._get, document_id)

    async def put(self, document_id: str, text: str, metadata: dict[str, Any] | None = None) -> StoredDocument:
        return await asyncio.to_thread(self._put, document_id, text, metadata or {})

    async def delete(self, document_id: str) -> None:
        await asyncio.to_thread(self._delete, document_id)

    async def scan(self, prefix: str = "") -> list[StoredDocument]:
        return await asyncio.to_thread(self._scan, prefix)

    def _get(self, document_id: str) -> StoredDocument:
        try:
            raw = self.kv.get(self._key(document_id))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"reading {document_id} failed: {exc}") from exc
        if raw is None:
            raise NotFound(f"document {document_id} not found")
        return _decode(raw)

    def _put(self, document_id: str, text: str, metadata: dict[str, Any]) -> StoredDocument:
        key = self._key(document_id)
        try:
            with self._write_lock, self.kv.session() as session, session.begin():
                counter = session.get(KVEntry, SEQUENCE_KEY)
                sequence = int(counter.value) + 1 if counter is not None else 1
                existing = session.get(KVEntry, key)
                revision = _decode(existing.value).revision + 1 if existing is not None else 1
                document = StoredDocument(
                    document_id=document_id,
                    text=text,
                    metadata=metadata,
                    sequence=sequence,
                    revision=revision,
                    stored_at=datetime.now(tz=timezone.utc),
                )
                session.merge(KVEntry(key=SEQUENCE_KEY, value=str(sequence).encode()))
                session.merge(KVEntry(key=key, value=_encode(document)))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"writing {document_id} failed: {exc}") from exc
        logger.debug("Stored %s revision %d (sequence %d)", document_id, revision, sequence)
        return document

    def _delete(self, document_id: str) -> None:
        try:
            removed = self.kv.delete(self._key(document_id))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"deleting {document_id} failed: {exc}") from exc
        if not removed:
            raise NotFound(f"document {document_id} not found")

    def _scan(self, prefix: str) -> list[StoredDocument]:
        try:
            return [_decode(raw) for _, raw in self.kv.scan(self._key(prefix))]
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"scanning documents failed: {exc}") from exc
