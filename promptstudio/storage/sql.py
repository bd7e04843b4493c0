"""
SQL metadata and queue storage.

Durable backend for users, sessions, records and the reclaim queue, on
anything SQLAlchemy can reach. Example DATABASE_URL values:

    sqlite:///./data/promptstudio.db         (single host)
    postgresql+psycopg2://user:pw@host/db    (several workers or hosts)

Documents are JSON rows keyed by (collection, id). A field that is ever
passed to increment() gets its own row in `counters`, so the quota add is
one conditional UPDATE evaluated by the database:

    UPDATE counters SET value = value + :delta
     WHERE collection = :c AND doc_id = :id AND field = :f
       AND value + :delta <= :ceiling

The driver is blocking, so every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from sqlalchemy import (
    JSON,
    BigInteger,
    Integer,
    String,
    UniqueConstraint,
    case,
    create_engine,
    delete,
    func,
    or_,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from promptstudio.core.utils import epoch_ms
from promptstudio.storage.base import (
    ContentStorage,
    MetadataStorage,
    QueueStorage,
    StorageProvider,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Tables
# =============================================================================


class Base(DeclarativeBase):
    pass


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("collection", "doc_id"),)

    # Insertion order, so query() pages the way the in-memory store does
    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    doc_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Counter(Base):
    __tablename__ = "counters"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    field: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    queue: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    body: Mapped[dict] = mapped_column(JSON, nullable=False)
    enqueued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Set while a consumer holds the message; ack deletes the row
    taken_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


# =============================================================================
# Engine
# =============================================================================


def create_database_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    connect_args: dict[str, Any] = {}
    if url.get_backend_name() == "sqlite":
        if not url.database or url.database == ":memory:":
            raise ValueError("In-memory SQLite is per-connection; leave DATABASE_URL empty instead")
        # Calls arrive from worker threads
        connect_args = {"check_same_thread": False}
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


class SqlDatabase:
    """Engine, session factory and table setup."""

    def __init__(self, database_url: str):
        self.engine = create_database_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def init_db(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(bind=self.engine)

    def transact(self, fn: Callable[[Session], T]) -> T:
        with self.SessionLocal() as session, session.begin():
            return fn(session)

    async def run(self, fn: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self.transact, fn)


# =============================================================================
# Metadata
# =============================================================================


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


class SqlMetadataStorage(MetadataStorage):
    """JSON documents plus separately stored counters."""

    def __init__(self, db: SqlDatabase):
        self.db = db

    @staticmethod
    def _find(session: Session, collection: str, id: str) -> Document | None:
        return (
            session.query(Document)
            .filter(Document.collection == collection, Document.doc_id == id)
            .one_or_none()
        )

    @staticmethod
    def _counters(session: Session, collection: str, ids: list[str]) -> dict[str, dict[str, int]]:
        found: dict[str, dict[str, int]] = {}
        if not ids:
            return found
        rows = session.query(Counter).filter(
            Counter.collection == collection, Counter.doc_id.in_(ids)
        )
        for row in rows:
            found.setdefault(row.doc_id, {})[row.field] = row.value
        return found

    @staticmethod
    def _row(doc: Document, counters: dict[str, int]) -> dict[str, Any]:
        return {
            **doc.data,
            **counters,
            "_id": doc.doc_id,
            "_updated_at": _iso(doc.updated_at),
        }

    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        def op(session: Session) -> None:
            doc = self._find(session, collection, id)
            if doc is None:
                session.add(Document(
                    collection=collection, doc_id=id, data=dict(data), updated_at=epoch_ms()
                ))
            else:
                doc.data = dict(data)
                doc.updated_at = epoch_ms()
            # A save replaces the whole document, counters included
            session.execute(
                delete(Counter).where(Counter.collection == collection, Counter.doc_id == id)
            )

        await self.db.run(op)

    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        def op(session: Session) -> dict[str, Any] | None:
            doc = self._find(session, collection, id)
            if doc is None:
                return None
            return self._row(doc, self._counters(session, collection, [id]).get(id, {}))

        return await self.db.run(op)

    async def delete(self, collection: str, id: str) -> bool:
        def op(session: Session) -> bool:
            session.execute(
                delete(Counter).where(Counter.collection == collection, Counter.doc_id == id)
            )
            result = session.execute(
                delete(Document).where(Document.collection == collection, Document.doc_id == id)
            )
            return result.rowcount > 0

        return await self.db.run(op)

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        def op(session: Session) -> list[dict[str, Any]]:
            q = session.query(Document).filter(Document.collection == collection)
            # String equality runs in the database; anything else is matched
            # after counters are merged in
            remaining: dict[str, Any] = {}
            for key, value in (filters or {}).items():
                if isinstance(value, str):
                    q = q.filter(Document.data[key].as_string() == value)
                else:
                    remaining[key] = value
            q = q.order_by(Document.row_id)
            if not remaining:
                q = q.offset(offset).limit(limit)

            docs = q.all()
            counters = self._counters(session, collection, [d.doc_id for d in docs])
            rows = [self._row(d, counters.get(d.doc_id, {})) for d in docs]
            if remaining:
                rows = [
                    row for row in rows
                    if all(row.get(key) == value for key, value in remaining.items())
                ]
                rows = rows[offset:offset + limit]
            return rows

        return await self.db.run(op)

    async def update(self, collection: str, id: str, updates: dict[str, Any]) -> bool:
        def op(session: Session) -> bool:
            doc = self._find(session, collection, id)
            if doc is None:
                return False
            counted = self._counters(session, collection, [id]).get(id, {})
            for key in counted.keys() & updates.keys():
                session.execute(
                    update(Counter)
                    .where(
                        Counter.collection == collection,
                        Counter.doc_id == id,
                        Counter.field == key,
                    )
                    .values(value=updates[key])
                    .execution_options(synchronize_session=False)
                )
            # Reassign so the JSON column is marked dirty
            doc.data = {**doc.data, **updates}
            doc.updated_at = epoch_ms()
            return True

        return await self.db.run(op)

    async def increment(
        self,
        collection: str,
        id: str,
        field: str,
        delta: int,
        ceiling: int | None = None,
        floor: int | None = None,
    ) -> int | None:
        return await asyncio.to_thread(
            self._increment, collection, id, field, delta, ceiling, floor
        )

    def _increment(
        self,
        collection: str,
        id: str,
        field: str,
        delta: int,
        ceiling: int | None,
        floor: int | None,
    ) -> int | None:
        where = (Counter.collection == collection, Counter.doc_id == id, Counter.field == field)
        new_value = Counter.value + delta
        if floor is not None:
            new_value = case((Counter.value + delta < floor, floor), else_=Counter.value + delta)

        stmt = update(Counter).where(*where)
        if ceiling is not None and delta > 0:
            stmt = stmt.where(Counter.value + delta <= ceiling)
        stmt = stmt.values(value=new_value).execution_options(synchronize_session=False)

        # Second pass runs after seeding the counter from the document
        for _ in range(2):
            with self.db.SessionLocal() as session, session.begin():
                if session.execute(stmt).rowcount:
                    return session.query(Counter.value).filter(*where).scalar()

                doc = self._find(session, collection, id)
                if doc is None:
                    return None
                if session.query(Counter.field).filter(*where).first() is not None:
                    # Exists, so the ceiling refused it
                    return None
                seed = int(doc.data.get(field) or 0)

            try:
                with self.db.SessionLocal() as session, session.begin():
                    session.add(Counter(collection=collection, doc_id=id, field=field, value=seed))
            except IntegrityError:
                logger.debug("Counter %s/%s.%s seeded concurrently", collection, id, field)
        return None


# =============================================================================
# Queue
# =============================================================================


class SqlQueueStorage(QueueStorage):
    """
    Table-backed queue with SQS-style visibility.

    A dequeued message stays in the table until acked; if it is not acked
    within `visibility_timeout` seconds it is handed out again.
    """

    def __init__(self, db: SqlDatabase, visibility_timeout: int = 300):
        self.db = db
        self.visibility_timeout = visibility_timeout

    async def enqueue(self, queue_name: str, message: dict[str, Any]) -> str:
        message_id = str(uuid.uuid4())

        def op(session: Session) -> None:
            session.add(QueueMessage(
                message_id=message_id,
                queue=queue_name,
                body=dict(message),
                enqueued_at=epoch_ms(),
            ))

        await self.db.run(op)
        return message_id

    async def dequeue(self, queue_name: str, wait_seconds: int = 0) -> dict[str, Any] | None:
        def op(session: Session) -> dict[str, Any] | None:
            now = epoch_ms()
            cutoff = now - self.visibility_timeout * 1000
            visible = or_(QueueMessage.taken_at.is_(None), QueueMessage.taken_at < cutoff)

            # Claim with a conditional update so two consumers never share one
            for _ in range(3):
                row = (
                    session.query(QueueMessage)
                    .filter(QueueMessage.queue == queue_name, visible)
                    .order_by(QueueMessage.seq)
                    .first()
                )
                if row is None:
                    return None
                claimed = session.execute(
                    update(QueueMessage)
                    .where(QueueMessage.seq == row.seq, visible)
                    .values(taken_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed:
                    return {"_message_id": row.message_id, **row.body}
            return None

        return await self.db.run(op)

    async def ack(self, queue_name: str, message_id: str) -> None:
        def op(session: Session) -> None:
            session.execute(
                delete(QueueMessage).where(
                    QueueMessage.queue == queue_name, QueueMessage.message_id == message_id
                )
            )

        await self.db.run(op)

    def depth(self, queue_name: str) -> int:
        """Number of messages waiting (not counting unacked)."""
        def op(session: Session) -> int:
            return (
                session.query(func.count(QueueMessage.seq))
                .filter(QueueMessage.queue == queue_name, QueueMessage.taken_at.is_(None))
                .scalar()
            )

        return self.db.transact(op)


# =============================================================================
# Factory
# =============================================================================


def create_sql_storage(database_url: str, content: ContentStorage | None = None) -> StorageProvider:
    """
    Create a StorageProvider whose metadata and queue live in a database.

    Tables are created on first use.
    """
    db = SqlDatabase(database_url)
    db.init_db()
    logger.info("Metadata database ready (%s)", db.engine.url.render_as_string(hide_password=True))
    return StorageProvider(
        content=content,
        metadata=SqlMetadataStorage(db),
        queue=SqlQueueStorage(db),
    )
