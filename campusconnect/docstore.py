"""Document store adapter.

Documents are JSON objects grouped into named collections and persisted in a
single SQLAlchemy table. Updates accept field transforms (``array_union``,
``array_remove``, ``increment``, ``SERVER_TIMESTAMP``) that are resolved against
the stored document inside one transaction, so each transform is atomic for its
field. Listeners registered with :meth:`DocumentStore.subscribe` receive the
full ordered result of their query once on registration and again after every
committed write to the queried collection.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import database
from .models import Document
from .utils import format_timestamp, utcnow

logger = logging.getLogger("uvicorn.error")

SnapshotCallback = Callable[[list["DocumentSnapshot"]], None]
ErrorCallback = Callable[[Exception], None]


class StoreError(Exception):
    """Raised when the backing database rejects or fails an operation."""


class DocumentNotFoundError(StoreError):
    """Raised when updating a document that does not exist."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


@dataclass(frozen=True)
class ArrayUnion:
    values: tuple[Any, ...]


@dataclass(frozen=True)
class ArrayRemove:
    values: tuple[Any, ...]


@dataclass(frozen=True)
class Increment:
    amount: int | float
    minimum: int | float | None = None


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def array_union(*values: Any) -> ArrayUnion:
    """Add each value to a list field unless already present."""
    return ArrayUnion(tuple(_jsonable(v) for v in values))


def array_remove(*values: Any) -> ArrayRemove:
    """Remove every occurrence of each value from a list field."""
    return ArrayRemove(tuple(_jsonable(v) for v in values))


def increment(amount: int | float = 1, *, minimum: int | float | None = None) -> Increment:
    """Add ``amount`` to a numeric field, optionally clamping at ``minimum``."""
    return Increment(amount, minimum)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


def _resolve(current: Any, value: Any, now: datetime) -> Any:
    if isinstance(value, ArrayUnion):
        existing = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in existing:
                existing.append(item)
        return existing
    if isinstance(value, ArrayRemove):
        existing = list(current) if isinstance(current, list) else []
        return [item for item in existing if item not in value.values]
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        result = base + value.amount
        if value.minimum is not None:
            result = max(result, value.minimum)
        return result
    if value is SERVER_TIMESTAMP:
        return format_timestamp(now)
    return _jsonable(copy.deepcopy(value))


def apply_updates(
    data: Mapping[str, Any], updates: Mapping[str, Any], *, now: datetime | None = None
) -> dict[str, Any]:
    """Return a copy of ``data`` with ``updates`` (and their transforms) applied."""
    now = now or utcnow()
    merged = copy.deepcopy(dict(data))
    for key, value in updates.items():
        merged[key] = _resolve(merged.get(key), value, now)
    return merged


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    collection: str
    data: dict[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == "in":
        return left in right
    if op == "array_contains":
        return isinstance(left, list) and right in left
    if left is None or right is None:
        return False
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator {op!r}")


FILTER_OPERATORS = {"==", "!=", "<", "<=", ">", ">=", "in", "array_contains"}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator {self.op!r}")

    def matches(self, data: Mapping[str, Any]) -> bool:
        return _compare(self.op, data.get(self.field), _jsonable(self.value))


@dataclass(frozen=True)
class Query:
    collection: str
    filters: tuple[Filter, ...] = ()
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None

    def where(self, field_name: str, op: str, value: Any) -> Query:
        return replace(self, filters=self.filters + (Filter(field_name, op, value),))

    def ordered(self, field_name: str, *, descending: bool = False) -> Query:
        return replace(self, order_by=field_name, descending=descending)

    def limited(self, count: int | None) -> Query:
        return replace(self, limit=count)


def _order(
    snapshots: list[DocumentSnapshot], field_name: str, descending: bool
) -> list[DocumentSnapshot]:
    present = [s for s in snapshots if s.data.get(field_name) is not None]
    missing = [s for s in snapshots if s.data.get(field_name) is None]
    present.sort(key=lambda s: (s.data[field_name], s.id), reverse=descending)
    return present + missing


@dataclass(frozen=True)
class _WriteOp:
    kind: str
    collection: str
    doc_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    query: Query | None = None


class WriteBatch:
    """Collects writes and applies them in a single transaction."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._ops: list[_WriteOp] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> WriteBatch:
        self._ops.append(_WriteOp("set", collection, doc_id, dict(data)))
        return self

    def update(
        self, collection: str, doc_id: str, updates: Mapping[str, Any]
    ) -> WriteBatch:
        self._ops.append(_WriteOp("update", collection, doc_id, dict(updates)))
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self._ops.append(_WriteOp("delete", collection, doc_id))
        return self

    def delete_matching(self, query: Query) -> WriteBatch:
        """Delete every document matching ``query`` when the batch commits."""
        self._ops.append(_WriteOp("delete_matching", query.collection, "", query=query))
        return self

    def commit(self) -> list[int]:
        """Apply every write; returns the number of documents each one touched."""
        if self._committed:
            raise StoreError("Batch already committed")
        self._committed = True
        return self._store._commit(self._ops)


@dataclass(eq=False)
class _Listener:
    query: Query
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback | None
    active: bool = True


class DocumentStore:
    """Collection-based JSON document storage with realtime listeners."""

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory
        self._listeners: list[_Listener] = []
        self._lock = threading.RLock()

    @contextmanager
    def _session(self):
        factory = self._session_factory or database.SessionLocal
        session = factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(str(getattr(exc, "orig", exc))) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Reads

    def get(self, collection: str, doc_id: str) -> DocumentSnapshot | None:
        with self._session() as session:
            doc = session.get(Document, doc_id)
            if doc is None or doc.collection != collection:
                return None
            return DocumentSnapshot(doc.id, doc.collection, copy.deepcopy(doc.data or {}))

    def query(self, query: Query) -> list[DocumentSnapshot]:
        stmt = select(Document).where(Document.collection == query.collection)
        with self._session() as session:
            docs = session.scalars(stmt).all()
            snapshots = [
                DocumentSnapshot(doc.id, doc.collection, copy.deepcopy(doc.data or {}))
                for doc in docs
            ]
        snapshots = [
            s for s in snapshots if all(f.matches(s.data) for f in query.filters)
        ]
        if query.order_by:
            snapshots = _order(snapshots, query.order_by, query.descending)
        if query.limit is not None and query.limit >= 0:
            snapshots = snapshots[: query.limit]
        return snapshots

    # Writes

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = str(uuid.uuid4())
        self._commit([_WriteOp("set", collection, doc_id, dict(data))])
        return doc_id

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self._commit([_WriteOp("set", collection, doc_id, dict(data))])

    def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]) -> None:
        self._commit([_WriteOp("update", collection, doc_id, dict(updates))])

    def delete(self, collection: str, doc_id: str) -> None:
        self._commit([_WriteOp("delete", collection, doc_id)])

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def _commit(self, ops: list[_WriteOp]) -> list[int]:
        if not ops:
            return []
        now = utcnow()
        with self._session() as session:
            counts = [self._apply(session, op, now) for op in ops]
        self._notify({op.collection for op in ops})
        return counts

    def _apply(self, session, op: _WriteOp, now: datetime) -> int:
        if op.kind == "delete_matching":
            stmt = select(Document).where(Document.collection == op.collection)
            doomed = [
                doc
                for doc in session.scalars(stmt).all()
                if all(f.matches(doc.data or {}) for f in op.query.filters)
            ]
            for doc in doomed:
                session.delete(doc)
            session.flush()
            return len(doomed)
        doc = session.get(Document, op.doc_id)
        if doc is not None and doc.collection != op.collection:
            raise StoreError(f"Document id {op.doc_id} belongs to {doc.collection}")
        if op.kind == "set":
            data = apply_updates({}, op.payload, now=now)
            if doc is None:
                session.add(
                    Document(
                        id=op.doc_id,
                        collection=op.collection,
                        data=data,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                doc.data = data
                doc.updated_at = now
        elif op.kind == "update":
            if doc is None:
                raise DocumentNotFoundError(op.collection, op.doc_id)
            doc.data = apply_updates(doc.data or {}, op.payload, now=now)
            doc.updated_at = now
        elif op.kind == "delete":
            if doc is None:
                return 0
            session.delete(doc)
        else:
            raise StoreError(f"Unknown write kind {op.kind!r}")
        session.flush()
        return 1

    # Realtime

    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Register a listener and deliver its first snapshot immediately."""
        listener = _Listener(query, on_snapshot, on_error)
        with self._lock:
            self._listeners.append(listener)
        self._deliver(listener)

        def unsubscribe() -> None:
            with self._lock:
                listener.active = False
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _notify(self, collections: set[str]) -> None:
        with self._lock:
            targets = [l for l in self._listeners if l.query.collection in collections]
        for listener in targets:
            self._deliver(listener)

    def _deliver(self, listener: _Listener) -> None:
        if not listener.active:
            return
        try:
            snapshots = self.query(listener.query)
        except StoreError as exc:
            if listener.on_error is None:
                logger.exception(
                    "Snapshot query failed for collection %s", listener.query.collection
                )
                return
            self._invoke(listener.on_error, exc)
            return
        self._invoke(listener.on_snapshot, snapshots)

    @staticmethod
    def _invoke(callback: Callable[[Any], None], payload: Any) -> None:
        try:
            callback(payload)
        except Exception:
            logger.exception("Snapshot listener raised while handling an update")
