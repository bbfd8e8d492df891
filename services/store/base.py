"""Document store contract: CRUD, ordered queries, batches, transactions and change listeners."""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from shared.enums import ChangeType
from shared.errors import DocumentNotFoundError, StoreError, TransactionConflictError
from shared.utils import generate_id, setup_logging

logger = setup_logging("document-store")

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


SERVER_TIMESTAMP = _ServerTimestamp()
DELETE_FIELD = _DeleteField()


class ArrayUnion:
    """Field transform adding values to an array unless already present."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)


class ArrayRemove:
    """Field transform removing every occurrence of the given values."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)


def split_path(path: str) -> list[str]:
    parts = [part for part in path.strip("/").split("/") if part]
    if not parts:
        raise StoreError("Empty store path")
    return parts


def document_path(path: str) -> str:
    parts = split_path(path)
    if len(parts) % 2:
        raise StoreError(f"Not a document path: {path}")
    return "/".join(parts)


def collection_path(path: str) -> str:
    parts = split_path(path)
    if not len(parts) % 2:
        raise StoreError(f"Not a collection path: {path}")
    return "/".join(parts)


def parent_collection(path: str) -> str:
    return path.rsplit("/", 1)[0]


@dataclass
class StoredDocument:
    """A document as persisted by a driver."""

    path: str
    data: dict[str, Any]
    create_time: datetime
    update_time: datetime
    version: int

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def collection(self) -> str:
        return parent_collection(self.path)


@dataclass(frozen=True)
class DocumentSnapshot:
    """Read-only view of a document at one point in time."""

    path: str
    data: dict[str, Any] | None
    create_time: datetime | None = None
    update_time: datetime | None = None
    version: int = 0

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.data) if self.data is not None else {}

    @classmethod
    def from_stored(cls, path: str, stored: StoredDocument | None) -> "DocumentSnapshot":
        if stored is None:
            return cls(path=path, data=None)
        return cls(
            path=stored.path,
            data=copy.deepcopy(stored.data),
            create_time=stored.create_time,
            update_time=stored.update_time,
            version=stored.version,
        )


@dataclass(frozen=True)
class DocumentChange:
    type: ChangeType
    document: DocumentSnapshot


@dataclass(frozen=True)
class QuerySnapshot:
    documents: list[DocumentSnapshot]
    changes: list[DocumentChange]

    @property
    def size(self) -> int:
        return len(self.documents)


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        try:
            return op(left, right)
        except TypeError:
            return False

    return check


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda left, right: left == right,
    "!=": lambda left, right: left != right,
    "<": _compare(lambda left, right: left < right),
    "<=": _compare(lambda left, right: left <= right),
    ">": _compare(lambda left, right: left > right),
    ">=": _compare(lambda left, right: left >= right),
    "in": lambda left, right: left in right,
    "array_contains": lambda left, right: isinstance(left, list) and right in left,
}


def _sort_key(value: Any) -> tuple:
    # Missing values sort first, as null does in the hosted store
    return (0,) if value is None else (1, value)


@dataclass(frozen=True)
class Query:
    """Filtered, ordered view over one collection."""

    collection_path: str
    filters: tuple[tuple[str, str, Any], ...] = ()
    orders: tuple[tuple[str, bool], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "collection_path", collection_path(self.collection_path))

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        if op not in _OPERATORS:
            raise StoreError(f"Unsupported query operator: {op}")
        return Query(self.collection_path, self.filters + ((field_name, op, value),), self.orders)

    def order_by(self, field_name: str, descending: bool = False) -> "Query":
        return Query(self.collection_path, self.filters, self.orders + ((field_name, descending),))

    def matches(self, data: dict[str, Any]) -> bool:
        return all(_OPERATORS[op](data.get(name), value) for name, op, value in self.filters)

    def sort(self, documents: list[DocumentSnapshot]) -> list[DocumentSnapshot]:
        result = sorted(documents, key=lambda snap: snap.id)
        for name, descending in reversed(self.orders):
            result.sort(key=lambda snap: _sort_key(snap.get(name)), reverse=descending)
        return result


@dataclass
class _Write:
    kind: str
    path: str
    data: dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class _ConflictDetected(Exception):
    """A transaction read went stale before commit."""


class _Listener:
    def __init__(
        self,
        on_snapshot: Callable[[Any], None],
        on_error: Callable[[Exception], None] | None,
    ) -> None:
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    def notify(self, payload: Any) -> None:
        if not self.active:
            return
        try:
            self.on_snapshot(payload)
        except Exception:
            logger.exception("Listener callback failed; listener stays registered")

    def fail(self, exc: Exception) -> None:
        if not self.active or self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            logger.exception("Listener error callback failed")

    def handle(self, changed: list[tuple[str, StoredDocument | None]]) -> None:
        raise NotImplementedError


class _DocumentListener(_Listener):
    def __init__(self, path: str, on_snapshot, on_error) -> None:
        super().__init__(on_snapshot, on_error)
        self.path = path

    def handle(self, changed: list[tuple[str, StoredDocument | None]]) -> None:
        matching = [stored for path, stored in changed if path == self.path]
        if matching:
            self.notify(DocumentSnapshot.from_stored(self.path, matching[-1]))


class _QueryListener(_Listener):
    def __init__(self, query: Query, on_snapshot, on_error) -> None:
        super().__init__(on_snapshot, on_error)
        self.query = query
        self.results: dict[str, DocumentSnapshot] = {}

    def seed(self, documents: list[StoredDocument]) -> QuerySnapshot:
        for stored in documents:
            if self.query.matches(stored.data):
                snap = DocumentSnapshot.from_stored(stored.path, stored)
                self.results[stored.path] = snap
        ordered = self.query.sort(list(self.results.values()))
        changes = [DocumentChange(ChangeType.ADDED, snap) for snap in ordered]
        return QuerySnapshot(documents=ordered, changes=changes)

    def handle(self, changed: list[tuple[str, StoredDocument | None]]) -> None:
        changes: list[DocumentChange] = []
        for path, stored in changed:
            if parent_collection(path) != self.query.collection_path:
                continue
            was_member = path in self.results
            is_member = stored is not None and self.query.matches(stored.data)
            if is_member:
                snap = DocumentSnapshot.from_stored(path, stored)
                self.results[path] = snap
                changes.append(
                    DocumentChange(ChangeType.MODIFIED if was_member else ChangeType.ADDED, snap)
                )
            elif was_member:
                changes.append(DocumentChange(ChangeType.REMOVED, self.results.pop(path)))
        if changes:
            self.notify(
                QuerySnapshot(documents=self.query.sort(list(self.results.values())), changes=changes)
            )


class ListenerRegistration:
    """Handle returned by listen_* calls; unsubscribe() stops all further callbacks."""

    def __init__(self, store: "DocumentStore", listener: _Listener) -> None:
        self._store = store
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener.active

    def unsubscribe(self) -> None:
        self._store._remove_listener(self._listener)


class WriteBatch:
    """Set of writes applied atomically on commit()."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._writes: list[_Write] = []
        self._committed = False

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._writes.append(_Write("set", document_path(path), dict(data), merge))
        return self

    def update(self, path: str, fields: dict[str, Any]) -> "WriteBatch":
        self._writes.append(_Write("update", document_path(path), dict(fields)))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self._writes.append(_Write("delete", document_path(path)))
        return self

    def __len__(self) -> int:
        return len(self._writes)

    async def commit(self) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        self._committed = True
        await self._store._commit_writes(self._writes)


class Transaction:
    """Optimistic transaction: reads are version-checked when the writes commit."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._reads: dict[str, int] = {}
        self._writes: list[_Write] = []

    async def get(self, path: str) -> DocumentSnapshot:
        if self._writes:
            raise StoreError("Transactions must perform all reads before writes")
        snapshot = await self._store.get(path)
        self._reads[snapshot.path] = snapshot.version
        return snapshot

    def new_document_path(self, collection: str) -> str:
        return f"{collection_path(collection)}/{self._store.new_id()}"

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> "Transaction":
        self._writes.append(_Write("set", document_path(path), dict(data), merge))
        return self

    def update(self, path: str, fields: dict[str, Any]) -> "Transaction":
        self._writes.append(_Write("update", document_path(path), dict(fields)))
        return self

    def delete(self, path: str) -> "Transaction":
        self._writes.append(_Write("delete", document_path(path)))
        return self


def _resolve(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {key: _resolve(item, now) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve(item, now) for item in value]
    return copy.deepcopy(value)


def apply_fields(base: dict[str, Any], fields: dict[str, Any], now: datetime) -> dict[str, Any]:
    """Apply top-level field values and transforms to a copy of base."""
    result = copy.deepcopy(base)
    for key, value in fields.items():
        if value is DELETE_FIELD:
            result.pop(key, None)
        elif isinstance(value, ArrayUnion):
            existing = list(result.get(key) or [])
            for item in value.values:
                if item not in existing:
                    existing.append(copy.deepcopy(item))
            result[key] = existing
        elif isinstance(value, ArrayRemove):
            result[key] = [item for item in (result.get(key) or []) if item not in value.values]
        else:
            result[key] = _resolve(value, now)
    return result


class DocumentStore(ABC):
    """Base class for store drivers.

    Drivers persist documents; this class owns write semantics, field transforms,
    optimistic transactions and listener fan-out. Listener callbacks run after
    the write commits, in commit order, and never while the write lock is held.
    """

    driver_name = "base"

    def __init__(self, transaction_max_attempts: int = 5) -> None:
        self.transaction_max_attempts = transaction_max_attempts
        self._listeners: list[_Listener] = []
        self._lock = asyncio.Lock()
        self._last_timestamp: datetime | None = None
        self._relay: Any = None

    # Driver hooks
    @abstractmethod
    def _load(self, path: str) -> StoredDocument | None:
        """Return the stored document at path, or None."""

    @abstractmethod
    def _load_collection(self, collection: str) -> list[StoredDocument]:
        """Return every document directly inside a collection."""

    @abstractmethod
    def _persist(
        self,
        upserts: list[StoredDocument],
        deletes: list[str],
        preconditions: dict[str, int] | None = None,
    ) -> None:
        """Atomically write upserts and deletes."""

    def new_id(self) -> str:
        return generate_id()

    def attach_relay(self, relay: Any) -> None:
        self._relay = relay

    @property
    def relay(self) -> Any:
        return self._relay

    # Reads
    async def get(self, path: str) -> DocumentSnapshot:
        path = document_path(path)
        return DocumentSnapshot.from_stored(path, self._load(path))

    async def query(self, query: Query | str) -> list[DocumentSnapshot]:
        if isinstance(query, str):
            query = Query(query)
        matching = [
            DocumentSnapshot.from_stored(stored.path, stored)
            for stored in self._load_collection(query.collection_path)
            if query.matches(stored.data)
        ]
        return query.sort(matching)

    # Writes
    async def set(self, path: str, data: dict[str, Any], merge: bool = False) -> DocumentSnapshot:
        path = document_path(path)
        changed = await self._commit_writes([_Write("set", path, dict(data), merge)])
        return DocumentSnapshot.from_stored(path, dict(changed).get(path))

    async def add(self, collection: str, data: dict[str, Any]) -> DocumentSnapshot:
        return await self.set(f"{collection_path(collection)}/{self.new_id()}", data)

    async def update(self, path: str, fields: dict[str, Any]) -> DocumentSnapshot:
        path = document_path(path)
        changed = await self._commit_writes([_Write("update", path, dict(fields))])
        return DocumentSnapshot.from_stored(path, dict(changed).get(path))

    async def delete(self, path: str) -> None:
        await self._commit_writes([_Write("delete", document_path(path))])

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int | None = None,
    ) -> T:
        """Run fn against a fresh Transaction until its writes commit without conflict."""
        attempts = max_attempts or self.transaction_max_attempts
        for attempt in range(1, attempts + 1):
            transaction = Transaction(self)
            result = await fn(transaction)
            try:
                await self._commit_writes(transaction._writes, preconditions=transaction._reads)
                return result
            except _ConflictDetected:
                logger.debug("Transaction conflict on attempt %d/%d", attempt, attempts)
        raise TransactionConflictError(f"Transaction did not commit after {attempts} attempts")

    # Listeners
    def listen_document(
        self,
        path: str,
        on_snapshot: Callable[[DocumentSnapshot], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> ListenerRegistration:
        path = document_path(path)
        current = self._load(path)
        listener = _DocumentListener(path, on_snapshot, on_error)
        self._listeners.append(listener)
        registration = ListenerRegistration(self, listener)
        listener.notify(DocumentSnapshot.from_stored(path, current))
        return registration

    def listen_query(
        self,
        query: Query | str,
        on_snapshot: Callable[[QuerySnapshot], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> ListenerRegistration:
        if isinstance(query, str):
            query = Query(query)
        documents = self._load_collection(query.collection_path)
        listener = _QueryListener(query, on_snapshot, on_error)
        initial = listener.seed(documents)
        self._listeners.append(listener)
        registration = ListenerRegistration(self, listener)
        listener.notify(initial)
        return registration

    def dispatch_remote(self, changed: list[tuple[str, StoredDocument | None]]) -> None:
        """Deliver changes committed by another process to local listeners."""
        self._dispatch(changed)

    def fail_listeners(self, exc: Exception) -> None:
        """Report a stream failure to every listener with an error callback."""
        for listener in list(self._listeners):
            listener.fail(exc)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def close(self) -> None:
        for listener in self._listeners:
            listener.active = False
        self._listeners.clear()

    # Internals
    def _remove_listener(self, listener: _Listener) -> None:
        listener.active = False
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _next_timestamp(self) -> datetime:
        now = datetime.now(UTC)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    async def _commit_writes(
        self,
        writes: list[_Write],
        preconditions: dict[str, int] | None = None,
    ) -> list[tuple[str, StoredDocument | None]]:
        async with self._lock:
            for path, version in (preconditions or {}).items():
                current = self._load(path)
                if (current.version if current else 0) != version:
                    raise _ConflictDetected(path)
            changed = self._apply(writes, preconditions)
        if changed:
            self._dispatch(changed)
            if self._relay is not None:
                self._relay.publish(changed)
        return changed

    def _apply(
        self,
        writes: list[_Write],
        preconditions: dict[str, int] | None,
    ) -> list[tuple[str, StoredDocument | None]]:
        if not writes:
            return []
        now = self._next_timestamp()
        version = (now - _EPOCH) // timedelta(microseconds=1)
        originals: dict[str, StoredDocument | None] = {}
        pending: dict[str, StoredDocument | None] = {}

        for write in writes:
            if write.path not in originals:
                originals[write.path] = self._load(write.path)
                pending[write.path] = originals[write.path]
            current = pending[write.path]

            if write.kind == "delete":
                pending[write.path] = None
                continue
            if write.kind == "update":
                if current is None:
                    raise DocumentNotFoundError(write.path)
                data = apply_fields(current.data, write.data, now)
            else:
                base = current.data if (write.merge and current is not None) else {}
                data = apply_fields(base, write.data, now)

            pending[write.path] = StoredDocument(
                path=write.path,
                data=data,
                create_time=current.create_time if current is not None else now,
                update_time=now,
                version=version,
            )

        changed = [
            (path, pending[path])
            for path in pending
            if originals[path] is not None or pending[path] is not None
        ]
        upserts = [stored for _, stored in changed if stored is not None]
        deletes = [path for path, stored in changed if stored is None]
        self._persist(upserts, deletes, preconditions)
        return changed

    def _dispatch(self, changed: list[tuple[str, StoredDocument | None]]) -> None:
        for listener in list(self._listeners):
            if listener.active:
                listener.handle(changed)
