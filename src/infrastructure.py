"""
infrastructure.py

In-memory implementation of the document store contract, the development
email sender, and the wiring that assembles a ready-to-use UnitOfWork.

The store keeps every collection in plain Python dicts for the lifetime of
the process, which makes it suitable for local development, demos and tests.
It still honours the full contract the workflows rely on:

  - optimistic transactions: each document carries a version; a transaction
    records the versions it read, buffers its writes and commits only if
    none of those documents changed in the meantime, otherwise the
    transaction function is re-run (bounded by max_attempts);
  - reads inside a transaction must all come before its first write;
  - write batches hold at most `batch_limit` operations and commit atomically.

To swap in a hosted document database, implement AbstractDocumentStore from
repository.py and pass it to UnitOfWork; nothing in service.py,
application.py or api.py needs to change.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from application import UnitOfWork
from config import Settings
from events import EventBus
from notifications import AbstractEmailSender, EmailMessage, EmailNotificationService
from repository import (
    BATCH_WRITE_LIMIT,
    AbstractDocumentStore,
    AbstractTransaction,
    AbstractWriteBatch,
    DocumentRef,
    DocumentSnapshot,
    FieldFilter,
    StoreError,
    TransactionConflictError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Write operations: ("create" | "set" | "update", ref, data)
_Write = Tuple[str, DocumentRef, Dict[str, Any]]


def _normalize(value: Any) -> Any:
    """Deep-copy a value into its stored form; enums are stored by value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return copy.deepcopy(value)


def _matches(data: Dict[str, Any], flt: FieldFilter) -> bool:
    value = data.get(flt.field)
    expected = _normalize(flt.value)
    op = flt.op
    if op == "==":
        return value == expected
    if op == "!=":
        return value != expected
    if op == "in":
        return value in expected
    if op == "not-in":
        return value not in expected
    if op == "array-contains":
        return isinstance(value, list) and expected in value
    if value is None:
        return False
    try:
        if op == "<":
            return value < expected
        if op == "<=":
            return value <= expected
        if op == ">":
            return value > expected
        if op == ">=":
            return value >= expected
    except TypeError:
        return False
    raise StoreError(f"Unsupported filter operator: {op!r}")


class _VersionConflict(Exception):
    """A document read by the transaction changed before commit."""


# ---------------------------------------------------------------------------
# In-memory document store
# ---------------------------------------------------------------------------

class InMemoryDocumentStore(AbstractDocumentStore):
    def __init__(self, max_attempts: int = 5, batch_limit: int = BATCH_WRITE_LIMIT):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.batch_limit = min(batch_limit, BATCH_WRITE_LIMIT)
        # collection -> id -> (version, data)
        self._collections: Dict[str, Dict[str, Tuple[int, Dict[str, Any]]]] = {}
        self._lock = threading.RLock()

    # -- point access -------------------------------------------------------

    def document(self, collection: str, doc_id: Optional[str] = None) -> DocumentRef:
        return DocumentRef(collection, doc_id or uuid.uuid4().hex)

    def get(self, ref: DocumentRef) -> DocumentSnapshot:
        return self._read(ref)[1]

    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        with self._lock:
            docs = list(self._collections.get(collection, {}).items())
        results = []
        for doc_id, (_, data) in docs:
            if all(_matches(data, f) for f in filters):
                results.append(DocumentSnapshot(DocumentRef(collection, doc_id), copy.deepcopy(data)))
                if limit is not None and len(results) >= limit:
                    break
        return results

    def create(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self._apply([("create", ref, data)])

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self._apply([("set", ref, data)])

    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None:
        self._apply([("update", ref, fields)])

    # -- transactions & batches ---------------------------------------------

    def run_transaction(self, fn: Callable[[AbstractTransaction], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            tx = _InMemoryTransaction(self)
            result = fn(tx)
            try:
                self._apply(tx.writes, expected_versions=tx.read_versions)
            except _VersionConflict:
                logger.debug("Transaction conflict on attempt %d/%d; retrying", attempt, self.max_attempts)
                continue
            return result
        raise TransactionConflictError(
            f"Transaction aborted after {self.max_attempts} attempts due to concurrent modification."
        )

    def batch(self) -> AbstractWriteBatch:
        return _InMemoryWriteBatch(self, self.batch_limit)

    # -- internals ------------------------------------------------------------

    def _read(self, ref: DocumentRef) -> Tuple[int, DocumentSnapshot]:
        with self._lock:
            entry = self._collections.get(ref.collection, {}).get(ref.id)
            if entry is None:
                return 0, DocumentSnapshot(ref, None)
            version, data = entry
            return version, DocumentSnapshot(ref, copy.deepcopy(data))

    def _apply(
        self,
        writes: Sequence[_Write],
        expected_versions: Optional[Dict[DocumentRef, int]] = None,
    ) -> None:
        """Validate and apply a group of writes atomically."""
        with self._lock:
            for ref, version in (expected_versions or {}).items():
                entry = self._collections.get(ref.collection, {}).get(ref.id)
                if (entry[0] if entry else 0) != version:
                    raise _VersionConflict(ref)

            staged: Dict[DocumentRef, Optional[Dict[str, Any]]] = {}
            for kind, ref, data in writes:
                if ref in staged:
                    current = staged[ref]
                else:
                    entry = self._collections.get(ref.collection, {}).get(ref.id)
                    current = entry[1] if entry else None
                if kind == "create":
                    if current is not None:
                        raise StoreError(f"Document {ref.collection}/{ref.id} already exists.")
                    staged[ref] = _normalize(data)
                elif kind == "set":
                    staged[ref] = _normalize(data)
                elif kind == "update":
                    if current is None:
                        raise StoreError(f"Document {ref.collection}/{ref.id} does not exist.")
                    merged = dict(current)
                    merged.update(_normalize(data))
                    staged[ref] = merged
                else:
                    raise StoreError(f"Unknown write kind: {kind!r}")

            for ref, data in staged.items():
                docs = self._collections.setdefault(ref.collection, {})
                version = docs[ref.id][0] if ref.id in docs else 0
                docs[ref.id] = (version + 1, data)


class _InMemoryTransaction(AbstractTransaction):
    def __init__(self, store: InMemoryDocumentStore):
        self._store = store
        self.read_versions: Dict[DocumentRef, int] = {}
        self.writes: List[_Write] = []

    def get(self, ref: DocumentRef) -> DocumentSnapshot:
        if self.writes:
            raise StoreError("Transactions require all reads to be executed before all writes.")
        version, snapshot = self._store._read(ref)
        self.read_versions.setdefault(ref, version)
        return snapshot

    def create(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self.writes.append(("create", ref, dict(data)))

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self.writes.append(("set", ref, dict(data)))

    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None:
        self.writes.append(("update", ref, dict(fields)))


class _InMemoryWriteBatch(AbstractWriteBatch):
    def __init__(self, store: InMemoryDocumentStore, limit: int):
        self._store = store
        self._limit = limit
        self._writes: List[_Write] = []
        self._committed = False

    def _add(self, write: _Write) -> None:
        if self._committed:
            raise StoreError("Batch has already been committed.")
        if len(self._writes) >= self._limit:
            raise StoreError(f"A write batch cannot hold more than {self._limit} operations.")
        self._writes.append(write)

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self._add(("set", ref, dict(data)))

    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None:
        self._add(("update", ref, dict(fields)))

    def commit(self) -> int:
        if self._committed:
            raise StoreError("Batch has already been committed.")
        self._store._apply(self._writes)
        self._committed = True
        return len(self._writes)

    def __len__(self) -> int:
        return len(self._writes)


# ---------------------------------------------------------------------------
# Email sender
# ---------------------------------------------------------------------------

class LoggingEmailSender(AbstractEmailSender):
    """Writes outgoing mail to the log and keeps it in `outbox`."""

    def __init__(self):
        self.outbox: List[EmailMessage] = []
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> None:
        with self._lock:
            self.outbox.append(message)
        logger.info("Email to %s: %s", message.to, message.subject)


# ---------------------------------------------------------------------------
# Unit of Work wiring
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(UnitOfWork):
    """UnitOfWork over a fresh in-memory store with email notifications subscribed."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        email_sender: Optional[AbstractEmailSender] = None,
        synchronous_events: bool = False,
    ):
        settings = settings or Settings()
        store = InMemoryDocumentStore(
            max_attempts=settings.TRANSACTION_MAX_ATTEMPTS,
            batch_limit=settings.BATCH_WRITE_LIMIT,
        )
        bus = EventBus(max_workers=settings.EVENT_WORKERS, synchronous=synchronous_events)
        super().__init__(
            store,
            bus,
            batch_limit=min(settings.BATCH_WRITE_LIMIT, BATCH_WRITE_LIMIT),
            max_supervisor_capacity=settings.MAX_SUPERVISOR_CAPACITY,
        )
        self.email_sender = email_sender or LoggingEmailSender()
        EmailNotificationService(
            self.email_sender, self.supervisors, from_address=settings.EMAIL_FROM
        ).register(bus)
