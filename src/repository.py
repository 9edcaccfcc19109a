"""
repository.py

Persistence contracts for the MentorMatch system.

Overview
--------
The workflow engine talks to a transactional document store: named
collections of schemaless documents with point reads, filtered queries,
optimistic multi-document transactions and capped write batches.  This module
declares that contract (implementations live in infrastructure.py) and the
thin typed repositories that sit on top of it.

Structure
---------
Store contract
    DocumentRef, DocumentSnapshot, FieldFilter
    AbstractTransaction, AbstractWriteBatch, AbstractDocumentStore
    StoreError, TransactionConflictError

Entity conversion
    to_document, from_document

Repositories
    StudentRepository, SupervisorRepository, AdminRepository,
    ProjectRepository, ApplicationRepository,
    PartnershipRequestRepository, SupervisorPartnershipRequestRepository,
    CapacityChangeRepository

Batch helpers
    chunked, commit_batch_updates, execute_batch_updates

Design notes
------------
- Inside a transaction every read must happen before the first write.
- run_transaction() re-runs the transaction function when a document it read
  was modified concurrently; the function must therefore be free of side
  effects other than the transaction's own writes.
- A write batch holds at most BATCH_WRITE_LIMIT operations and commits
  atomically.  Larger updates are split into sequential independent batches;
  a failure part-way leaves earlier batches committed.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import typing
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

from model import (
    Admin,
    Application,
    ApplicationStatus,
    CapacityChange,
    PartnershipRequest,
    Project,
    RequestStatus,
    Student,
    Supervisor,
    SupervisorPartnershipRequest,
)

logger = logging.getLogger(__name__)

# Per-batch write-count ceiling of the document store.
BATCH_WRITE_LIMIT = 500

T = TypeVar("T")
E = TypeVar("E")


# ===========================================================================
# STORE CONTRACT
# ===========================================================================

class StoreError(Exception):
    """Raised by the document store when an operation cannot be performed."""


class TransactionConflictError(StoreError):
    """Raised when a transaction keeps losing to concurrent writers."""


@dataclass(frozen=True)
class DocumentRef:
    """Handle to a single document; usable inside transactions and batches."""
    collection: str
    id: str


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time copy of a document.  `data` is None when it does not exist."""
    ref: DocumentRef
    data: Optional[Dict[str, Any]] = None

    @property
    def id(self) -> str:
        return self.ref.id

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class FieldFilter:
    """
    A single query predicate.

    Supported operators: ==, !=, <, <=, >, >=, in, not-in, array-contains.
    """
    field: str
    op: str
    value: Any


class AbstractTransaction(abc.ABC):
    """Read-then-conditional-write unit.  Writes are buffered until commit."""

    @abc.abstractmethod
    def get(self, ref: DocumentRef) -> DocumentSnapshot: ...

    def get_all(self, refs: Sequence[DocumentRef]) -> List[DocumentSnapshot]:
        return [self.get(ref) for ref in refs]

    @abc.abstractmethod
    def create(self, ref: DocumentRef, data: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None: ...


class AbstractWriteBatch(abc.ABC):
    """Blind writes committed together.  Capped at BATCH_WRITE_LIMIT operations."""

    @abc.abstractmethod
    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def commit(self) -> int:
        """Apply all buffered writes atomically; returns the number of writes."""

    @abc.abstractmethod
    def __len__(self) -> int: ...


class AbstractDocumentStore(abc.ABC):
    @abc.abstractmethod
    def document(self, collection: str, doc_id: Optional[str] = None) -> DocumentRef:
        """Return a ref; a fresh unique id is generated when doc_id is None."""

    @abc.abstractmethod
    def get(self, ref: DocumentRef) -> DocumentSnapshot: ...

    @abc.abstractmethod
    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]: ...

    @abc.abstractmethod
    def create(self, ref: DocumentRef, data: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def run_transaction(self, fn: Callable[[AbstractTransaction], T]) -> T: ...

    @abc.abstractmethod
    def batch(self) -> AbstractWriteBatch: ...


# ===========================================================================
# ENTITY CONVERSION
# ===========================================================================

def _enum_type(hint: Any) -> Optional[Type[Enum]]:
    """Return the Enum class behind a (possibly Optional) annotation."""
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint
    for arg in typing.get_args(hint):
        if isinstance(arg, type) and issubclass(arg, Enum):
            return arg
    return None


def to_document(entity: Any) -> Dict[str, Any]:
    """Serialise a model dataclass into document fields (the id is the key)."""
    data: Dict[str, Any] = {}
    for f in dataclasses.fields(entity):
        if f.name == "id":
            continue
        value = getattr(entity, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, list):
            value = list(value)
        data[f.name] = value
    return data


def from_document(cls: Type[E], doc_id: str, data: Dict[str, Any]) -> E:
    """Build a model dataclass from stored fields; unknown fields are ignored."""
    hints = typing.get_type_hints(cls)
    kwargs: Dict[str, Any] = {"id": doc_id}
    for f in dataclasses.fields(cls):
        if f.name == "id" or f.name not in data:
            continue
        value = data[f.name]
        enum_cls = _enum_type(hints.get(f.name))
        if enum_cls is not None and value is not None:
            value = enum_cls(value)
        kwargs[f.name] = value
    return cls(**kwargs)


# ===========================================================================
# REPOSITORIES
# ===========================================================================

class DocumentRepository(Generic[E]):
    """Typed CRUD over one collection of the document store."""

    collection: str = ""
    entity_type: Type[E]

    def __init__(self, store: AbstractDocumentStore):
        self._store = store

    def ref(self, doc_id: Optional[str] = None) -> DocumentRef:
        return self._store.document(self.collection, doc_id)

    def from_snapshot(self, snapshot: DocumentSnapshot) -> Optional[E]:
        if not snapshot.exists:
            return None
        return from_document(self.entity_type, snapshot.id, snapshot.data)

    def get(self, doc_id: str) -> Optional[E]:
        if not doc_id:
            return None
        return self.from_snapshot(self._store.get(self.ref(doc_id)))

    def find_all(self, *filters: FieldFilter, limit: Optional[int] = None) -> List[E]:
        snapshots = self._store.query(self.collection, filters, limit=limit)
        return [self.from_snapshot(s) for s in snapshots]

    def create(self, entity: E) -> E:
        """Persist a new entity; assigns a fresh id when entity.id is empty."""
        ref = self.ref(entity.id or None)
        entity.id = ref.id
        self._store.create(ref, to_document(entity))
        return entity

    def update(self, doc_id: str, fields: Dict[str, Any]) -> None:
        self._store.update(self.ref(doc_id), fields)


class StudentRepository(DocumentRepository[Student]):
    collection = "students"
    entity_type = Student

    def get_by_email(self, email: str) -> Optional[Student]:
        found = self.find_all(FieldFilter("email", "==", email), limit=1)
        return found[0] if found else None


class SupervisorRepository(DocumentRepository[Supervisor]):
    collection = "supervisors"
    entity_type = Supervisor

    def get_by_email(self, email: str) -> Optional[Supervisor]:
        found = self.find_all(FieldFilter("email", "==", email), limit=1)
        return found[0] if found else None

    def list_active(self) -> List[Supervisor]:
        return self.find_all(FieldFilter("is_active", "==", True))


class AdminRepository(DocumentRepository[Admin]):
    collection = "admins"
    entity_type = Admin


class ProjectRepository(DocumentRepository[Project]):
    collection = "projects"
    entity_type = Project

    def list_for_supervisor(self, supervisor_id: str) -> List[Project]:
        return self.find_all(FieldFilter("supervisor_id", "==", supervisor_id))


_ACTIVE_APPLICATION_STATUSES = [ApplicationStatus.PENDING.value, ApplicationStatus.APPROVED.value]


class ApplicationRepository(DocumentRepository[Application]):
    collection = "applications"
    entity_type = Application

    def find_by_student(self, student_id: str) -> List[Application]:
        return self.find_all(FieldFilter("student_id", "==", student_id))

    def find_by_supervisor(self, supervisor_id: str) -> List[Application]:
        return self.find_all(FieldFilter("supervisor_id", "==", supervisor_id))

    def find_by_partner(self, student_id: str) -> List[Application]:
        return self.find_all(FieldFilter("partner_id", "==", student_id))

    def find_active_by_student(self, student_id: str) -> List[Application]:
        """Pending or approved applications where the student is the applicant."""
        return self.find_all(
            FieldFilter("student_id", "==", student_id),
            FieldFilter("status", "in", _ACTIVE_APPLICATION_STATUSES),
        )

    def find_active_for_supervisor(
        self, student_id: str, supervisor_id: str, as_partner: bool = False
    ) -> List[Application]:
        """Pending/approved applications to a supervisor, by applicant or by partner."""
        student_field = "partner_id" if as_partner else "student_id"
        return self.find_all(
            FieldFilter(student_field, "==", student_id),
            FieldFilter("supervisor_id", "==", supervisor_id),
            FieldFilter("status", "in", _ACTIVE_APPLICATION_STATUSES),
        )


class PartnershipRequestRepository(DocumentRepository[PartnershipRequest]):
    collection = "partnership_requests"
    entity_type = PartnershipRequest

    def find_pending(self, requester_id: str, target_id: str) -> List[PartnershipRequest]:
        return self.find_all(
            FieldFilter("requester_id", "==", requester_id),
            FieldFilter("target_student_id", "==", target_id),
            FieldFilter("status", "==", RequestStatus.PENDING.value),
        )

    def find_pending_outgoing(self, student_id: str) -> List[PartnershipRequest]:
        return self.find_all(
            FieldFilter("requester_id", "==", student_id),
            FieldFilter("status", "==", RequestStatus.PENDING.value),
        )

    def find_pending_incoming(self, student_id: str) -> List[PartnershipRequest]:
        return self.find_all(
            FieldFilter("target_student_id", "==", student_id),
            FieldFilter("status", "==", RequestStatus.PENDING.value),
        )


class SupervisorPartnershipRequestRepository(DocumentRepository[SupervisorPartnershipRequest]):
    collection = "supervisor_partnership_requests"
    entity_type = SupervisorPartnershipRequest

    def find_pending(
        self, requesting_id: str, target_id: str, project_id: str
    ) -> List[SupervisorPartnershipRequest]:
        return self.find_all(
            FieldFilter("requesting_supervisor_id", "==", requesting_id),
            FieldFilter("target_supervisor_id", "==", target_id),
            FieldFilter("project_id", "==", project_id),
            FieldFilter("status", "==", RequestStatus.PENDING.value),
        )

    def find_pending_for_project(self, project_id: str) -> List[SupervisorPartnershipRequest]:
        return self.find_all(
            FieldFilter("project_id", "==", project_id),
            FieldFilter("status", "==", RequestStatus.PENDING.value),
        )

    def find_pending_outgoing(self, supervisor_id: str) -> List[SupervisorPartnershipRequest]:
        return self.find_all(
            FieldFilter("requesting_supervisor_id", "==", supervisor_id),
            FieldFilter("status", "==", RequestStatus.PENDING.value),
        )

    def find_pending_incoming(self, supervisor_id: str) -> List[SupervisorPartnershipRequest]:
        return self.find_all(
            FieldFilter("target_supervisor_id", "==", supervisor_id),
            FieldFilter("status", "==", RequestStatus.PENDING.value),
        )


class CapacityChangeRepository(DocumentRepository[CapacityChange]):
    collection = "capacity_changes"
    entity_type = CapacityChange

    def list_for_supervisor(self, supervisor_id: str) -> List[CapacityChange]:
        changes = self.find_all(FieldFilter("supervisor_id", "==", supervisor_id))
        return sorted(changes, key=lambda c: c.timestamp)


# ===========================================================================
# BATCH HELPERS
# ===========================================================================

def chunked(items: Sequence[T], size: int = BATCH_WRITE_LIMIT) -> Iterator[Sequence[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def commit_batch_updates(
    store: AbstractDocumentStore,
    updates: Sequence[Tuple[DocumentRef, Dict[str, Any]]],
    operation: str,
    chunk_size: int = BATCH_WRITE_LIMIT,
) -> int:
    """
    Apply per-document updates, chunked into sequential batches of at most
    BATCH_WRITE_LIMIT writes.

    Returns the number of documents updated.  Batches already committed stay
    committed if a later one fails; the StoreError propagates to the caller.
    """
    total = 0
    for chunk in chunked(updates, min(chunk_size, BATCH_WRITE_LIMIT)):
        batch = store.batch()
        for ref, fields in chunk:
            batch.update(ref, fields)
        total += batch.commit()
    if total:
        logger.info("%s: updated %d document(s)", operation, total)
    return total


def execute_batch_updates(
    store: AbstractDocumentStore,
    refs: Sequence[DocumentRef],
    fields: Dict[str, Any],
    operation: str,
    chunk_size: int = BATCH_WRITE_LIMIT,
) -> int:
    """Apply the same field update to every ref."""
    return commit_batch_updates(store, [(ref, fields) for ref in refs], operation, chunk_size)
