"""
application.py

Application layer for the MentorMatch student/supervisor matching system.

Overview
--------
The application layer sits between the HTTP API and the domain rules.  It is
responsible for:

  1. Defining the error taxonomy every operation reports failures with.
  2. Defining output DTOs (dataclasses) so no raw domain objects leak upward.
  3. Providing the UnitOfWork: the repositories, the document store's
     transaction and batch primitives, and the event bus, bundled together.
  4. Implementing the workflows: one use case class per user-facing
     operation, each validating and authorising before any mutation and
     running its multi-document writes inside a single store transaction.

Structure
---------
Errors
    ErrorKind, ApplicationError, NotFoundError, AuthorizationError,
    InvalidStateError, ConflictError, CapacityExceededError,
    ReverseRequestExistsError, InternalError

DTOs
    StudentDTO, SupervisorDTO, ProjectDTO, ApplicationDTO,
    PartnershipRequestDTO, SupervisorPartnershipRequestDTO,
    CapacityChangeDTO, DuplicateCheckDTO, PairingDTO, UnpairResultDTO,
    DashboardStatsDTO, CurrentUserDTO

Unit of Work
    UnitOfWork

Partnership request queries
    check_existing_request, check_existing_supervisor_request,
    get_pending_requests

Pairing helpers
    cancel_all_pending_requests, update_partner_info_on_applications,
    cancel_sibling_supervisor_requests, check_duplicate_application

Use Cases
    --- Registration & reads ---
    RegisterStudentUseCase, RegisterSupervisorUseCase, CreateProjectUseCase,
    Get*/List* read use cases, ResolveUserUseCase

    --- Student partnerships ---
    CreatePartnershipRequestUseCase
    RespondToPartnershipRequestUseCase
    CancelPartnershipRequestUseCase
    PairStudentsUseCase
    UnpairStudentsUseCase

    --- Supervisor co-supervision ---
    CreateSupervisorPartnershipRequestUseCase
    RespondToSupervisorPartnershipRequestUseCase
    CancelSupervisorPartnershipRequestUseCase
    UnpairCoSupervisorUseCase
    ListPartnersWithCapacityUseCase

    --- Applications ---
    SubmitApplicationUseCase
    UpdateApplicationStatusUseCase
    ResubmitApplicationUseCase
    CheckDuplicateApplicationUseCase

    --- Admin ---
    UpdateSupervisorCapacityUseCase
    SetSupervisorApprovalUseCase
    GetDashboardStatsUseCase

Design notes
------------
- Validation and authorisation happen before the first write.  Errors raised
  inside a transaction function abort it with no writes applied.
- Work that follows a committed transaction (cancelling stale requests,
  copying partner details onto applications, rejecting a linked application)
  is best effort: failures are logged and never reported to the caller.
- Store failures surface as InternalError.
- Events are published only after the primary write has committed.
- All timestamps flowing out are ISO-8601 strings (UTC).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from events import (
    ApplicationCreatedEvent,
    ApplicationResubmittedEvent,
    ApplicationStatusChangedEvent,
    DomainEvent,
    EventBus,
)
from model import (
    Admin,
    Application,
    ApplicationStatus,
    CapacityChange,
    MatchStatus,
    PartnershipRequest,
    PartnershipStatus,
    Project,
    ProjectStatus,
    RequestAction,
    RequestStatus,
    Student,
    Supervisor,
    SupervisorPartnershipRequest,
    UserRole,
)
from repository import (
    BATCH_WRITE_LIMIT,
    AbstractDocumentStore,
    AbstractTransaction,
    AdminRepository,
    ApplicationRepository,
    CapacityChangeRepository,
    DocumentRef,
    DocumentSnapshot,
    PartnershipRequestRepository,
    ProjectRepository,
    StoreError,
    StudentRepository,
    SupervisorPartnershipRequestRepository,
    SupervisorRepository,
    commit_batch_updates,
    execute_batch_updates,
    to_document,
)
from service import (
    ApplicationStatusPolicy,
    CapacityPolicy,
    CoSupervisionRules,
    DashboardService,
    PartnershipRules,
    availability_for,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""
    kind: ErrorKind = ErrorKind.INVALID_STATE


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""
    kind = ErrorKind.NOT_FOUND


class AuthorizationError(ApplicationError):
    """Raised when the caller lacks the required relationship to the target entity."""
    kind = ErrorKind.UNAUTHORIZED


class InvalidStateError(ApplicationError):
    """Raised when an operation violates a state machine or precondition."""
    kind = ErrorKind.INVALID_STATE


class ConflictError(ApplicationError):
    """Raised on duplicates, exhausted capacity and state that changed underneath us."""
    kind = ErrorKind.CONFLICT


class CapacityExceededError(ConflictError):
    """Raised when approving would push a supervisor past max_capacity."""


class ReverseRequestExistsError(ConflictError):
    """The target already sent the caller a pending request; respond to it instead."""

    def __init__(self, message: str, request_id: str):
        super().__init__(message)
        self.request_id = request_id


class InternalError(ApplicationError):
    """Raised when the document store fails."""
    kind = ErrorKind.INTERNAL


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class StudentDTO:
    id: str
    full_name: str
    email: str
    student_id: str
    department: str
    skills: str
    interests: str
    partner_id: Optional[str]
    partnership_status: str
    match_status: str
    created_at: Optional[str]
    updated_at: Optional[str]


@dataclass
class SupervisorDTO:
    id: str
    full_name: str
    email: str
    department: str
    title: str
    bio: str
    expertise_areas: List[str]
    current_capacity: int
    max_capacity: int
    availability_status: str
    is_active: bool
    is_approved: bool
    created_at: Optional[str]
    updated_at: Optional[str]


@dataclass
class ProjectDTO:
    id: str
    project_code: str
    title: str
    description: str
    supervisor_id: str
    supervisor_name: str
    co_supervisor_id: Optional[str]
    co_supervisor_name: Optional[str]
    student_ids: List[str]
    status: str
    created_at: Optional[str]
    updated_at: Optional[str]


@dataclass
class ApplicationDTO:
    id: str
    student_id: str
    student_name: str
    student_email: str
    supervisor_id: str
    supervisor_name: str
    project_title: str
    project_description: str
    partner_id: Optional[str]
    has_partner: bool
    partner_name: Optional[str]
    partner_email: Optional[str]
    linked_application_id: Optional[str]
    is_lead_application: bool
    status: str
    supervisor_feedback: Optional[str]
    date_applied: Optional[str]
    last_updated: Optional[str]
    response_date: Optional[str]
    resubmitted_date: Optional[str]


@dataclass
class PartnershipRequestDTO:
    id: str
    requester_id: str
    requester_name: str
    requester_email: str
    requester_student_id: str
    requester_department: str
    target_student_id: str
    target_student_name: str
    target_student_email: str
    target_department: str
    status: str
    created_at: Optional[str]
    responded_at: Optional[str]


@dataclass
class SupervisorPartnershipRequestDTO:
    id: str
    requesting_supervisor_id: str
    requesting_supervisor_name: str
    target_supervisor_id: str
    target_supervisor_name: str
    project_id: str
    project_title: str
    status: str
    created_at: Optional[str]
    responded_at: Optional[str]


@dataclass
class CapacityChangeDTO:
    id: str
    supervisor_id: str
    supervisor_name: str
    admin_id: str
    admin_email: str
    old_max_capacity: int
    new_max_capacity: int
    reason: str
    timestamp: Optional[str]


@dataclass
class DuplicateCheckDTO:
    is_duplicate: bool
    existing_application_id: Optional[str] = None


@dataclass
class PairingDTO:
    students: List[StudentDTO]
    cancelled_requests: int = 0


@dataclass
class UnpairResultDTO:
    student_ids: List[str]
    applications_updated: int = 0


@dataclass
class DashboardStatsDTO:
    total_students: int
    matched_students: int
    pending_matches: int
    active_supervisors: int
    total_supervisors: int
    approved_applications: int
    pending_applications: int
    students_without_approved_app: int
    total_available_capacity: int


@dataclass
class CurrentUserDTO:
    id: str
    role: str
    email: str
    full_name: str


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def student(s: Student) -> StudentDTO:
        return StudentDTO(
            id=s.id,
            full_name=s.full_name,
            email=s.email,
            student_id=s.student_id,
            department=s.department,
            skills=s.skills,
            interests=s.interests,
            partner_id=s.partner_id,
            partnership_status=s.partnership_status.value,
            match_status=s.match_status.value,
            created_at=_fmt(s.created_at),
            updated_at=_fmt(s.updated_at),
        )

    @staticmethod
    def supervisor(s: Supervisor) -> SupervisorDTO:
        return SupervisorDTO(
            id=s.id,
            full_name=s.full_name,
            email=s.email,
            department=s.department,
            title=s.title,
            bio=s.bio,
            expertise_areas=list(s.expertise_areas),
            current_capacity=s.current_capacity,
            max_capacity=s.max_capacity,
            availability_status=s.availability_status.value,
            is_active=s.is_active,
            is_approved=s.is_approved,
            created_at=_fmt(s.created_at),
            updated_at=_fmt(s.updated_at),
        )

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=p.id,
            project_code=p.project_code,
            title=p.title,
            description=p.description,
            supervisor_id=p.supervisor_id,
            supervisor_name=p.supervisor_name,
            co_supervisor_id=p.co_supervisor_id,
            co_supervisor_name=p.co_supervisor_name,
            student_ids=list(p.student_ids),
            status=p.status.value,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def application(a: Application) -> ApplicationDTO:
        return ApplicationDTO(
            id=a.id,
            student_id=a.student_id,
            student_name=a.student_name,
            student_email=a.student_email,
            supervisor_id=a.supervisor_id,
            supervisor_name=a.supervisor_name,
            project_title=a.project_title,
            project_description=a.project_description,
            partner_id=a.partner_id,
            has_partner=a.has_partner,
            partner_name=a.partner_name,
            partner_email=a.partner_email,
            linked_application_id=a.linked_application_id,
            is_lead_application=a.is_lead_application,
            status=a.status.value,
            supervisor_feedback=a.supervisor_feedback,
            date_applied=_fmt(a.date_applied),
            last_updated=_fmt(a.last_updated),
            response_date=_fmt(a.response_date),
            resubmitted_date=_fmt(a.resubmitted_date),
        )

    @staticmethod
    def partnership_request(r: PartnershipRequest) -> PartnershipRequestDTO:
        return PartnershipRequestDTO(
            id=r.id,
            requester_id=r.requester_id,
            requester_name=r.requester_name,
            requester_email=r.requester_email,
            requester_student_id=r.requester_student_id,
            requester_department=r.requester_department,
            target_student_id=r.target_student_id,
            target_student_name=r.target_student_name,
            target_student_email=r.target_student_email,
            target_department=r.target_department,
            status=r.status.value,
            created_at=_fmt(r.created_at),
            responded_at=_fmt(r.responded_at),
        )

    @staticmethod
    def supervisor_request(r: SupervisorPartnershipRequest) -> SupervisorPartnershipRequestDTO:
        return SupervisorPartnershipRequestDTO(
            id=r.id,
            requesting_supervisor_id=r.requesting_supervisor_id,
            requesting_supervisor_name=r.requesting_supervisor_name,
            target_supervisor_id=r.target_supervisor_id,
            target_supervisor_name=r.target_supervisor_name,
            project_id=r.project_id,
            project_title=r.project_title,
            status=r.status.value,
            created_at=_fmt(r.created_at),
            responded_at=_fmt(r.responded_at),
        )

    @staticmethod
    def capacity_change(c: CapacityChange) -> CapacityChangeDTO:
        return CapacityChangeDTO(
            id=c.id,
            supervisor_id=c.supervisor_id,
            supervisor_name=c.supervisor_name,
            admin_id=c.admin_id,
            admin_email=c.admin_email,
            old_max_capacity=c.old_max_capacity,
            new_max_capacity=c.new_max_capacity,
            reason=c.reason,
            timestamp=_fmt(c.timestamp),
        )


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate document store failures into InternalError."""
    try:
        yield
    except StoreError as exc:
        logger.error("%s failed: %s", operation, exc)
        raise InternalError(f"{operation} failed. Please try again.") from exc


class UnitOfWork:
    """
    Bundles the repositories with the store's transaction/batch primitives and
    the event bus.  One instance is shared by every request of the process.
    """

    def __init__(
        self,
        store: AbstractDocumentStore,
        events: Optional[EventBus] = None,
        batch_limit: int = BATCH_WRITE_LIMIT,
        max_supervisor_capacity: int = 50,
    ):
        self.store = store
        self.events = events if events is not None else EventBus(synchronous=True)
        self.batch_limit = batch_limit
        self.max_supervisor_capacity = max_supervisor_capacity

        self.students = StudentRepository(store)
        self.supervisors = SupervisorRepository(store)
        self.admins = AdminRepository(store)
        self.projects = ProjectRepository(store)
        self.applications = ApplicationRepository(store)
        self.partnership_requests = PartnershipRequestRepository(store)
        self.supervisor_requests = SupervisorPartnershipRequestRepository(store)
        self.capacity_changes = CapacityChangeRepository(store)

    def run_transaction(self, fn: Callable[[AbstractTransaction], T], operation: str = "Transaction") -> T:
        with _store_errors(operation):
            return self.store.run_transaction(fn)

    def publish(self, event: DomainEvent) -> None:
        self.events.publish(event)

    def close(self) -> None:
        self.events.close()


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_partnership_rules = PartnershipRules()
_co_supervision_rules = CoSupervisionRules()
_status_policy = ApplicationStatusPolicy()
_dashboard_svc = DashboardService()


def _capacity_policy(uow: UnitOfWork) -> CapacityPolicy:
    return CapacityPolicy(ceiling=uow.max_supervisor_capacity)


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_student_or_raise(uow: UnitOfWork, student_id: str) -> Student:
    student = uow.students.get(student_id)
    if student is None:
        raise NotFoundError(f"Student {student_id} not found.")
    return student


def _get_supervisor_or_raise(uow: UnitOfWork, supervisor_id: str) -> Supervisor:
    supervisor = uow.supervisors.get(supervisor_id)
    if supervisor is None:
        raise NotFoundError(f"Supervisor {supervisor_id} not found.")
    return supervisor


def _get_project_or_raise(uow: UnitOfWork, project_id: str) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_application_or_raise(uow: UnitOfWork, application_id: str) -> Application:
    application = uow.applications.get(application_id)
    if application is None:
        raise NotFoundError("Application not found. It may have been deleted.")
    return application


def _get_partnership_request_or_raise(uow: UnitOfWork, request_id: str) -> PartnershipRequest:
    request = uow.partnership_requests.get(request_id)
    if request is None:
        raise NotFoundError(f"Partnership request {request_id} not found.")
    return request


def _get_supervisor_request_or_raise(
    uow: UnitOfWork, request_id: str
) -> SupervisorPartnershipRequest:
    request = uow.supervisor_requests.get(request_id)
    if request is None:
        raise NotFoundError(f"Supervisor partnership request {request_id} not found.")
    return request


def _require_admin(uow: UnitOfWork, user_id: str) -> Admin:
    admin = uow.admins.get(user_id)
    if admin is None or not admin.is_active:
        raise AuthorizationError("Only administrators can perform this action.")
    return admin


def _ensure_pending(status: RequestStatus) -> None:
    if status != RequestStatus.PENDING:
        raise InvalidStateError(f"This request has already been {status.value}.")


def _run_cleanup(description: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Run a post-commit step; failures are logged, never raised."""
    try:
        return fn(*args, **kwargs)
    except Exception:
        logger.exception("Cleanup step failed: %s", description)
        return None


# ===========================================================================
# PARTNERSHIP REQUEST QUERIES
# ===========================================================================

@dataclass
class ExistingRequest:
    request: PartnershipRequest
    is_reverse: bool


def check_existing_request(
    uow: UnitOfWork, requester_id: str, target_id: str
) -> Optional[ExistingRequest]:
    """Find a pending request between two students in either direction."""
    same = uow.partnership_requests.find_pending(requester_id, target_id)
    if same:
        return ExistingRequest(same[0], is_reverse=False)
    reverse = uow.partnership_requests.find_pending(target_id, requester_id)
    if reverse:
        return ExistingRequest(reverse[0], is_reverse=True)
    return None


def check_existing_supervisor_request(
    uow: UnitOfWork, requesting_id: str, target_id: str, project_id: str
) -> Optional[SupervisorPartnershipRequest]:
    found = uow.supervisor_requests.find_pending(requesting_id, target_id, project_id)
    return found[0] if found else None


def get_pending_requests(
    uow: UnitOfWork, student_id: str, direction: str = "all"
) -> List[PartnershipRequest]:
    """Pending requests for a student: 'incoming', 'outgoing' or 'all'."""
    if direction not in ("incoming", "outgoing", "all"):
        raise ValueError("direction must be one of: all, incoming, outgoing")
    requests: List[PartnershipRequest] = []
    if direction in ("incoming", "all"):
        requests += uow.partnership_requests.find_pending_incoming(student_id)
    if direction in ("outgoing", "all"):
        requests += uow.partnership_requests.find_pending_outgoing(student_id)
    return sorted(requests, key=lambda r: r.created_at, reverse=True)


# ===========================================================================
# PAIRING HELPERS
# ===========================================================================

def _pair_in_transaction(
    tx: AbstractTransaction, uow: UnitOfWork, a: Student, b: Student
) -> None:
    """Write a mutual pairing.  Both students must have been read in `tx` already."""
    _partnership_rules.ensure_can_pair(a, b)
    tx.update(uow.students.ref(a.id), _partnership_rules.paired_fields(b.id))
    tx.update(uow.students.ref(b.id), _partnership_rules.paired_fields(a.id))
    a.partner_id = b.id
    b.partner_id = a.id


def cancel_all_pending_requests(uow: UnitOfWork, student_id: str) -> int:
    """
    Cancel every pending request the student sends or receives.

    Counterparts left waiting in pending_sent / pending_received are released
    back to none in the same batches.  Returns the number of cancelled requests.
    """
    pending: Dict[str, PartnershipRequest] = {}
    for request in uow.partnership_requests.find_pending_outgoing(student_id):
        pending[request.id] = request
    for request in uow.partnership_requests.find_pending_incoming(student_id):
        pending[request.id] = request
    if not pending:
        return 0

    closed = _partnership_rules.closed_request_fields(RequestStatus.CANCELLED)
    updates: List[Tuple[DocumentRef, Dict[str, Any]]] = [
        (uow.partnership_requests.ref(request_id), closed) for request_id in pending
    ]
    released = set()
    for request in pending.values():
        for party_id in (request.requester_id, request.target_student_id):
            if party_id in released:
                continue
            fields = _partnership_rules.reset_if_pending(uow.students.get(party_id))
            if fields is not None:
                updates.append((uow.students.ref(party_id), fields))
                released.add(party_id)

    commit_batch_updates(uow.store, updates, "cancel_all_pending_requests", uow.batch_limit)
    logger.info("Cancelled %d pending partnership request(s) for student %s", len(pending), student_id)
    return len(pending)


def update_partner_info_on_applications(
    uow: UnitOfWork,
    student_id: str,
    has_partner: bool,
    partner_name: Optional[str] = None,
    partner_email: Optional[str] = None,
) -> int:
    """Copy partner display fields onto the student's pending/approved applications."""
    applications = uow.applications.find_active_by_student(student_id)
    if not applications:
        return 0
    fields: Dict[str, Any] = {
        "has_partner": has_partner,
        "partner_name": partner_name if has_partner else None,
        "partner_email": partner_email if has_partner else None,
        "last_updated": _utcnow(),
    }
    if not has_partner:
        fields["partner_id"] = None
    refs = [uow.applications.ref(a.id) for a in applications]
    return execute_batch_updates(
        uow.store, refs, fields, "update_partner_info_on_applications", uow.batch_limit
    )


def cancel_sibling_supervisor_requests(uow: UnitOfWork, project_id: str, accepted_id: str) -> int:
    """Cancel the other pending co-supervision requests for the same project."""
    siblings = [
        r for r in uow.supervisor_requests.find_pending_for_project(project_id)
        if r.id != accepted_id
    ]
    if not siblings:
        return 0
    refs = [uow.supervisor_requests.ref(r.id) for r in siblings]
    return execute_batch_updates(
        uow.store,
        refs,
        {"status": RequestStatus.CANCELLED.value, "responded_at": _utcnow()},
        "cancel_sibling_supervisor_requests",
        uow.batch_limit,
    )


def check_duplicate_application(uow: UnitOfWork, student_id: str, supervisor_id: str) -> DuplicateCheckDTO:
    """
    Active (pending/approved) application to the supervisor where the student
    is applicant or partner.  A store failure reports "not a duplicate".
    """
    try:
        found = uow.applications.find_active_for_supervisor(student_id, supervisor_id)
        if not found:
            found = uow.applications.find_active_for_supervisor(
                student_id, supervisor_id, as_partner=True
            )
    except StoreError:
        logger.exception(
            "Duplicate check failed for student=%s supervisor=%s", student_id, supervisor_id
        )
        return DuplicateCheckDTO(is_duplicate=False)
    if found:
        return DuplicateCheckDTO(is_duplicate=True, existing_application_id=found[0].id)
    return DuplicateCheckDTO(is_duplicate=False)


def _find_partner_application(uow: UnitOfWork, partner_id: str, supervisor_id: str) -> Optional[str]:
    """Id of the partner's active application to the same supervisor, if any."""
    try:
        found = uow.applications.find_active_for_supervisor(partner_id, supervisor_id)
    except StoreError:
        logger.exception("Partner application lookup failed for partner=%s", partner_id)
        return None
    return found[0].id if found else None


def _set_match_status(uow: UnitOfWork, student_ids: List[str], status: MatchStatus) -> int:
    updates = [
        (uow.students.ref(sid), {"match_status": status.value, "updated_at": _utcnow()})
        for sid in student_ids
        if uow.students.get(sid) is not None
    ]
    return commit_batch_updates(uow.store, updates, "set_match_status", uow.batch_limit)


# ===========================================================================
# USE CASES — REGISTRATION & READS
# ===========================================================================

@dataclass
class RegisterStudentCommand:
    full_name: str
    email: str
    student_id: str
    department: str
    skills: str = ""
    interests: str = ""


class RegisterStudentUseCase:
    def execute(self, cmd: RegisterStudentCommand, uow: UnitOfWork) -> StudentDTO:
        if uow.students.get_by_email(cmd.email) is not None:
            raise ConflictError(f"A student with email '{cmd.email}' already exists.")
        student = Student(
            full_name=cmd.full_name,
            email=cmd.email,
            student_id=cmd.student_id,
            department=cmd.department,
            skills=cmd.skills,
            interests=cmd.interests,
        )
        with _store_errors("Register student"):
            uow.students.create(student)
        logger.info("Registered student %s", student.id)
        return _Assembler.student(student)


@dataclass
class RegisterSupervisorCommand:
    full_name: str
    email: str
    department: str
    title: str = ""
    bio: str = ""
    expertise_areas: List[str] = field(default_factory=list)
    max_capacity: int = 0


class RegisterSupervisorUseCase:
    def execute(self, cmd: RegisterSupervisorCommand, uow: UnitOfWork) -> SupervisorDTO:
        if uow.supervisors.get_by_email(cmd.email) is not None:
            raise ConflictError(f"A supervisor with email '{cmd.email}' already exists.")
        try:
            _capacity_policy(uow).validate_max_capacity(cmd.max_capacity, 0)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc
        supervisor = Supervisor(
            full_name=cmd.full_name,
            email=cmd.email,
            department=cmd.department,
            title=cmd.title,
            bio=cmd.bio,
            expertise_areas=list(cmd.expertise_areas),
            max_capacity=cmd.max_capacity,
            availability_status=availability_for(0, cmd.max_capacity),
        )
        with _store_errors("Register supervisor"):
            uow.supervisors.create(supervisor)
        logger.info("Registered supervisor %s (awaiting approval)", supervisor.id)
        return _Assembler.supervisor(supervisor)


class GetStudentUseCase:
    def execute(self, student_id: str, uow: UnitOfWork) -> StudentDTO:
        return _Assembler.student(_get_student_or_raise(uow, student_id))


class ListStudentsUseCase:
    def execute(self, uow: UnitOfWork, available_only: bool = False) -> List[StudentDTO]:
        students = uow.students.find_all()
        if available_only:
            students = [s for s in students if s.partner_id is None]
        return [_Assembler.student(s) for s in sorted(students, key=lambda s: s.full_name)]


class GetSupervisorUseCase:
    def execute(self, supervisor_id: str, uow: UnitOfWork) -> SupervisorDTO:
        return _Assembler.supervisor(_get_supervisor_or_raise(uow, supervisor_id))


class ListSupervisorsUseCase:
    def execute(self, uow: UnitOfWork, available_only: bool = False) -> List[SupervisorDTO]:
        supervisors = uow.supervisors.find_all()
        if available_only:
            policy = _capacity_policy(uow)
            supervisors = [
                s for s in supervisors
                if s.is_active and s.is_approved and policy.has_room(s)
            ]
        return [_Assembler.supervisor(s) for s in sorted(supervisors, key=lambda s: s.full_name)]


@dataclass
class CreateProjectCommand:
    supervisor_id: str
    title: str
    description: str = ""
    project_code: str = ""


class CreateProjectUseCase:
    def execute(self, cmd: CreateProjectCommand, uow: UnitOfWork) -> ProjectDTO:
        supervisor = _get_supervisor_or_raise(uow, cmd.supervisor_id)
        if not supervisor.is_active:
            raise InvalidStateError("Inactive supervisors cannot create projects.")
        project = Project(
            project_code=cmd.project_code,
            title=cmd.title,
            description=cmd.description,
            supervisor_id=supervisor.id,
            supervisor_name=supervisor.full_name,
            status=ProjectStatus.PENDING_APPROVAL,
        )
        with _store_errors("Create project"):
            uow.projects.create(project)
            if not project.project_code:
                project.project_code = f"PRJ-{project.id[:6].upper()}"
                uow.projects.update(project.id, {"project_code": project.project_code})
        return _Assembler.project(project)


class GetProjectUseCase:
    def execute(self, project_id: str, uow: UnitOfWork) -> ProjectDTO:
        return _Assembler.project(_get_project_or_raise(uow, project_id))


class ListProjectsUseCase:
    def execute(self, uow: UnitOfWork, supervisor_id: Optional[str] = None) -> List[ProjectDTO]:
        if supervisor_id:
            projects = uow.projects.list_for_supervisor(supervisor_id)
        else:
            projects = uow.projects.find_all()
        return [_Assembler.project(p) for p in sorted(projects, key=lambda p: p.created_at)]


class ResolveUserUseCase:
    """Map a user id to its role; admins take precedence over supervisors and students."""

    def execute(self, user_id: str, uow: UnitOfWork) -> Optional[CurrentUserDTO]:
        admin = uow.admins.get(user_id)
        if admin is not None and admin.is_active:
            return CurrentUserDTO(admin.id, UserRole.ADMIN.value, admin.email, admin.full_name)
        supervisor = uow.supervisors.get(user_id)
        if supervisor is not None:
            return CurrentUserDTO(
                supervisor.id, UserRole.SUPERVISOR.value, supervisor.email, supervisor.full_name
            )
        student = uow.students.get(user_id)
        if student is not None:
            return CurrentUserDTO(student.id, UserRole.STUDENT.value, student.email, student.full_name)
        return None


# ===========================================================================
# USE CASES — STUDENT PARTNERSHIPS
# ===========================================================================

@dataclass
class CreatePartnershipRequestCommand:
    requester_id: str
    target_student_id: str


class CreatePartnershipRequestUseCase:
    """
    Send a partnership request.  Moves the requester to pending_sent and the
    target to pending_received together with creating the request document.
    """

    def execute(self, cmd: CreatePartnershipRequestCommand, uow: UnitOfWork) -> PartnershipRequestDTO:
        try:
            _partnership_rules.ensure_distinct(cmd.requester_id, cmd.target_student_id)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc

        _get_student_or_raise(uow, cmd.requester_id)
        _get_student_or_raise(uow, cmd.target_student_id)

        existing = check_existing_request(uow, cmd.requester_id, cmd.target_student_id)
        if existing is not None:
            if existing.is_reverse:
                raise ReverseRequestExistsError(
                    "This student has already sent you a partnership request. "
                    "Respond to their request instead.",
                    request_id=existing.request.id,
                )
            raise ConflictError("You already have a pending request to this student.")

        requester_ref = uow.students.ref(cmd.requester_id)
        target_ref = uow.students.ref(cmd.target_student_id)

        def txn(tx: AbstractTransaction) -> PartnershipRequest:
            requester_snap, target_snap = tx.get_all([requester_ref, target_ref])
            requester = uow.students.from_snapshot(requester_snap)
            target = uow.students.from_snapshot(target_snap)
            if requester is None or target is None:
                raise NotFoundError("Student not found.")
            try:
                _partnership_rules.ensure_can_send(requester)
                _partnership_rules.ensure_can_receive(target)
            except ValueError as exc:
                raise InvalidStateError(str(exc)) from exc

            ref = uow.partnership_requests.ref()
            request = PartnershipRequest(
                id=ref.id,
                requester_id=requester.id,
                requester_name=requester.full_name,
                requester_email=requester.email,
                requester_student_id=requester.student_id,
                requester_department=requester.department,
                target_student_id=target.id,
                target_student_name=target.full_name,
                target_student_email=target.email,
                target_department=target.department,
            )
            now = _utcnow()
            tx.create(ref, to_document(request))
            tx.update(requester_ref, {"partnership_status": PartnershipStatus.PENDING_SENT.value, "updated_at": now})
            tx.update(target_ref, {"partnership_status": PartnershipStatus.PENDING_RECEIVED.value, "updated_at": now})
            return request

        request = uow.run_transaction(txn, "Create partnership request")
        logger.info(
            "Partnership request %s: %s -> %s", request.id, cmd.requester_id, cmd.target_student_id
        )
        return _Assembler.partnership_request(request)


def _close_partnership_request(uow: UnitOfWork, request_id: str, status: RequestStatus) -> None:
    """Mark a pending request rejected/cancelled and release parties still waiting on it."""
    request_ref = uow.partnership_requests.ref(request_id)

    def txn(tx: AbstractTransaction) -> None:
        request = uow.partnership_requests.from_snapshot(tx.get(request_ref))
        if request is None:
            raise NotFoundError(f"Partnership request {request_id} not found.")
        if request.status != RequestStatus.PENDING:
            raise ConflictError(f"This request has already been {request.status.value}.")
        party_refs = [
            uow.students.ref(request.requester_id),
            uow.students.ref(request.target_student_id),
        ]
        parties = [uow.students.from_snapshot(s) for s in tx.get_all(party_refs)]

        tx.update(request_ref, _partnership_rules.closed_request_fields(status))
        for ref, student in zip(party_refs, parties):
            fields = _partnership_rules.reset_if_pending(student)
            if fields is not None:
                tx.update(ref, fields)

    uow.run_transaction(txn, f"Mark partnership request {status.value}")


@dataclass
class RespondToPartnershipRequestCommand:
    request_id: str
    responder_id: str
    action: RequestAction


class RespondToPartnershipRequestUseCase:
    """
    Accept or reject an incoming request.

    accept: both students become paired in one transaction.  Afterwards every
    other pending request touching either of them is cancelled and their
    active applications pick up the partner's details.
    """

    def execute(
        self, cmd: RespondToPartnershipRequestCommand, uow: UnitOfWork
    ) -> PartnershipRequestDTO:
        request = _get_partnership_request_or_raise(uow, cmd.request_id)
        if request.target_student_id != cmd.responder_id:
            raise AuthorizationError("Only the recipient can respond to this partnership request.")
        _ensure_pending(request.status)

        if cmd.action == RequestAction.REJECT:
            _close_partnership_request(uow, request.id, RequestStatus.REJECTED)
            logger.info("Partnership request %s rejected", request.id)
            return _Assembler.partnership_request(uow.partnership_requests.get(request.id))

        request_ref = uow.partnership_requests.ref(request.id)
        requester_ref = uow.students.ref(request.requester_id)
        target_ref = uow.students.ref(request.target_student_id)

        def txn(tx: AbstractTransaction) -> Tuple[Student, Student]:
            request_snap, requester_snap, target_snap = tx.get_all(
                [request_ref, requester_ref, target_ref]
            )
            current = uow.partnership_requests.from_snapshot(request_snap)
            if current is None:
                raise NotFoundError(f"Partnership request {request.id} not found.")
            if current.status != RequestStatus.PENDING:
                raise ConflictError(f"This request has already been {current.status.value}.")
            requester = uow.students.from_snapshot(requester_snap)
            target = uow.students.from_snapshot(target_snap)
            if requester is None or target is None:
                raise NotFoundError("Student not found.")
            try:
                _partnership_rules.ensure_handshake_intact(requester, target)
                _pair_in_transaction(tx, uow, requester, target)
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc
            tx.update(request_ref, _partnership_rules.closed_request_fields(RequestStatus.ACCEPTED))
            return requester, target

        requester, target = uow.run_transaction(txn, "Accept partnership request")
        logger.info("Students %s and %s are now paired", requester.id, target.id)

        for student_id in (requester.id, target.id):
            _run_cleanup(
                f"cancel pending requests for student {student_id}",
                cancel_all_pending_requests, uow, student_id,
            )
        _run_cleanup(
            f"update partner info for student {requester.id}",
            update_partner_info_on_applications, uow, requester.id, True, target.full_name, target.email,
        )
        _run_cleanup(
            f"update partner info for student {target.id}",
            update_partner_info_on_applications, uow, target.id, True, requester.full_name, requester.email,
        )
        return _Assembler.partnership_request(uow.partnership_requests.get(request.id))


@dataclass
class CancelPartnershipRequestCommand:
    request_id: str
    requester_id: str


class CancelPartnershipRequestUseCase:
    def execute(self, cmd: CancelPartnershipRequestCommand, uow: UnitOfWork) -> PartnershipRequestDTO:
        request = _get_partnership_request_or_raise(uow, cmd.request_id)
        if request.requester_id != cmd.requester_id:
            raise AuthorizationError("Only the sender can cancel this partnership request.")
        _ensure_pending(request.status)
        _close_partnership_request(uow, request.id, RequestStatus.CANCELLED)
        logger.info("Partnership request %s cancelled", request.id)
        return _Assembler.partnership_request(uow.partnership_requests.get(request.id))


class ListPartnershipRequestsUseCase:
    def execute(self, student_id: str, uow: UnitOfWork, direction: str = "all") -> List[PartnershipRequestDTO]:
        _get_student_or_raise(uow, student_id)
        return [
            _Assembler.partnership_request(r) for r in get_pending_requests(uow, student_id, direction)
        ]


@dataclass
class PairStudentsCommand:
    student_a_id: str
    student_b_id: str
    acting_user_id: str


class PairStudentsUseCase:
    """Administrative pairing that skips the request handshake."""

    def execute(self, cmd: PairStudentsCommand, uow: UnitOfWork) -> PairingDTO:
        _require_admin(uow, cmd.acting_user_id)
        a_ref = uow.students.ref(cmd.student_a_id)
        b_ref = uow.students.ref(cmd.student_b_id)

        def txn(tx: AbstractTransaction) -> Tuple[Student, Student]:
            a_snap, b_snap = tx.get_all([a_ref, b_ref])
            a = uow.students.from_snapshot(a_snap)
            b = uow.students.from_snapshot(b_snap)
            if a is None or b is None:
                raise NotFoundError("Student not found.")
            try:
                _pair_in_transaction(tx, uow, a, b)
            except ValueError as exc:
                raise InvalidStateError(str(exc)) from exc
            return a, b

        a, b = uow.run_transaction(txn, "Pair students")
        logger.info("Admin %s paired students %s and %s", cmd.acting_user_id, a.id, b.id)

        cancelled = 0
        for student_id in (a.id, b.id):
            cancelled += _run_cleanup(
                f"cancel pending requests for student {student_id}",
                cancel_all_pending_requests, uow, student_id,
            ) or 0
        _run_cleanup(
            f"update partner info for student {a.id}",
            update_partner_info_on_applications, uow, a.id, True, b.full_name, b.email,
        )
        _run_cleanup(
            f"update partner info for student {b.id}",
            update_partner_info_on_applications, uow, b.id, True, a.full_name, a.email,
        )
        students = [_get_student_or_raise(uow, a.id), _get_student_or_raise(uow, b.id)]
        return PairingDTO(students=[_Assembler.student(s) for s in students], cancelled_requests=cancelled)


@dataclass
class UnpairStudentsCommand:
    student_id: str
    partner_id: str
    acting_user_id: str
    acting_role: UserRole = UserRole.STUDENT


class UnpairStudentsUseCase:
    """
    Dissolve a partnership.  Fails without touching anything unless the two
    students currently point at each other.  Afterwards the partner details
    are cleared from both students' active applications.
    """

    def execute(self, cmd: UnpairStudentsCommand, uow: UnitOfWork) -> UnpairResultDTO:
        is_party = cmd.acting_user_id in (cmd.student_id, cmd.partner_id)
        if not is_party:
            if cmd.acting_role != UserRole.ADMIN:
                raise AuthorizationError("You can only end your own partnership.")
            _require_admin(uow, cmd.acting_user_id)

        _get_student_or_raise(uow, cmd.student_id)
        _get_student_or_raise(uow, cmd.partner_id)
        a_ref = uow.students.ref(cmd.student_id)
        b_ref = uow.students.ref(cmd.partner_id)

        def txn(tx: AbstractTransaction) -> None:
            a_snap, b_snap = tx.get_all([a_ref, b_ref])
            a = uow.students.from_snapshot(a_snap)
            b = uow.students.from_snapshot(b_snap)
            if a is None or b is None:
                raise NotFoundError("Student not found.")
            try:
                _partnership_rules.ensure_mutually_paired(a, b)
            except ValueError as exc:
                raise InvalidStateError(str(exc)) from exc
            tx.update(a_ref, _partnership_rules.unpaired_fields())
            tx.update(b_ref, _partnership_rules.unpaired_fields())

        uow.run_transaction(txn, "Unpair students")
        logger.info("Students %s and %s unpaired", cmd.student_id, cmd.partner_id)

        updated = 0
        for student_id in (cmd.student_id, cmd.partner_id):
            updated += _run_cleanup(
                f"clear partner info for student {student_id}",
                update_partner_info_on_applications, uow, student_id, False,
            ) or 0
        return UnpairResultDTO(student_ids=[cmd.student_id, cmd.partner_id], applications_updated=updated)


# ===========================================================================
# USE CASES — SUPERVISOR CO-SUPERVISION
# ===========================================================================

@dataclass
class CreateSupervisorPartnershipRequestCommand:
    requesting_supervisor_id: str
    target_supervisor_id: str
    project_id: str


class CreateSupervisorPartnershipRequestUseCase:
    def execute(
        self, cmd: CreateSupervisorPartnershipRequestCommand, uow: UnitOfWork
    ) -> SupervisorPartnershipRequestDTO:
        try:
            _co_supervision_rules.ensure_distinct(cmd.requesting_supervisor_id, cmd.target_supervisor_id)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc

        requester = _get_supervisor_or_raise(uow, cmd.requesting_supervisor_id)
        target = _get_supervisor_or_raise(uow, cmd.target_supervisor_id)
        project = _get_project_or_raise(uow, cmd.project_id)

        try:
            _co_supervision_rules.ensure_owner(project, requester.id)
        except ValueError as exc:
            raise AuthorizationError(str(exc)) from exc
        try:
            _co_supervision_rules.ensure_open(project)
        except ValueError as exc:
            raise ConflictError(str(exc)) from exc
        try:
            _co_supervision_rules.ensure_eligible(target)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc
        if not _capacity_policy(uow).has_room(target):
            raise ConflictError(
                f"{target.full_name} has no remaining capacity "
                f"({target.current_capacity}/{target.max_capacity} projects)."
            )
        if check_existing_supervisor_request(uow, requester.id, target.id, project.id) is not None:
            raise ConflictError("A pending request to this supervisor for this project already exists.")

        project_ref = uow.projects.ref(project.id)

        def txn(tx: AbstractTransaction) -> SupervisorPartnershipRequest:
            current = uow.projects.from_snapshot(tx.get(project_ref))
            if current is None:
                raise NotFoundError(f"Project {project.id} not found.")
            try:
                _co_supervision_rules.ensure_open(current)
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc
            # Re-checked after the project read; the project write below makes
            # concurrent invites for the same project conflict and re-run.
            if check_existing_supervisor_request(uow, requester.id, target.id, current.id) is not None:
                raise ConflictError("A pending request to this supervisor for this project already exists.")
            tx.update(project_ref, {"updated_at": _utcnow()})
            ref = uow.supervisor_requests.ref()
            request = SupervisorPartnershipRequest(
                id=ref.id,
                requesting_supervisor_id=requester.id,
                requesting_supervisor_name=requester.full_name,
                target_supervisor_id=target.id,
                target_supervisor_name=target.full_name,
                project_id=current.id,
                project_title=current.title,
            )
            tx.create(ref, to_document(request))
            return request

        request = uow.run_transaction(txn, "Create supervisor partnership request")
        logger.info(
            "Co-supervision request %s: %s -> %s for project %s",
            request.id, requester.id, target.id, project.id,
        )
        return _Assembler.supervisor_request(request)


def _close_supervisor_request(uow: UnitOfWork, request_id: str, status: RequestStatus) -> None:
    request_ref = uow.supervisor_requests.ref(request_id)

    def txn(tx: AbstractTransaction) -> None:
        request = uow.supervisor_requests.from_snapshot(tx.get(request_ref))
        if request is None:
            raise NotFoundError(f"Supervisor partnership request {request_id} not found.")
        if request.status != RequestStatus.PENDING:
            raise ConflictError(f"This request has already been {request.status.value}.")
        tx.update(request_ref, {"status": status.value, "responded_at": _utcnow()})

    uow.run_transaction(txn, f"Mark supervisor partnership request {status.value}")


@dataclass
class RespondToSupervisorPartnershipRequestCommand:
    request_id: str
    responder_id: str
    action: RequestAction


class RespondToSupervisorPartnershipRequestUseCase:
    """
    accept: the target becomes the project's co-supervisor and uses one unit
    of their capacity.  Other pending requests for the same project are then
    cancelled; requests for the requester's other projects are left alone.
    """

    def execute(
        self, cmd: RespondToSupervisorPartnershipRequestCommand, uow: UnitOfWork
    ) -> SupervisorPartnershipRequestDTO:
        request = _get_supervisor_request_or_raise(uow, cmd.request_id)
        if request.target_supervisor_id != cmd.responder_id:
            raise AuthorizationError("Only the invited supervisor can respond to this request.")
        _ensure_pending(request.status)

        if cmd.action == RequestAction.REJECT:
            _close_supervisor_request(uow, request.id, RequestStatus.REJECTED)
            return _Assembler.supervisor_request(uow.supervisor_requests.get(request.id))

        policy = _capacity_policy(uow)
        request_ref = uow.supervisor_requests.ref(request.id)
        project_ref = uow.projects.ref(request.project_id)
        target_ref = uow.supervisors.ref(request.target_supervisor_id)

        def txn(tx: AbstractTransaction) -> None:
            request_snap, project_snap, target_snap = tx.get_all([request_ref, project_ref, target_ref])
            current = uow.supervisor_requests.from_snapshot(request_snap)
            if current is None:
                raise NotFoundError(f"Supervisor partnership request {request.id} not found.")
            if current.status != RequestStatus.PENDING:
                raise ConflictError(f"This request has already been {current.status.value}.")
            project = uow.projects.from_snapshot(project_snap)
            if project is None:
                raise NotFoundError(f"Project {request.project_id} not found.")
            try:
                _co_supervision_rules.ensure_open(project)
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc
            target = uow.supervisors.from_snapshot(target_snap)
            if target is None:
                raise NotFoundError(f"Supervisor {request.target_supervisor_id} not found.")
            if not policy.has_room(target):
                raise CapacityExceededError(
                    f"{target.full_name} has reached maximum capacity "
                    f"({target.current_capacity}/{target.max_capacity} projects)."
                )

            now = _utcnow()
            tx.update(project_ref, {
                "co_supervisor_id": target.id,
                "co_supervisor_name": target.full_name,
                "updated_at": now,
            })
            tx.update(target_ref, policy.increment_fields(target))
            tx.update(request_ref, {"status": RequestStatus.ACCEPTED.value, "responded_at": now})

        uow.run_transaction(txn, "Accept supervisor partnership request")
        logger.info(
            "Supervisor %s is now co-supervising project %s", request.target_supervisor_id, request.project_id
        )
        _run_cleanup(
            f"cancel sibling requests for project {request.project_id}",
            cancel_sibling_supervisor_requests, uow, request.project_id, request.id,
        )
        return _Assembler.supervisor_request(uow.supervisor_requests.get(request.id))


@dataclass
class CancelSupervisorPartnershipRequestCommand:
    request_id: str
    requester_id: str


class CancelSupervisorPartnershipRequestUseCase:
    def execute(
        self, cmd: CancelSupervisorPartnershipRequestCommand, uow: UnitOfWork
    ) -> SupervisorPartnershipRequestDTO:
        request = _get_supervisor_request_or_raise(uow, cmd.request_id)
        if request.requesting_supervisor_id != cmd.requester_id:
            raise AuthorizationError("Only the sender can cancel this request.")
        _ensure_pending(request.status)
        _close_supervisor_request(uow, request.id, RequestStatus.CANCELLED)
        return _Assembler.supervisor_request(uow.supervisor_requests.get(request.id))


class ListSupervisorPartnershipRequestsUseCase:
    def execute(
        self, supervisor_id: str, uow: UnitOfWork, direction: str = "all"
    ) -> List[SupervisorPartnershipRequestDTO]:
        if direction not in ("incoming", "outgoing", "all"):
            raise ValueError("direction must be one of: all, incoming, outgoing")
        _get_supervisor_or_raise(uow, supervisor_id)
        requests: List[SupervisorPartnershipRequest] = []
        if direction in ("incoming", "all"):
            requests += uow.supervisor_requests.find_pending_incoming(supervisor_id)
        if direction in ("outgoing", "all"):
            requests += uow.supervisor_requests.find_pending_outgoing(supervisor_id)
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return [_Assembler.supervisor_request(r) for r in requests]


@dataclass
class UnpairCoSupervisorCommand:
    project_id: str
    supervisor_id: str


class UnpairCoSupervisorUseCase:
    """Remove a project's co-supervisor and give back the unit of capacity they used."""

    def execute(self, cmd: UnpairCoSupervisorCommand, uow: UnitOfWork) -> ProjectDTO:
        project = _get_project_or_raise(uow, cmd.project_id)
        try:
            _co_supervision_rules.ensure_owner(project, cmd.supervisor_id)
        except ValueError as exc:
            raise AuthorizationError(str(exc)) from exc
        try:
            _co_supervision_rules.ensure_has_co_supervisor(project)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc

        policy = _capacity_policy(uow)
        co_supervisor_id = project.co_supervisor_id
        project_ref = uow.projects.ref(project.id)
        co_ref = uow.supervisors.ref(co_supervisor_id)

        def txn(tx: AbstractTransaction) -> None:
            project_snap, co_snap = tx.get_all([project_ref, co_ref])
            current = uow.projects.from_snapshot(project_snap)
            if current is None:
                raise NotFoundError(f"Project {project.id} not found.")
            if current.co_supervisor_id != co_supervisor_id:
                raise ConflictError("The project's co-supervisor changed. Please refresh and try again.")
            tx.update(project_ref, {
                "co_supervisor_id": None,
                "co_supervisor_name": None,
                "updated_at": _utcnow(),
            })
            co_supervisor = uow.supervisors.from_snapshot(co_snap)
            if co_supervisor is not None:
                tx.update(co_ref, policy.decrement_fields(co_supervisor))

        uow.run_transaction(txn, "Remove co-supervisor")
        logger.info("Supervisor %s removed from project %s", co_supervisor_id, project.id)
        return _Assembler.project(_get_project_or_raise(uow, project.id))


class ListPartnersWithCapacityUseCase:
    """Active, approved supervisors other than the requester with spare capacity."""

    def execute(self, requester_id: str, uow: UnitOfWork) -> List[SupervisorDTO]:
        _get_supervisor_or_raise(uow, requester_id)
        policy = _capacity_policy(uow)
        partners = [
            s for s in uow.supervisors.list_active()
            if s.id != requester_id and s.is_approved and policy.has_room(s)
        ]
        return [_Assembler.supervisor(s) for s in sorted(partners, key=lambda s: s.full_name)]


# ===========================================================================
# USE CASES — APPLICATIONS
# ===========================================================================

@dataclass
class SubmitApplicationCommand:
    student_id: str
    supervisor_id: str
    project_title: str
    project_description: str = ""


class SubmitApplicationUseCase:
    """
    Create an application.  A partnered student's application carries the
    partner's details; when the partner already applied to the same
    supervisor the two applications are linked and the earlier one leads.
    """

    def execute(self, cmd: SubmitApplicationCommand, uow: UnitOfWork) -> ApplicationDTO:
        student = _get_student_or_raise(uow, cmd.student_id)
        supervisor = _get_supervisor_or_raise(uow, cmd.supervisor_id)
        if not supervisor.is_active:
            raise InvalidStateError(f"{supervisor.full_name} is not accepting applications.")

        duplicate = check_duplicate_application(uow, student.id, supervisor.id)
        if duplicate.is_duplicate:
            raise ConflictError("You already have an active application with this supervisor.")

        partner = uow.students.get(student.partner_id) if student.partner_id else None
        linked_id = _find_partner_application(uow, partner.id, supervisor.id) if partner else None
        student_ref = uow.students.ref(student.id)

        def txn(tx: AbstractTransaction) -> Application:
            current = uow.students.from_snapshot(tx.get(student_ref))
            if current is None:
                raise NotFoundError(f"Student {student.id} not found.")
            linked_ref = uow.applications.ref(linked_id) if linked_id else None
            linked = uow.applications.from_snapshot(tx.get(linked_ref)) if linked_ref else None

            ref = uow.applications.ref()
            application = Application(
                id=ref.id,
                student_id=current.id,
                student_name=current.full_name,
                student_email=current.email,
                supervisor_id=supervisor.id,
                supervisor_name=supervisor.full_name,
                project_title=cmd.project_title,
                project_description=cmd.project_description,
                partner_id=partner.id if partner else None,
                has_partner=partner is not None,
                partner_name=partner.full_name if partner else None,
                partner_email=partner.email if partner else None,
                linked_application_id=linked.id if linked else None,
                is_lead_application=linked is None,
            )
            tx.create(ref, to_document(application))
            if linked is not None:
                tx.update(linked_ref, {
                    "linked_application_id": application.id,
                    "is_lead_application": True,
                    "last_updated": _utcnow(),
                })
            if current.match_status == MatchStatus.UNMATCHED:
                tx.update(student_ref, {"match_status": MatchStatus.PENDING.value, "updated_at": _utcnow()})
            return application

        application = uow.run_transaction(txn, "Submit application")
        logger.info(
            "Application %s submitted by %s to supervisor %s", application.id, student.id, supervisor.id
        )
        uow.publish(ApplicationCreatedEvent(
            application_id=application.id,
            student_id=application.student_id,
            student_name=application.student_name,
            student_email=application.student_email,
            supervisor_id=application.supervisor_id,
            supervisor_name=application.supervisor_name,
            project_title=application.project_title,
            has_partner=application.has_partner,
            partner_id=application.partner_id,
        ))
        return _Assembler.application(application)


class GetApplicationUseCase:
    def execute(self, application_id: str, uow: UnitOfWork) -> ApplicationDTO:
        return _Assembler.application(_get_application_or_raise(uow, application_id))


class ListApplicationsUseCase:
    """Applications of a student (as applicant or partner) or of a supervisor."""

    def execute(
        self,
        uow: UnitOfWork,
        student_id: Optional[str] = None,
        supervisor_id: Optional[str] = None,
    ) -> List[ApplicationDTO]:
        if student_id:
            found = {a.id: a for a in uow.applications.find_by_student(student_id)}
            for a in uow.applications.find_by_partner(student_id):
                found.setdefault(a.id, a)
            applications = list(found.values())
        elif supervisor_id:
            applications = uow.applications.find_by_supervisor(supervisor_id)
        else:
            applications = uow.applications.find_all()
        applications.sort(key=lambda a: a.date_applied, reverse=True)
        return [_Assembler.application(a) for a in applications]


class CheckDuplicateApplicationUseCase:
    def execute(self, student_id: str, supervisor_id: str, uow: UnitOfWork) -> DuplicateCheckDTO:
        return check_duplicate_application(uow, student_id, supervisor_id)


@dataclass
class UpdateApplicationStatusCommand:
    application_id: str
    new_status: ApplicationStatus
    caller_id: str
    caller_role: UserRole
    feedback: Optional[str] = None


class UpdateApplicationStatusUseCase:
    """
    Apply a supervisor/admin decision to an application.

    Approving takes one unit of the supervisor's capacity and reverting an
    approval gives it back; both happen in the same transaction as the status
    write, and an approval at capacity changes nothing.  For legacy linked
    pairs only the lead application moves capacity.
    """

    def execute(self, cmd: UpdateApplicationStatusCommand, uow: UnitOfWork) -> ApplicationDTO:
        application = _get_application_or_raise(uow, cmd.application_id)

        is_admin = cmd.caller_role == UserRole.ADMIN
        if cmd.caller_id != application.supervisor_id and not is_admin:
            raise AuthorizationError("You don't have permission to update this application.")

        previous = application.status
        try:
            _status_policy.validate_transition(previous, cmd.new_status)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc

        effect = _status_policy.capacity_effect(previous, cmd.new_status)
        fields = _status_policy.status_fields(previous, cmd.new_status, cmd.feedback)
        application_ref = uow.applications.ref(application.id)

        def ensure_unchanged(snapshot: DocumentSnapshot) -> None:
            current = uow.applications.from_snapshot(snapshot)
            if current is None:
                raise NotFoundError("Application not found. It may have been deleted.")
            if current.status != previous:
                raise ConflictError(
                    "This application was updated by someone else. Please refresh and try again."
                )

        if effect.changes_capacity and _status_policy.moves_capacity(application):
            policy = _capacity_policy(uow)
            supervisor_ref = uow.supervisors.ref(application.supervisor_id)

            def txn(tx: AbstractTransaction) -> None:
                app_snap, supervisor_snap = tx.get_all([application_ref, supervisor_ref])
                ensure_unchanged(app_snap)
                supervisor = uow.supervisors.from_snapshot(supervisor_snap)
                if supervisor is None:
                    raise NotFoundError("Supervisor not found.")
                if effect.is_approving:
                    try:
                        policy.ensure_room(supervisor)
                    except ValueError as exc:
                        raise CapacityExceededError(str(exc)) from exc
                    tx.update(supervisor_ref, policy.increment_fields(supervisor))
                else:
                    tx.update(supervisor_ref, policy.decrement_fields(supervisor))
                tx.update(application_ref, fields)

            uow.run_transaction(txn, "Update application status")
        else:
            def status_only_txn(tx: AbstractTransaction) -> None:
                ensure_unchanged(tx.get(application_ref))
                tx.update(application_ref, fields)

            uow.run_transaction(status_only_txn, "Update application status")

        logger.info(
            "Application %s: %s -> %s by %s",
            application.id, previous.value, cmd.new_status.value, cmd.caller_id,
        )

        if (
            cmd.new_status == ApplicationStatus.REJECTED
            and application.is_lead_application
            and application.linked_application_id
        ):
            _run_cleanup(
                f"reject linked application {application.linked_application_id}",
                self._reject_linked, uow, application.linked_application_id, cmd.feedback,
            )
        if effect.changes_capacity:
            _run_cleanup(
                f"update match status for application {application.id}",
                _set_match_status,
                uow,
                [sid for sid in (application.student_id, application.partner_id) if sid],
                MatchStatus.MATCHED if effect.is_approving else MatchStatus.PENDING,
            )

        uow.publish(ApplicationStatusChangedEvent(
            application_id=application.id,
            student_id=application.student_id,
            student_name=application.student_name,
            student_email=application.student_email,
            supervisor_id=application.supervisor_id,
            supervisor_name=application.supervisor_name,
            project_title=application.project_title,
            previous_status=previous.value,
            new_status=cmd.new_status.value,
            triggered_by_user_id=cmd.caller_id,
            feedback=cmd.feedback,
            has_partner=application.has_partner,
            partner_id=application.partner_id,
            partner_name=application.partner_name,
            partner_email=application.partner_email,
        ))
        return _Assembler.application(_get_application_or_raise(uow, application.id))

    @staticmethod
    def _reject_linked(uow: UnitOfWork, linked_id: str, feedback: Optional[str]) -> bool:
        linked = uow.applications.get(linked_id)
        if linked is None or linked.status != ApplicationStatus.PENDING:
            return False
        uow.applications.update(linked_id, _status_policy.linked_rejection_fields(feedback))
        return True


@dataclass
class ResubmitApplicationCommand:
    application_id: str
    student_id: str


class ResubmitApplicationUseCase:
    """Return a revision_requested application to pending, together with its linked partner application."""

    def execute(self, cmd: ResubmitApplicationCommand, uow: UnitOfWork) -> ApplicationDTO:
        application = _get_application_or_raise(uow, cmd.application_id)
        if not _status_policy.can_resubmit(application, cmd.student_id):
            raise AuthorizationError("You don't have permission to resubmit this application.")
        try:
            _status_policy.validate_resubmission(application)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc

        application_ref = uow.applications.ref(application.id)
        linked_ref = (
            uow.applications.ref(application.linked_application_id)
            if application.linked_application_id else None
        )

        def txn(tx: AbstractTransaction) -> None:
            current = uow.applications.from_snapshot(tx.get(application_ref))
            if current is None:
                raise NotFoundError("Application not found. It may have been deleted.")
            try:
                _status_policy.validate_resubmission(current)
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc
            linked = uow.applications.from_snapshot(tx.get(linked_ref)) if linked_ref else None

            fields = _status_policy.resubmission_fields()
            tx.update(application_ref, fields)
            if linked is not None and linked.status == ApplicationStatus.REVISION_REQUESTED:
                tx.update(linked_ref, fields)

        uow.run_transaction(txn, "Resubmit application")
        logger.info("Application %s resubmitted by %s", application.id, cmd.student_id)

        supervisor = _run_cleanup(
            f"load supervisor {application.supervisor_id} for resubmission notice",
            uow.supervisors.get, application.supervisor_id,
        )
        uow.publish(ApplicationResubmittedEvent(
            application_id=application.id,
            student_id=application.student_id,
            student_name=application.student_name,
            supervisor_id=application.supervisor_id,
            supervisor_name=application.supervisor_name,
            supervisor_email=supervisor.email if supervisor else "",
            project_title=application.project_title,
            triggered_by_user_id=cmd.student_id,
        ))
        return _Assembler.application(_get_application_or_raise(uow, application.id))


# ===========================================================================
# USE CASES — ADMIN
# ===========================================================================

@dataclass
class UpdateSupervisorCapacityCommand:
    supervisor_id: str
    max_capacity: int
    reason: str
    admin_id: str


class UpdateSupervisorCapacityUseCase:
    """Override a supervisor's max capacity and record who did it and why."""

    def execute(self, cmd: UpdateSupervisorCapacityCommand, uow: UnitOfWork) -> CapacityChangeDTO:
        admin = _require_admin(uow, cmd.admin_id)
        reason = (cmd.reason or "").strip()
        if not reason:
            raise InvalidStateError("A reason is required when changing supervisor capacity.")

        policy = _capacity_policy(uow)
        supervisor = _get_supervisor_or_raise(uow, cmd.supervisor_id)
        try:
            policy.validate_max_capacity(cmd.max_capacity, supervisor.current_capacity)
        except ValueError as exc:
            raise InvalidStateError(str(exc)) from exc

        supervisor_ref = uow.supervisors.ref(supervisor.id)

        def txn(tx: AbstractTransaction) -> CapacityChange:
            current = uow.supervisors.from_snapshot(tx.get(supervisor_ref))
            if current is None:
                raise NotFoundError(f"Supervisor {supervisor.id} not found.")
            try:
                policy.validate_max_capacity(cmd.max_capacity, current.current_capacity)
            except ValueError as exc:
                raise InvalidStateError(str(exc)) from exc

            ref = uow.capacity_changes.ref()
            change = CapacityChange(
                id=ref.id,
                supervisor_id=current.id,
                supervisor_name=current.full_name,
                admin_id=admin.id,
                admin_email=admin.email,
                old_max_capacity=current.max_capacity,
                new_max_capacity=cmd.max_capacity,
                reason=reason,
            )
            tx.update(supervisor_ref, policy.max_capacity_fields(current, cmd.max_capacity))
            tx.create(ref, to_document(change))
            return change

        change = uow.run_transaction(txn, "Update supervisor capacity")
        logger.info(
            "Capacity change: supervisor=%s max %d -> %d by admin=%s reason=%r",
            change.supervisor_id, change.old_max_capacity, change.new_max_capacity,
            change.admin_email, change.reason,
        )
        return _Assembler.capacity_change(change)


class ListCapacityChangesUseCase:
    def execute(self, supervisor_id: str, admin_id: str, uow: UnitOfWork) -> List[CapacityChangeDTO]:
        _require_admin(uow, admin_id)
        _get_supervisor_or_raise(uow, supervisor_id)
        return [_Assembler.capacity_change(c) for c in uow.capacity_changes.list_for_supervisor(supervisor_id)]


@dataclass
class SetSupervisorApprovalCommand:
    supervisor_id: str
    is_approved: bool
    admin_id: str


class SetSupervisorApprovalUseCase:
    def execute(self, cmd: SetSupervisorApprovalCommand, uow: UnitOfWork) -> SupervisorDTO:
        _require_admin(uow, cmd.admin_id)
        supervisor = _get_supervisor_or_raise(uow, cmd.supervisor_id)
        with _store_errors("Set supervisor approval"):
            uow.supervisors.update(supervisor.id, {"is_approved": cmd.is_approved, "updated_at": _utcnow()})
        logger.info(
            "Supervisor %s %s by admin %s",
            supervisor.id, "approved" if cmd.is_approved else "unapproved", cmd.admin_id,
        )
        return _Assembler.supervisor(_get_supervisor_or_raise(uow, supervisor.id))


class GetDashboardStatsUseCase:
    def execute(self, admin_id: str, uow: UnitOfWork) -> DashboardStatsDTO:
        _require_admin(uow, admin_id)
        stats = _dashboard_svc.compute_stats(
            uow.students.find_all(),
            uow.supervisors.find_all(),
            uow.applications.find_all(),
        )
        return DashboardStatsDTO(**asdict(stats))
