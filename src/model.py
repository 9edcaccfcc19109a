"""
model.py

Domain models for the MentorMatch student/supervisor matching system.

Entities
--------
- Student
- Supervisor
- Admin
- Project
- Application
- PartnershipRequest              (student ↔ student)
- SupervisorPartnershipRequest    (supervisor ↔ supervisor, scoped to a project)
- CapacityChange                  (audit record of admin capacity edits)

All models use Python dataclasses for clean, framework-agnostic definitions.
Document ids are opaque strings assigned by the document store.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class UserRole(str, Enum):
    STUDENT = "student"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"


class PartnershipStatus(str, Enum):
    """
    Where a student stands in the two-phase partnership handshake.

    NONE              – free to send or receive a request.
    PENDING_SENT      – has one outgoing request awaiting a response.
    PENDING_RECEIVED  – has one incoming request awaiting their response.
    PAIRED            – partner_id points at a student who points back.
    """
    NONE = "none"
    PENDING_SENT = "pending_sent"
    PENDING_RECEIVED = "pending_received"
    PAIRED = "paired"


class MatchStatus(str, Enum):
    UNMATCHED = "unmatched"
    PENDING = "pending"
    MATCHED = "matched"


class AvailabilityStatus(str, Enum):
    """Cached view of a supervisor's remaining capacity."""
    AVAILABLE = "available"
    LIMITED = "limited"         # exactly one free slot left
    UNAVAILABLE = "unavailable"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"


class RequestStatus(str, Enum):
    """Lifecycle status shared by both partnership request variants."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class RequestAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class ProjectStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------


@dataclass
class Student:
    """
    A registered student.

    `partnership_status` and `partner_id` are only ever mutated by the
    partnership workflow / pairing use cases. When `partnership_status` is
    PAIRED, `partner_id` is set and the partner's `partner_id` points back.
    """
    id: str = ""
    full_name: str = ""
    email: str = ""
    student_id: str = ""            # university student number
    department: str = ""
    skills: str = ""                # comma-separated
    interests: str = ""

    partner_id: Optional[str] = None
    partnership_status: PartnershipStatus = PartnershipStatus.NONE
    match_status: MatchStatus = MatchStatus.UNMATCHED

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Supervisor:
    """
    A faculty member who supervises projects.

    Invariant: 0 <= current_capacity <= max_capacity.
    `availability_status` is derived from the two capacity fields and is
    rewritten every time either of them changes.
    """
    id: str = ""
    full_name: str = ""
    email: str = ""
    department: str = ""
    title: str = ""                 # Dr., Prof., ...
    bio: str = ""
    expertise_areas: List[str] = field(default_factory=list)

    current_capacity: int = 0
    max_capacity: int = 0
    availability_status: AvailabilityStatus = AvailabilityStatus.UNAVAILABLE

    is_active: bool = True
    is_approved: bool = False       # set by an admin

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Admin:
    id: str = ""
    full_name: str = ""
    email: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Projects & applications
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """
    A supervised project. The co-supervision partnership lives here
    (`co_supervisor_id`), not on the Supervisor, so one supervisor may
    co-supervise several projects at once.
    """
    id: str = ""
    project_code: str = ""
    title: str = ""
    description: str = ""
    supervisor_id: str = ""
    supervisor_name: str = ""
    co_supervisor_id: Optional[str] = None
    co_supervisor_name: Optional[str] = None
    student_ids: List[str] = field(default_factory=list)
    status: ProjectStatus = ProjectStatus.PENDING_APPROVAL
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Application:
    """
    A student's application to work with a supervisor.

    `has_partner` / `partner_name` / `partner_email` are denormalised display
    fields kept in sync by the pairing use cases. `linked_application_id` and
    `is_lead_application` are the legacy partner-application linkage: only
    the lead (or an unlinked) application moves supervisor capacity.
    `response_date` is stamped exactly when status becomes approved/rejected.
    """
    id: str = ""
    student_id: str = ""
    student_name: str = ""
    student_email: str = ""
    supervisor_id: str = ""
    supervisor_name: str = ""

    project_title: str = ""
    project_description: str = ""

    partner_id: Optional[str] = None
    has_partner: bool = False
    partner_name: Optional[str] = None
    partner_email: Optional[str] = None

    linked_application_id: Optional[str] = None
    is_lead_application: bool = True

    status: ApplicationStatus = ApplicationStatus.PENDING
    supervisor_feedback: Optional[str] = None

    date_applied: datetime = field(default_factory=_now)
    last_updated: datetime = field(default_factory=_now)
    response_date: Optional[datetime] = None
    resubmitted_date: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Partnership requests
# ---------------------------------------------------------------------------


@dataclass
class PartnershipRequest:
    """
    Student → student partnership request.

    At most one PENDING request may exist between two students in either
    direction; the workflow enforces this, not the store.
    """
    id: str = ""
    requester_id: str = ""
    requester_name: str = ""
    requester_email: str = ""
    requester_student_id: str = ""
    requester_department: str = ""

    target_student_id: str = ""
    target_student_name: str = ""
    target_student_email: str = ""
    target_department: str = ""

    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    responded_at: Optional[datetime] = None


@dataclass
class SupervisorPartnershipRequest:
    """
    Supervisor → supervisor co-supervision request for one project.
    Pending uniqueness is per (requesting, target, project) triple.
    """
    id: str = ""
    requesting_supervisor_id: str = ""
    requesting_supervisor_name: str = ""
    target_supervisor_id: str = ""
    target_supervisor_name: str = ""
    project_id: str = ""
    project_title: str = ""

    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    responded_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass
class CapacityChange:
    """Immutable record of an admin override of a supervisor's max capacity."""
    id: str = ""
    supervisor_id: str = ""
    supervisor_name: str = ""
    admin_id: str = ""
    admin_email: str = ""
    old_max_capacity: int = 0
    new_max_capacity: int = 0
    reason: str = ""
    timestamp: datetime = field(default_factory=_now)
