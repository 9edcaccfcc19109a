"""
service.py

Domain rules for the MentorMatch system.

Responsibilities
----------------
Each service class encapsulates the business rules for one area.  Services
receive domain model instances (from model.py) and return either a verdict
or the field updates the caller should write.  Nothing here touches the
document store; application.py runs these rules inside store transactions.

Services
--------
- PartnershipRules         – the student-student handshake preconditions
- CoSupervisionRules       – project-scoped supervisor partnership preconditions
- ApplicationStatusPolicy  – application state machine and capacity coupling
- CapacityPolicy           – supervisor capacity limits and availability
- DashboardService         – admin statistics over students/supervisors/applications

Design notes
------------
- Business rule violations raise ValueError with a user-facing message;
  the application layer decides which error kind the violation maps to.
- UTC datetimes are used throughout.
- Field-update helpers return plain dicts keyed by document field name so
  they can be handed straight to a transaction or batch write.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from model import (
    Application,
    ApplicationStatus,
    AvailabilityStatus,
    MatchStatus,
    PartnershipStatus,
    Project,
    RequestStatus,
    Student,
    Supervisor,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def availability_for(current_capacity: int, max_capacity: int) -> AvailabilityStatus:
    """Derive the cached availability label from the two capacity counters."""
    remaining = max_capacity - current_capacity
    if remaining <= 0:
        return AvailabilityStatus.UNAVAILABLE
    if remaining == 1:
        return AvailabilityStatus.LIMITED
    return AvailabilityStatus.AVAILABLE


_PENDING_HANDSHAKE = (PartnershipStatus.PENDING_SENT, PartnershipStatus.PENDING_RECEIVED)


# ---------------------------------------------------------------------------
# PartnershipRules
# ---------------------------------------------------------------------------

class PartnershipRules:
    """
    Student-student handshake:

        none ──request──▶ pending_sent / pending_received ──accept──▶ paired
                                   │
                                   └──reject / cancel──▶ none
    """

    def ensure_distinct(self, requester_id: str, target_id: str) -> None:
        if requester_id == target_id:
            raise ValueError("You cannot send a partnership request to yourself.")

    def ensure_can_send(self, requester: Student) -> None:
        status = requester.partnership_status
        if status == PartnershipStatus.PAIRED or requester.partner_id:
            raise ValueError("You are already paired with a partner.")
        if status == PartnershipStatus.PENDING_SENT:
            raise ValueError(
                "You already have a pending outgoing request. "
                "Cancel your existing outgoing request first."
            )
        if status == PartnershipStatus.PENDING_RECEIVED:
            raise ValueError(
                "You have a pending incoming request. Respond to your incoming request first."
            )

    def ensure_can_receive(self, target: Student) -> None:
        if target.partnership_status == PartnershipStatus.PAIRED or target.partner_id:
            raise ValueError(f"{target.full_name or 'This student'} is already paired with a partner.")
        if target.partnership_status != PartnershipStatus.NONE:
            raise ValueError(
                f"{target.full_name or 'This student'} already has a pending partnership request."
            )

    def ensure_handshake_intact(self, requester: Student, target: Student) -> None:
        """Both parties must still be in the state the request put them in."""
        if requester.partner_id or target.partner_id:
            raise ValueError("One of the students is already paired with someone else.")
        if requester.partnership_status != PartnershipStatus.PENDING_SENT:
            raise ValueError("The requesting student is no longer waiting on this request.")
        if target.partnership_status != PartnershipStatus.PENDING_RECEIVED:
            raise ValueError("You are no longer waiting to respond to this request.")

    def ensure_can_pair(self, a: Student, b: Student) -> None:
        if a.id == b.id:
            raise ValueError("A student cannot be paired with themselves.")
        for student in (a, b):
            if student.partner_id or student.partnership_status == PartnershipStatus.PAIRED:
                raise ValueError(f"Student {student.id} is already paired with a partner.")

    def ensure_mutually_paired(self, a: Student, b: Student) -> None:
        if (
            a.partner_id != b.id
            or b.partner_id != a.id
            or a.partnership_status != PartnershipStatus.PAIRED
            or b.partnership_status != PartnershipStatus.PAIRED
        ):
            raise ValueError("These students are not paired with each other.")

    def paired_fields(self, partner_id: str) -> Dict[str, Any]:
        return {
            "partner_id": partner_id,
            "partnership_status": PartnershipStatus.PAIRED.value,
            "updated_at": _utcnow(),
        }

    def unpaired_fields(self) -> Dict[str, Any]:
        return {
            "partner_id": None,
            "partnership_status": PartnershipStatus.NONE.value,
            "updated_at": _utcnow(),
        }

    def reset_if_pending(self, student: Optional[Student]) -> Optional[Dict[str, Any]]:
        """Fields that release a student from a dead handshake; None if they are not in one."""
        if student is None or student.partnership_status not in _PENDING_HANDSHAKE:
            return None
        return {"partnership_status": PartnershipStatus.NONE.value, "updated_at": _utcnow()}

    def closed_request_fields(self, status: RequestStatus) -> Dict[str, Any]:
        return {"status": status.value, "responded_at": _utcnow()}


# ---------------------------------------------------------------------------
# CoSupervisionRules
# ---------------------------------------------------------------------------

class CoSupervisionRules:
    """Preconditions for supervisor-supervisor partnerships on a single project."""

    def ensure_distinct(self, requester_id: str, target_id: str) -> None:
        if requester_id == target_id:
            raise ValueError("You cannot send a co-supervision request to yourself.")

    def ensure_owner(self, project: Project, supervisor_id: str) -> None:
        if project.supervisor_id != supervisor_id:
            raise ValueError("Only the project's supervisor can manage its co-supervisor.")

    def ensure_open(self, project: Project) -> None:
        if project.co_supervisor_id:
            raise ValueError(f"Project '{project.title}' already has a co-supervisor.")

    def ensure_eligible(self, target: Supervisor) -> None:
        if not target.is_active or not target.is_approved:
            raise ValueError(f"{target.full_name} is not accepting co-supervision requests.")

    def ensure_has_co_supervisor(self, project: Project) -> None:
        if not project.co_supervisor_id:
            raise ValueError(f"Project '{project.title}' has no co-supervisor.")


# ---------------------------------------------------------------------------
# CapacityPolicy
# ---------------------------------------------------------------------------

class CapacityPolicy:
    """Supervisor capacity accounting.  Invariant: 0 <= current <= max."""

    def __init__(self, ceiling: int = 50):
        self.ceiling = ceiling

    def has_room(self, supervisor: Supervisor) -> bool:
        return supervisor.current_capacity < supervisor.max_capacity

    def ensure_room(self, supervisor: Supervisor) -> None:
        if not self.has_room(supervisor):
            raise ValueError(
                f"Cannot approve: Maximum capacity reached "
                f"({supervisor.current_capacity}/{supervisor.max_capacity} projects). "
                "Please contact an administrator to increase capacity."
            )

    def increment_fields(self, supervisor: Supervisor) -> Dict[str, Any]:
        current = supervisor.current_capacity + 1
        return self._capacity_fields(current, supervisor.max_capacity)

    def decrement_fields(self, supervisor: Supervisor) -> Dict[str, Any]:
        current = max(0, supervisor.current_capacity - 1)
        return self._capacity_fields(current, supervisor.max_capacity)

    def validate_max_capacity(self, new_max: int, current_capacity: int) -> None:
        if new_max < 0:
            raise ValueError("Maximum capacity cannot be negative.")
        if new_max > self.ceiling:
            raise ValueError(f"Maximum capacity cannot exceed {self.ceiling}.")
        if new_max < current_capacity:
            raise ValueError(
                f"Cannot set maximum capacity to {new_max}: the supervisor already has "
                f"{current_capacity} approved projects."
            )

    def max_capacity_fields(self, supervisor: Supervisor, new_max: int) -> Dict[str, Any]:
        return self._capacity_fields(supervisor.current_capacity, new_max, include_max=True)

    @staticmethod
    def _capacity_fields(current: int, maximum: int, include_max: bool = False) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "current_capacity": current,
            "availability_status": availability_for(current, maximum).value,
            "updated_at": _utcnow(),
        }
        if include_max:
            fields["max_capacity"] = maximum
        return fields


# ---------------------------------------------------------------------------
# ApplicationStatusPolicy
# ---------------------------------------------------------------------------

_DECIDED = (
    ApplicationStatus.APPROVED,
    ApplicationStatus.REJECTED,
    ApplicationStatus.REVISION_REQUESTED,
)

ACTIVE_STATUSES = (ApplicationStatus.PENDING, ApplicationStatus.APPROVED)


@dataclass(frozen=True)
class CapacityEffect:
    is_approving: bool
    is_unapproving: bool

    @property
    def changes_capacity(self) -> bool:
        return self.is_approving or self.is_unapproving


class ApplicationStatusPolicy:
    """
    pending ──▶ approved | rejected | revision_requested
    revision_requested ──resubmit──▶ pending
    approved ──▶ rejected | revision_requested   (reverses the capacity increment)

    A generic status update never moves a decided application back to pending.
    """

    def validate_transition(self, previous: ApplicationStatus, new: ApplicationStatus) -> None:
        if new == ApplicationStatus.PENDING and previous in _DECIDED:
            raise ValueError(
                "Cannot revert application back to pending status after a decision has been made."
            )

    def capacity_effect(self, previous: ApplicationStatus, new: ApplicationStatus) -> CapacityEffect:
        return CapacityEffect(
            is_approving=new == ApplicationStatus.APPROVED and previous != ApplicationStatus.APPROVED,
            is_unapproving=previous == ApplicationStatus.APPROVED and new != ApplicationStatus.APPROVED,
        )

    def moves_capacity(self, application: Application) -> bool:
        """Only the lead of a legacy linked pair (or an unlinked application) counts."""
        return application.is_lead_application or not application.linked_application_id

    def status_fields(
        self,
        previous: ApplicationStatus,
        new: ApplicationStatus,
        feedback: Optional[str] = None,
    ) -> Dict[str, Any]:
        """response_date is stamped only when the status moves into a decision."""
        now = _utcnow()
        fields: Dict[str, Any] = {"status": new.value, "last_updated": now}
        if feedback:
            fields["supervisor_feedback"] = feedback
        if new != previous and new in (ApplicationStatus.APPROVED, ApplicationStatus.REJECTED):
            fields["response_date"] = now
        return fields

    def linked_rejection_fields(self, feedback: Optional[str]) -> Dict[str, Any]:
        note = "Linked partner application was rejected"
        fields = self.status_fields(ApplicationStatus.PENDING, ApplicationStatus.REJECTED)
        fields["supervisor_feedback"] = f"{feedback} ({note})" if feedback else note
        return fields

    def can_resubmit(self, application: Application, student_id: str) -> bool:
        return student_id in (application.student_id, application.partner_id)

    def validate_resubmission(self, application: Application) -> None:
        if application.status != ApplicationStatus.REVISION_REQUESTED:
            raise ValueError(
                "Application can only be resubmitted when in revision_requested status."
            )

    def resubmission_fields(self) -> Dict[str, Any]:
        now = _utcnow()
        return {
            "status": ApplicationStatus.PENDING.value,
            "last_updated": now,
            "resubmitted_date": now,
        }


# ---------------------------------------------------------------------------
# DashboardService
# ---------------------------------------------------------------------------

@dataclass
class DashboardStats:
    total_students: int = 0
    matched_students: int = 0
    pending_matches: int = 0
    active_supervisors: int = 0
    total_supervisors: int = 0
    approved_applications: int = 0
    pending_applications: int = 0
    students_without_approved_app: int = 0
    total_available_capacity: int = 0


class DashboardService:
    def compute_stats(
        self,
        students: List[Student],
        supervisors: List[Supervisor],
        applications: List[Application],
    ) -> DashboardStats:
        approved = [a for a in applications if a.status == ApplicationStatus.APPROVED]
        covered = set()
        for app in approved:
            covered.add(app.student_id)
            if app.partner_id:
                covered.add(app.partner_id)

        active = [s for s in supervisors if s.is_active]
        return DashboardStats(
            total_students=len(students),
            matched_students=sum(1 for s in students if s.match_status == MatchStatus.MATCHED),
            pending_matches=sum(1 for s in students if s.match_status == MatchStatus.PENDING),
            active_supervisors=len(active),
            total_supervisors=len(supervisors),
            approved_applications=len(approved),
            pending_applications=sum(1 for a in applications if a.status == ApplicationStatus.PENDING),
            students_without_approved_app=sum(1 for s in students if s.id not in covered),
            total_available_capacity=sum(
                max(0, s.max_capacity - s.current_capacity) for s in active
            ),
        )
