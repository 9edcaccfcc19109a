"""
api.py

REST API layer for the MentorMatch student/supervisor matching system.

Framework : FastAPI
Auth      : Bearer token.  The token is the caller's user id; get_current_user
            resolves it to a student, supervisor or admin.  Real token
            verification belongs in front of this service (an identity
            provider or gateway) and can replace get_current_user without
            touching the routes.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /students                     — registration, profiles, pending requests
  ├── /supervisors                  — registration, profiles, pending requests
  ├── /projects                     — supervised projects
  ├── /partnerships                 — student partnership requests & unpairing
  ├── /supervisor-partnerships      — co-supervision requests & unpairing
  ├── /applications                 — submit, review, resubmit
  └── /admin                        — capacity, approval, statistics, direct pairing

Error handling
--------------
  NotFoundError      → 404
  AuthorizationError → 403
  InvalidStateError  → 422
  ConflictError      → 409
  InternalError      → 500
  ValueError         → 422

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>", "error": "<kind>" }
"""

from __future__ import annotations

import dataclasses
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Path, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, EmailStr, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    AuthorizationError,
    ErrorKind,
    ReverseRequestExistsError,
    # DTOs
    CurrentUserDTO,
    # Commands
    CancelPartnershipRequestCommand,
    CancelSupervisorPartnershipRequestCommand,
    CreatePartnershipRequestCommand,
    CreateProjectCommand,
    CreateSupervisorPartnershipRequestCommand,
    PairStudentsCommand,
    RegisterStudentCommand,
    RegisterSupervisorCommand,
    RespondToPartnershipRequestCommand,
    RespondToSupervisorPartnershipRequestCommand,
    ResubmitApplicationCommand,
    SetSupervisorApprovalCommand,
    SubmitApplicationCommand,
    UnpairCoSupervisorCommand,
    UnpairStudentsCommand,
    UpdateApplicationStatusCommand,
    UpdateSupervisorCapacityCommand,
    # Use cases
    CancelPartnershipRequestUseCase,
    CancelSupervisorPartnershipRequestUseCase,
    CheckDuplicateApplicationUseCase,
    CreatePartnershipRequestUseCase,
    CreateProjectUseCase,
    CreateSupervisorPartnershipRequestUseCase,
    GetApplicationUseCase,
    GetDashboardStatsUseCase,
    GetProjectUseCase,
    GetStudentUseCase,
    GetSupervisorUseCase,
    ListApplicationsUseCase,
    ListCapacityChangesUseCase,
    ListPartnersWithCapacityUseCase,
    ListPartnershipRequestsUseCase,
    ListProjectsUseCase,
    ListStudentsUseCase,
    ListSupervisorPartnershipRequestsUseCase,
    ListSupervisorsUseCase,
    PairStudentsUseCase,
    RegisterStudentUseCase,
    RegisterSupervisorUseCase,
    ResolveUserUseCase,
    RespondToPartnershipRequestUseCase,
    RespondToSupervisorPartnershipRequestUseCase,
    ResubmitApplicationUseCase,
    SetSupervisorApprovalUseCase,
    SubmitApplicationUseCase,
    UnitOfWork,
    UnpairCoSupervisorUseCase,
    UnpairStudentsUseCase,
    UpdateApplicationStatusUseCase,
    UpdateSupervisorCapacityUseCase,
)
from config import Settings, get_settings
from infrastructure import InMemoryUnitOfWork
from model import Admin, ApplicationStatus, RequestAction, UserRole
from repository import StoreError

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_STATE: 422,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_DIRECTION_PATTERN = "^(all|incoming|outgoing)$"


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

async def application_error_handler(request: Request, exc: ApplicationError):
    content: Dict[str, Any] = {"detail": str(exc), "error": exc.kind.value}
    if isinstance(exc, ReverseRequestExistsError):
        content["request_id"] = exc.request_id
    return JSONResponse(status_code=_STATUS_BY_KIND[exc.kind], content=content)


async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Unhandled store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": ErrorKind.INTERNAL.value},
    )


async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "error": ErrorKind.INVALID_STATE.value},
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def get_uow(request: Request) -> UnitOfWork:
    """The process-wide UnitOfWork created at startup."""
    return request.app.state.uow


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    uow: UnitOfWork = Depends(get_uow),
) -> CurrentUserDTO:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = ResolveUserUseCase().execute(credentials.credentials, uow)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def _require_role(user: CurrentUserDTO, *roles: UserRole) -> None:
    if user.role not in {r.value for r in roles}:
        raise AuthorizationError(
            f"This action requires one of the roles: {sorted(r.value for r in roles)}."
        )


def _require_self_or_admin(user: CurrentUserDTO, user_id: str) -> None:
    if user.id != user_id and user.role != UserRole.ADMIN.value:
        raise AuthorizationError("You can only view your own data.")


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

class RegisterStudentRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    student_id: str = Field(..., min_length=1, max_length=50)
    department: str = Field(..., min_length=1, max_length=200)
    skills: str = Field(default="")
    interests: str = Field(default="")


class RegisterSupervisorRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    department: str = Field(..., min_length=1, max_length=200)
    title: str = Field(default="")
    bio: str = Field(default="")
    expertise_areas: List[str] = Field(default_factory=list)
    max_capacity: int = Field(default=0, ge=0)


class CreateProjectRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: str = Field(default="")
    project_code: str = Field(default="", max_length=50)


class PartnershipRequestBody(BaseModel):
    target_student_id: str = Field(..., min_length=1)


class RespondRequest(BaseModel):
    action: str = Field(..., description="One of: accept, reject")

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        valid = {a.value for a in RequestAction}
        if v not in valid:
            raise ValueError(f"action must be one of: {sorted(valid)}")
        return v


class UnpairRequest(BaseModel):
    partner_id: str = Field(..., min_length=1)
    student_id: Optional[str] = Field(
        default=None, description="Defaults to the caller; admins may name any student."
    )


class SupervisorPartnershipRequestBody(BaseModel):
    target_supervisor_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)


class UnpairCoSupervisorRequest(BaseModel):
    project_id: str = Field(..., min_length=1)


class SubmitApplicationRequest(BaseModel):
    supervisor_id: str = Field(..., min_length=1)
    project_title: str = Field(..., min_length=1, max_length=300)
    project_description: str = Field(default="", max_length=5000)


class UpdateApplicationStatusRequest(BaseModel):
    status: str = Field(..., description="One of: pending, approved, rejected, revision_requested")
    feedback: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {s.value for s in ApplicationStatus}
        if v not in valid:
            raise ValueError(f"status must be one of: {sorted(valid)}")
        return v


class UpdateCapacityRequest(BaseModel):
    max_capacity: int
    reason: str = Field(..., min_length=1, max_length=1000)


class SetApprovalRequest(BaseModel):
    is_approved: bool


class PairStudentsRequest(BaseModel):
    student_a_id: str = Field(..., min_length=1)
    student_b_id: str = Field(..., min_length=1)


# ===========================================================================
# ROUTERS
# ===========================================================================

# ---------------------------------------------------------------------------
# Students
# ---------------------------------------------------------------------------

student_router = APIRouter(prefix="/students", tags=["Students"])


@student_router.post("", status_code=status.HTTP_201_CREATED, summary="Register a student")
def register_student(body: RegisterStudentRequest, uow: UnitOfWork = Depends(get_uow)):
    """Create a student profile.  The returned `id` is the student's bearer token."""
    cmd = RegisterStudentCommand(
        full_name=body.full_name,
        email=str(body.email),
        student_id=body.student_id,
        department=body.department,
        skills=body.skills,
        interests=body.interests,
    )
    return _ok(RegisterStudentUseCase().execute(cmd, uow))


@student_router.get("", summary="List students")
def list_students(
    available_only: bool = Query(False, description="Only students without a partner"),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(ListStudentsUseCase().execute(uow, available_only=available_only))


@student_router.get("/{student_id}", summary="Get a student by ID")
def get_student(
    student_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(GetStudentUseCase().execute(student_id, uow))


@student_router.get("/{student_id}/partnership-requests", summary="Pending partnership requests of a student")
def list_student_partnership_requests(
    student_id: str = Path(...),
    direction: str = Query("all", pattern=_DIRECTION_PATTERN),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    _require_self_or_admin(user, student_id)
    return _ok(ListPartnershipRequestsUseCase().execute(student_id, uow, direction=direction))


# ---------------------------------------------------------------------------
# Supervisors
# ---------------------------------------------------------------------------

supervisor_router = APIRouter(prefix="/supervisors", tags=["Supervisors"])


@supervisor_router.post("", status_code=status.HTTP_201_CREATED, summary="Register a supervisor")
def register_supervisor(body: RegisterSupervisorRequest, uow: UnitOfWork = Depends(get_uow)):
    """Create a supervisor profile.  New supervisors must be approved by an admin."""
    cmd = RegisterSupervisorCommand(
        full_name=body.full_name,
        email=str(body.email),
        department=body.department,
        title=body.title,
        bio=body.bio,
        expertise_areas=body.expertise_areas,
        max_capacity=body.max_capacity,
    )
    return _ok(RegisterSupervisorUseCase().execute(cmd, uow))


@supervisor_router.get("", summary="List supervisors")
def list_supervisors(
    available_only: bool = Query(False, description="Only approved supervisors with spare capacity"),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(ListSupervisorsUseCase().execute(uow, available_only=available_only))


@supervisor_router.get("/{supervisor_id}", summary="Get a supervisor by ID")
def get_supervisor(
    supervisor_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(GetSupervisorUseCase().execute(supervisor_id, uow))


@supervisor_router.get(
    "/{supervisor_id}/partnership-requests", summary="Pending co-supervision requests of a supervisor"
)
def list_supervisor_partnership_requests(
    supervisor_id: str = Path(...),
    direction: str = Query("all", pattern=_DIRECTION_PATTERN),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    _require_self_or_admin(user, supervisor_id)
    return _ok(ListSupervisorPartnershipRequestsUseCase().execute(supervisor_id, uow, direction=direction))


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a project")
def create_project(
    body: CreateProjectRequest,
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    _require_role(user, UserRole.SUPERVISOR)
    cmd = CreateProjectCommand(
        supervisor_id=user.id,
        title=body.title,
        description=body.description,
        project_code=body.project_code,
    )
    return _ok(CreateProjectUseCase().execute(cmd, uow))


@project_router.get("", summary="List projects")
def list_projects(
    supervisor_id: Optional[str] = Query(None),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(ListProjectsUseCase().execute(uow, supervisor_id=supervisor_id))


@project_router.get("/{project_id}", summary="Get a project by ID")
def get_project(
    project_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(GetProjectUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Student partnerships
# ---------------------------------------------------------------------------

partnership_router = APIRouter(prefix="/partnerships", tags=["Partnerships"])


@partnership_router.post(
    "/request", status_code=status.HTTP_201_CREATED, summary="Send a partnership request"
)
def create_partnership_request(
    body: PartnershipRequestBody,
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    """
    Both students must be free.  If the target already sent you a request the
    call fails with 409 and `request_id` points at the request to respond to.
    """
    _require_role(user, UserRole.STUDENT)
    cmd = CreatePartnershipRequestCommand(requester_id=user.id, target_student_id=body.target_student_id)
    return _ok(CreatePartnershipRequestUseCase().execute(cmd, uow))


@partnership_router.post("/{request_id}/respond", summary="Accept or reject a partnership request")
def respond_to_partnership_request(
    body: RespondRequest,
    request_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = RespondToPartnershipRequestCommand(
        request_id=request_id, responder_id=user.id, action=RequestAction(body.action)
    )
    return _ok(RespondToPartnershipRequestUseCase().execute(cmd, uow))


@partnership_router.delete("/{request_id}", summary="Cancel a partnership request you sent")
def cancel_partnership_request(
    request_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = CancelPartnershipRequestCommand(request_id=request_id, requester_id=user.id)
    return _ok(CancelPartnershipRequestUseCase().execute(cmd, uow))


@partnership_router.post("/unpair", summary="End a partnership")
def unpair_students(
    body: UnpairRequest,
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = UnpairStudentsCommand(
        student_id=body.student_id or user.id,
        partner_id=body.partner_id,
        acting_user_id=user.id,
        acting_role=UserRole(user.role),
    )
    return _ok(UnpairStudentsUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Supervisor co-supervision
# ---------------------------------------------------------------------------

supervisor_partnership_router = APIRouter(prefix="/supervisor-partnerships", tags=["Supervisor Partnerships"])


@supervisor_partnership_router.post(
    "/request", status_code=status.HTTP_201_CREATED, summary="Invite a co-supervisor to a project"
)
def create_supervisor_partnership_request(
    body: SupervisorPartnershipRequestBody,
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    _require_role(user, UserRole.SUPERVISOR)
    cmd = CreateSupervisorPartnershipRequestCommand(
        requesting_supervisor_id=user.id,
        target_supervisor_id=body.target_supervisor_id,
        project_id=body.project_id,
    )
    return _ok(CreateSupervisorPartnershipRequestUseCase().execute(cmd, uow))


@supervisor_partnership_router.get("/partners-with-capacity", summary="Supervisors who can co-supervise")
def list_partners_with_capacity(
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    _require_role(user, UserRole.SUPERVISOR)
    return _ok(ListPartnersWithCapacityUseCase().execute(user.id, uow))


@supervisor_partnership_router.post("/{request_id}/respond", summary="Accept or reject a co-supervision request")
def respond_to_supervisor_partnership_request(
    body: RespondRequest,
    request_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = RespondToSupervisorPartnershipRequestCommand(
        request_id=request_id, responder_id=user.id, action=RequestAction(body.action)
    )
    return _ok(RespondToSupervisorPartnershipRequestUseCase().execute(cmd, uow))


@supervisor_partnership_router.delete("/{request_id}", summary="Cancel a co-supervision request you sent")
def cancel_supervisor_partnership_request(
    request_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = CancelSupervisorPartnershipRequestCommand(request_id=request_id, requester_id=user.id)
    return _ok(CancelSupervisorPartnershipRequestUseCase().execute(cmd, uow))


@supervisor_partnership_router.post("/unpair", summary="Remove a project's co-supervisor")
def unpair_co_supervisor(
    body: UnpairCoSupervisorRequest,
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = UnpairCoSupervisorCommand(project_id=body.project_id, supervisor_id=user.id)
    return _ok(UnpairCoSupervisorUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------

application_router = APIRouter(prefix="/applications", tags=["Applications"])


@application_router.post("", status_code=status.HTTP_201_CREATED, summary="Apply to a supervisor")
def submit_application(
    body: SubmitApplicationRequest,
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    _require_role(user, UserRole.STUDENT)
    cmd = SubmitApplicationCommand(
        student_id=user.id,
        supervisor_id=body.supervisor_id,
        project_title=body.project_title,
        project_description=body.project_description,
    )
    return _ok(SubmitApplicationUseCase().execute(cmd, uow))


@application_router.get("", summary="List applications visible to the caller")
def list_applications(
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    if user.role == UserRole.STUDENT.value:
        return _ok(ListApplicationsUseCase().execute(uow, student_id=user.id))
    if user.role == UserRole.SUPERVISOR.value:
        return _ok(ListApplicationsUseCase().execute(uow, supervisor_id=user.id))
    return _ok(ListApplicationsUseCase().execute(uow))


@application_router.get("/duplicate-check", summary="Does the caller already have an active application?")
def check_duplicate_application(
    supervisor_id: str = Query(..., min_length=1),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(CheckDuplicateApplicationUseCase().execute(user.id, supervisor_id, uow))


@application_router.get("/{application_id}", summary="Get an application by ID")
def get_application(
    application_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    result = GetApplicationUseCase().execute(application_id, uow)
    parties = {result.student_id, result.supervisor_id, result.partner_id}
    if user.id not in parties and user.role != UserRole.ADMIN.value:
        raise AuthorizationError("You don't have permission to view this application.")
    return _ok(result)


@application_router.patch("/{application_id}/status", summary="Approve, reject or request revision")
def update_application_status(
    body: UpdateApplicationStatusRequest,
    application_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    """
    Approving uses one unit of the supervisor's capacity; at capacity the call
    fails with 409 and nothing changes.  A decided application can never be
    set back to pending here; use resubmit.
    """
    cmd = UpdateApplicationStatusCommand(
        application_id=application_id,
        new_status=ApplicationStatus(body.status),
        caller_id=user.id,
        caller_role=UserRole(user.role),
        feedback=body.feedback,
    )
    return _ok(UpdateApplicationStatusUseCase().execute(cmd, uow))


@application_router.post("/{application_id}/resubmit", summary="Resubmit after a revision request")
def resubmit_application(
    application_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = ResubmitApplicationCommand(application_id=application_id, student_id=user.id)
    return _ok(ResubmitApplicationUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

admin_router = APIRouter(prefix="/admin", tags=["Admin"])


@admin_router.patch("/supervisors/{supervisor_id}/capacity", summary="Change a supervisor's max capacity")
def update_supervisor_capacity(
    body: UpdateCapacityRequest,
    supervisor_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = UpdateSupervisorCapacityCommand(
        supervisor_id=supervisor_id,
        max_capacity=body.max_capacity,
        reason=body.reason,
        admin_id=user.id,
    )
    return _ok(UpdateSupervisorCapacityUseCase().execute(cmd, uow))


@admin_router.get("/supervisors/{supervisor_id}/capacity-changes", summary="Capacity change history")
def list_capacity_changes(
    supervisor_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(ListCapacityChangesUseCase().execute(supervisor_id, user.id, uow))


@admin_router.patch("/supervisors/{supervisor_id}/approval", summary="Approve or unapprove a supervisor")
def set_supervisor_approval(
    body: SetApprovalRequest,
    supervisor_id: str = Path(...),
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = SetSupervisorApprovalCommand(
        supervisor_id=supervisor_id, is_approved=body.is_approved, admin_id=user.id
    )
    return _ok(SetSupervisorApprovalUseCase().execute(cmd, uow))


@admin_router.get("/stats", summary="Dashboard statistics")
def get_dashboard_stats(
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    return _ok(GetDashboardStatsUseCase().execute(user.id, uow))


@admin_router.post("/partnerships/pair", summary="Pair two students directly")
def pair_students(
    body: PairStudentsRequest,
    user: CurrentUserDTO = Depends(get_current_user),
    uow: UnitOfWork = Depends(get_uow),
):
    cmd = PairStudentsCommand(
        student_a_id=body.student_a_id, student_b_id=body.student_b_id, acting_user_id=user.id
    )
    return _ok(PairStudentsUseCase().execute(cmd, uow))


# ===========================================================================
# OPENAPI CUSTOMISATION — tag order and descriptions
# ===========================================================================

tags_metadata = [
    {"name": "Health", "description": "Liveness probe."},
    {
        "name": "Students",
        "description": "Student registration and profiles.  A student's id is their bearer token.",
    },
    {
        "name": "Supervisors",
        "description": (
            "Supervisor registration and profiles, including capacity "
            "(current/max approved projects) and availability."
        ),
    },
    {"name": "Projects", "description": "Supervised projects, each with at most one co-supervisor."},
    {
        "name": "Partnerships",
        "description": (
            "Two-phase student partnership handshake: request, then accept or reject.  "
            "Accepting cancels every other pending request of both students."
        ),
    },
    {
        "name": "Supervisor Partnerships",
        "description": (
            "Project-scoped co-supervision requests.  Accepting uses one unit of the "
            "co-supervisor's capacity."
        ),
    },
    {
        "name": "Applications",
        "description": (
            "Student applications to supervisors.  Approval is coupled to supervisor "
            "capacity; revision requests are answered through resubmit."
        ),
    },
    {
        "name": "Admin",
        "description": "Capacity overrides with audit trail, supervisor approval, statistics, direct pairing.",
    },
]


# ===========================================================================
# APP FACTORY
# ===========================================================================

def create_app(settings: Optional[Settings] = None, uow: Optional[UnitOfWork] = None) -> FastAPI:
    """
    Build the FastAPI application.  Without an explicit `uow` an in-memory
    one is created at startup and closed at shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if uow is not None:
            app.state.uow = uow
        else:
            app.state.uow = InMemoryUnitOfWork(settings)
        _seed_system_admin(app.state.uow, settings)
        try:
            yield
        finally:
            app.state.uow.close()

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description=(
            "Matches students with supervisors: student partnerships, project "
            "co-supervision, applications with supervisor capacity accounting, "
            "and admin oversight."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ApplicationError, application_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    @app.get("/health", tags=["Health"], summary="Service health check")
    def health():
        return {"status": "ok"}

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(student_router)
    api_v1.include_router(supervisor_router)
    api_v1.include_router(project_router)
    api_v1.include_router(partnership_router)
    api_v1.include_router(supervisor_partnership_router)
    api_v1.include_router(application_router)
    api_v1.include_router(admin_router)
    app.include_router(api_v1)

    # MCP server exposing the API routes as tools, at /mcp
    if settings.MCP_ENABLED:
        FastApiMCP(app).mount_http()

    return app


def _seed_system_admin(uow: UnitOfWork, settings: Settings) -> None:
    """Ensure the configured system admin exists so admin routes are usable."""
    if uow.admins.get(settings.SYSTEM_ADMIN_ID) is not None:
        return
    uow.admins.create(Admin(
        id=settings.SYSTEM_ADMIN_ID,
        full_name="System Administrator",
        email=settings.SYSTEM_ADMIN_EMAIL,
    ))
    logger.info("System admin seeded: %s", settings.SYSTEM_ADMIN_ID)
