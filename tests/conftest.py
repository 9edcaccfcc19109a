import itertools

import pytest

from config import Settings
from infrastructure import InMemoryUnitOfWork, LoggingEmailSender
from model import (
    Admin,
    Application,
    ApplicationStatus,
    PartnershipStatus,
    Project,
    Student,
    Supervisor,
)
from service import availability_for


@pytest.fixture
def settings():
    return Settings(_env_file=None, MCP_ENABLED=False, SYSTEM_ADMIN_ID="admin-1")


@pytest.fixture
def email_sender():
    return LoggingEmailSender()


@pytest.fixture
def uow(settings, email_sender):
    unit = InMemoryUnitOfWork(settings, email_sender=email_sender, synchronous_events=True)
    yield unit
    unit.close()


@pytest.fixture
def admin(uow):
    return uow.admins.create(Admin(id="admin-1", full_name="Ada Admin", email="admin@uni.test"))


@pytest.fixture
def make_student(uow):
    counter = itertools.count(1)

    def _make(name=None, **kwargs):
        n = next(counter)
        student = Student(
            full_name=name or f"Student {n}",
            email=f"student{n}@uni.test",
            student_id=f"S{n:04d}",
            department="Computer Science",
            **kwargs,
        )
        return uow.students.create(student)

    return _make


@pytest.fixture
def make_supervisor(uow):
    counter = itertools.count(1)

    def _make(name=None, current_capacity=0, max_capacity=3, is_approved=True, **kwargs):
        n = next(counter)
        supervisor = Supervisor(
            full_name=name or f"Dr. Supervisor {n}",
            email=f"supervisor{n}@uni.test",
            department="Computer Science",
            current_capacity=current_capacity,
            max_capacity=max_capacity,
            availability_status=availability_for(current_capacity, max_capacity),
            is_approved=is_approved,
            **kwargs,
        )
        return uow.supervisors.create(supervisor)

    return _make


@pytest.fixture
def make_project(uow):
    def _make(supervisor, title="Graph Neural Networks", **kwargs):
        project = Project(
            project_code=f"P-{title[:3].upper()}",
            title=title,
            supervisor_id=supervisor.id,
            supervisor_name=supervisor.full_name,
            **kwargs,
        )
        return uow.projects.create(project)

    return _make


@pytest.fixture
def make_application(uow):
    def _make(student, supervisor, status=ApplicationStatus.PENDING, partner=None, **kwargs):
        application = Application(
            student_id=student.id,
            student_name=student.full_name,
            student_email=student.email,
            supervisor_id=supervisor.id,
            supervisor_name=supervisor.full_name,
            project_title=kwargs.pop("project_title", f"Project of {student.full_name}"),
            partner_id=partner.id if partner else None,
            has_partner=partner is not None,
            partner_name=partner.full_name if partner else None,
            partner_email=partner.email if partner else None,
            status=status,
            **kwargs,
        )
        return uow.applications.create(application)

    return _make


@pytest.fixture
def make_pair(uow, make_student):
    """Two students already paired with each other."""
    def _make():
        a = make_student()
        b = make_student()
        for student, partner in ((a, b), (b, a)):
            uow.students.update(student.id, {
                "partner_id": partner.id,
                "partnership_status": PartnershipStatus.PAIRED.value,
            })
        return uow.students.get(a.id), uow.students.get(b.id)

    return _make
