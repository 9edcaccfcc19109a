import threading

import pytest

from application import (
    AuthorizationError,
    CapacityExceededError,
    CheckDuplicateApplicationUseCase,
    ConflictError,
    InvalidStateError,
    ListApplicationsUseCase,
    NotFoundError,
    ResubmitApplicationCommand,
    ResubmitApplicationUseCase,
    SubmitApplicationCommand,
    SubmitApplicationUseCase,
    UpdateApplicationStatusCommand,
    UpdateApplicationStatusUseCase,
)
from model import ApplicationStatus, AvailabilityStatus, MatchStatus, UserRole
from repository import StoreError


def set_status(uow, application, caller, status, role=UserRole.SUPERVISOR, feedback=None):
    return UpdateApplicationStatusUseCase().execute(
        UpdateApplicationStatusCommand(
            application_id=application.id,
            new_status=status,
            caller_id=caller.id,
            caller_role=role,
            feedback=feedback,
        ),
        uow,
    )


def submit(uow, student, supervisor, title="Federated Learning"):
    return SubmitApplicationUseCase().execute(
        SubmitApplicationCommand(student_id=student.id, supervisor_id=supervisor.id, project_title=title),
        uow,
    )


def resubmit(uow, application, student):
    return ResubmitApplicationUseCase().execute(
        ResubmitApplicationCommand(application_id=application.id, student_id=student.id), uow
    )


# ---------------------------------------------------------------------------
# Status updates and capacity
# ---------------------------------------------------------------------------

def test_approvals_stop_at_max_capacity(uow, make_student, make_supervisor, make_application):
    supervisor = make_supervisor(max_capacity=2)
    apps = [make_application(make_student(), supervisor) for _ in range(3)]

    set_status(uow, apps[0], supervisor, ApplicationStatus.APPROVED)
    assert uow.supervisors.get(supervisor.id).availability_status == AvailabilityStatus.LIMITED
    set_status(uow, apps[1], supervisor, ApplicationStatus.APPROVED)

    with pytest.raises(CapacityExceededError, match="Maximum capacity reached"):
        set_status(uow, apps[2], supervisor, ApplicationStatus.APPROVED)

    s = uow.supervisors.get(supervisor.id)
    assert s.current_capacity == 2
    assert s.availability_status == AvailabilityStatus.UNAVAILABLE
    assert uow.applications.get(apps[2].id).status == ApplicationStatus.PENDING


def test_revoking_an_approval_returns_capacity(uow, make_student, make_supervisor, make_application):
    supervisor = make_supervisor(max_capacity=2)
    student = make_student()
    application = make_application(student, supervisor)

    approved = set_status(uow, application, supervisor, ApplicationStatus.APPROVED)
    assert approved.response_date is not None
    assert uow.students.get(student.id).match_status == MatchStatus.MATCHED

    rejected = set_status(uow, application, supervisor, ApplicationStatus.REJECTED, feedback="Scope changed")

    assert rejected.status == "rejected"
    assert rejected.supervisor_feedback == "Scope changed"
    assert uow.supervisors.get(supervisor.id).current_capacity == 0
    assert uow.students.get(student.id).match_status == MatchStatus.PENDING


def test_decision_on_a_stale_copy_is_refused(
    uow, monkeypatch, make_student, make_supervisor, make_application
):
    supervisor = make_supervisor(max_capacity=2)
    stale = make_application(make_student(), supervisor)
    set_status(uow, stale, supervisor, ApplicationStatus.APPROVED)
    monkeypatch.setattr(uow.applications, "get", lambda application_id: stale)

    with pytest.raises(ConflictError, match="updated by someone else"):
        set_status(uow, stale, supervisor, ApplicationStatus.REJECTED)
    monkeypatch.undo()

    assert uow.applications.get(stale.id).status == ApplicationStatus.APPROVED
    assert uow.supervisors.get(supervisor.id).current_capacity == 1


def test_repeating_a_decision_keeps_the_response_date(uow, make_student, make_supervisor, make_application):
    supervisor = make_supervisor()
    application = make_application(make_student(), supervisor)

    first = set_status(uow, application, supervisor, ApplicationStatus.REJECTED)
    again = set_status(uow, application, supervisor, ApplicationStatus.REJECTED, feedback="Still no")

    assert again.response_date == first.response_date
    assert again.supervisor_feedback == "Still no"


def test_revision_request_keeps_response_date_empty(uow, make_student, make_supervisor, make_application):
    supervisor = make_supervisor()
    application = make_application(make_student(), supervisor)

    dto = set_status(uow, application, supervisor, ApplicationStatus.REVISION_REQUESTED, feedback="More detail")

    assert dto.status == "revision_requested"
    assert dto.response_date is None
    assert uow.supervisors.get(supervisor.id).current_capacity == 0


@pytest.mark.parametrize("decided", [
    ApplicationStatus.APPROVED,
    ApplicationStatus.REJECTED,
    ApplicationStatus.REVISION_REQUESTED,
])
def test_decided_applications_cannot_return_to_pending(
    uow, make_student, make_supervisor, make_application, decided
):
    supervisor = make_supervisor()
    application = make_application(make_student(), supervisor, status=decided)

    with pytest.raises(InvalidStateError, match="Cannot revert application back to pending"):
        set_status(uow, application, supervisor, ApplicationStatus.PENDING)
    assert uow.applications.get(application.id).status == decided


def test_only_the_supervisor_or_an_admin_decides(uow, admin, make_student, make_supervisor, make_application):
    supervisor, other = make_supervisor(), make_supervisor()
    student = make_student()
    application = make_application(student, supervisor)

    with pytest.raises(AuthorizationError):
        set_status(uow, application, other, ApplicationStatus.APPROVED)
    with pytest.raises(AuthorizationError):
        set_status(uow, application, student, ApplicationStatus.APPROVED, role=UserRole.STUDENT)

    dto = set_status(uow, application, admin, ApplicationStatus.APPROVED, role=UserRole.ADMIN)
    assert dto.status == "approved"
    assert uow.supervisors.get(supervisor.id).current_capacity == 1


def test_unknown_application_is_not_found(uow, make_supervisor):
    supervisor = make_supervisor()
    with pytest.raises(NotFoundError, match="It may have been deleted"):
        UpdateApplicationStatusUseCase().execute(
            UpdateApplicationStatusCommand("missing", ApplicationStatus.APPROVED, supervisor.id, UserRole.SUPERVISOR),
            uow,
        )


def test_follower_of_a_linked_pair_does_not_move_capacity(
    uow, make_student, make_supervisor, make_application
):
    supervisor = make_supervisor()
    lead = make_application(make_student(), supervisor)
    follower = make_application(
        make_student(), supervisor, linked_application_id=lead.id, is_lead_application=False
    )
    uow.applications.update(lead.id, {"linked_application_id": follower.id})

    set_status(uow, follower, supervisor, ApplicationStatus.APPROVED)
    assert uow.supervisors.get(supervisor.id).current_capacity == 0

    set_status(uow, lead, supervisor, ApplicationStatus.APPROVED)
    assert uow.supervisors.get(supervisor.id).current_capacity == 1


def test_rejecting_the_lead_rejects_its_pending_partner_application(
    uow, make_student, make_supervisor, make_application
):
    supervisor = make_supervisor()
    lead = make_application(make_student(), supervisor)
    follower = make_application(
        make_student(), supervisor, linked_application_id=lead.id, is_lead_application=False
    )
    uow.applications.update(lead.id, {"linked_application_id": follower.id})
    lead = uow.applications.get(lead.id)

    set_status(uow, lead, supervisor, ApplicationStatus.REJECTED, feedback="Not a fit")

    linked = uow.applications.get(follower.id)
    assert linked.status == ApplicationStatus.REJECTED
    assert linked.supervisor_feedback == "Not a fit (Linked partner application was rejected)"
    assert linked.response_date is not None


def test_concurrent_approvals_never_exceed_capacity(uow, make_student, make_supervisor, make_application):
    supervisor = make_supervisor(max_capacity=1)
    apps = [make_application(make_student(), supervisor) for _ in range(2)]
    barrier = threading.Barrier(len(apps))
    outcomes = []

    def approve(application):
        barrier.wait()
        try:
            set_status(uow, application, supervisor, ApplicationStatus.APPROVED)
            outcomes.append("approved")
        except ConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=approve, args=(a,)) for a in apps]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["approved", "conflict"]
    assert uow.supervisors.get(supervisor.id).current_capacity == 1
    statuses = sorted(uow.applications.get(a.id).status.value for a in apps)
    assert statuses == ["approved", "pending"]


def test_status_change_emails_everyone_but_the_decider(
    uow, email_sender, make_pair, make_supervisor, make_application
):
    alice, bob = make_pair()
    supervisor = make_supervisor()
    application = make_application(alice, supervisor, partner=bob, project_title="Robotics")

    set_status(uow, application, supervisor, ApplicationStatus.APPROVED)

    recipients = sorted(m.to for m in email_sender.outbox)
    assert recipients == sorted([alice.email, bob.email])
    assert all(m.subject == "Application Approved - Robotics" for m in email_sender.outbox)


# ---------------------------------------------------------------------------
# Resubmission
# ---------------------------------------------------------------------------

def test_partner_can_resubmit_and_linked_application_follows(
    uow, email_sender, make_pair, make_supervisor, make_application
):
    alice, bob = make_pair()
    supervisor = make_supervisor()
    lead = make_application(alice, supervisor, status=ApplicationStatus.REVISION_REQUESTED, partner=bob)
    follower = make_application(
        bob, supervisor,
        status=ApplicationStatus.REVISION_REQUESTED,
        linked_application_id=lead.id,
        is_lead_application=False,
    )
    uow.applications.update(lead.id, {"linked_application_id": follower.id})

    dto = resubmit(uow, lead, bob)

    assert dto.status == "pending"
    assert dto.resubmitted_date is not None
    linked = uow.applications.get(follower.id)
    assert linked.status == ApplicationStatus.PENDING
    assert linked.resubmitted_date is not None
    assert [m.to for m in email_sender.outbox] == [supervisor.email]


def test_resubmit_survives_a_failed_supervisor_lookup(
    uow, monkeypatch, make_student, make_supervisor, make_application
):
    student = make_student()
    application = make_application(student, make_supervisor(), status=ApplicationStatus.REVISION_REQUESTED)

    def unavailable(supervisor_id):
        raise StoreError("supervisors collection unavailable")

    monkeypatch.setattr(uow.supervisors, "get", unavailable)

    dto = resubmit(uow, application, student)

    assert dto.status == "pending"
    assert uow.applications.get(application.id).status == ApplicationStatus.PENDING


def test_resubmit_requires_a_party_and_a_revision_request(
    uow, make_student, make_supervisor, make_application
):
    supervisor = make_supervisor()
    student = make_student()
    pending = make_application(student, supervisor)
    revision = make_application(student, make_supervisor(), status=ApplicationStatus.REVISION_REQUESTED)

    with pytest.raises(AuthorizationError):
        resubmit(uow, revision, make_student())
    with pytest.raises(InvalidStateError, match="revision_requested"):
        resubmit(uow, pending, student)
    assert uow.applications.get(revision.id).status == ApplicationStatus.REVISION_REQUESTED


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def test_submit_creates_a_pending_application(uow, email_sender, make_student, make_supervisor):
    student = make_student("Alice")
    supervisor = make_supervisor()

    dto = submit(uow, student, supervisor, title="Edge AI")

    assert dto.status == "pending"
    assert dto.has_partner is False
    assert dto.is_lead_application is True
    assert uow.students.get(student.id).match_status == MatchStatus.PENDING
    assert [m.subject for m in email_sender.outbox] == ["New Application - Edge AI"]
    assert email_sender.outbox[0].to == supervisor.email
    assert email_sender.outbox[0].body.startswith("Hello ")


def test_submit_carries_partner_details(uow, make_pair, make_supervisor):
    alice, bob = make_pair()
    dto = submit(uow, alice, make_supervisor())

    assert dto.has_partner is True
    assert dto.partner_id == bob.id
    assert dto.partner_name == bob.full_name
    assert dto.partner_email == bob.email


def test_submit_rejects_duplicates_for_applicant_and_partner(uow, make_pair, make_supervisor):
    alice, bob = make_pair()
    supervisor = make_supervisor()
    submit(uow, alice, supervisor)

    with pytest.raises(ConflictError):
        submit(uow, alice, supervisor)
    with pytest.raises(ConflictError):
        submit(uow, bob, supervisor)


def test_submit_links_to_the_partners_earlier_application(uow, make_student, make_supervisor):
    alice, bob = make_student(), make_student()
    supervisor = make_supervisor()
    earlier = submit(uow, alice, supervisor)
    for student, partner in ((alice, bob), (bob, alice)):
        uow.students.update(student.id, {"partner_id": partner.id, "partnership_status": "paired"})

    later = submit(uow, bob, supervisor)

    assert later.linked_application_id == earlier.id
    assert later.is_lead_application is False
    lead = uow.applications.get(earlier.id)
    assert lead.linked_application_id == later.id
    assert lead.is_lead_application is True


def test_submit_to_inactive_supervisor_fails(uow, make_student, make_supervisor):
    with pytest.raises(InvalidStateError):
        submit(uow, make_student(), make_supervisor(is_active=False))


def test_duplicate_check_fails_open(uow, monkeypatch, make_student, make_supervisor, make_application):
    student, supervisor = make_student(), make_supervisor()
    make_application(student, supervisor)
    use_case = CheckDuplicateApplicationUseCase()
    assert use_case.execute(student.id, supervisor.id, uow).is_duplicate is True

    def broken(*args, **kwargs):
        raise StoreError("index unavailable")

    monkeypatch.setattr(uow.applications, "find_active_for_supervisor", broken)

    result = use_case.execute(student.id, supervisor.id, uow)
    assert result.is_duplicate is False
    assert result.existing_application_id is None


def test_list_applications_includes_partner_applications(
    uow, make_pair, make_supervisor, make_application
):
    alice, bob = make_pair()
    supervisor = make_supervisor()
    mine = make_application(alice, supervisor, partner=bob)
    theirs = make_application(bob, make_supervisor())

    ids = {a.id for a in ListApplicationsUseCase().execute(uow, student_id=bob.id)}
    assert ids == {mine.id, theirs.id}
    assert [a.id for a in ListApplicationsUseCase().execute(uow, supervisor_id=supervisor.id)] == [mine.id]
