import threading

import pytest

import application
from application import (
    AuthorizationError,
    CancelPartnershipRequestCommand,
    CancelPartnershipRequestUseCase,
    ConflictError,
    CreatePartnershipRequestCommand,
    CreatePartnershipRequestUseCase,
    InvalidStateError,
    ListPartnershipRequestsUseCase,
    NotFoundError,
    RespondToPartnershipRequestCommand,
    RespondToPartnershipRequestUseCase,
    ReverseRequestExistsError,
    check_existing_request,
)
from model import PartnershipRequest, PartnershipStatus, RequestAction, RequestStatus
from repository import StoreError


def send(uow, requester, target):
    return CreatePartnershipRequestUseCase().execute(
        CreatePartnershipRequestCommand(requester_id=requester.id, target_student_id=target.id), uow
    )


def respond(uow, request_id, responder, action):
    return RespondToPartnershipRequestUseCase().execute(
        RespondToPartnershipRequestCommand(request_id=request_id, responder_id=responder.id, action=action),
        uow,
    )


def status_of(uow, student):
    return uow.students.get(student.id).partnership_status


# ---------------------------------------------------------------------------
# Creating requests
# ---------------------------------------------------------------------------

def test_request_moves_both_students_into_the_handshake(uow, make_student):
    alice, bob = make_student("Alice"), make_student("Bob")

    dto = send(uow, alice, bob)

    assert dto.status == "pending"
    assert dto.requester_name == "Alice"
    assert dto.target_student_name == "Bob"
    assert status_of(uow, alice) == PartnershipStatus.PENDING_SENT
    assert status_of(uow, bob) == PartnershipStatus.PENDING_RECEIVED


def test_cannot_request_yourself(uow, make_student):
    alice = make_student()
    with pytest.raises(InvalidStateError):
        send(uow, alice, alice)


def test_unknown_target_is_not_found(uow, make_student):
    alice = make_student()
    with pytest.raises(NotFoundError):
        CreatePartnershipRequestUseCase().execute(
            CreatePartnershipRequestCommand(requester_id=alice.id, target_student_id="ghost"), uow
        )
    assert status_of(uow, alice) == PartnershipStatus.NONE


def test_duplicate_request_conflicts(uow, make_student):
    alice, bob = make_student(), make_student()
    send(uow, alice, bob)
    with pytest.raises(ConflictError):
        send(uow, alice, bob)


def test_reverse_request_points_at_the_existing_one(uow, make_student):
    alice, bob = make_student(), make_student()
    original = send(uow, alice, bob)

    with pytest.raises(ReverseRequestExistsError) as excinfo:
        send(uow, bob, alice)

    assert excinfo.value.request_id == original.id
    assert len(uow.partnership_requests.find_all()) == 1


def test_check_existing_request_reports_direction(uow, make_student):
    alice, bob = make_student(), make_student()
    send(uow, alice, bob)

    assert check_existing_request(uow, alice.id, bob.id).is_reverse is False
    assert check_existing_request(uow, bob.id, alice.id).is_reverse is True
    assert check_existing_request(uow, alice.id, make_student().id) is None


def test_requester_already_paired_is_invalid_state(uow, make_student, make_pair):
    paired, _ = make_pair()
    with pytest.raises(InvalidStateError, match="already paired"):
        send(uow, paired, make_student())


def test_target_with_pending_request_is_invalid_state(uow, make_student):
    alice, bob, carol = make_student(), make_student(), make_student()
    send(uow, alice, bob)

    with pytest.raises(InvalidStateError):
        send(uow, carol, bob)
    with pytest.raises(InvalidStateError, match="Cancel your existing outgoing request first"):
        send(uow, alice, carol)
    assert status_of(uow, carol) == PartnershipStatus.NONE


@pytest.mark.parametrize("senders, targets", [
    ((0, 1), (1, 0)),  # A -> B racing B -> A
    ((0, 1), (2, 2)),  # A -> C racing B -> C
])
def test_concurrent_requests_leave_one_pending(uow, monkeypatch, make_student, senders, targets):
    students = [make_student() for _ in range(3)]
    barrier = threading.Barrier(2, timeout=5)

    def gated_check(*args):
        found = check_existing_request(*args)
        barrier.wait()
        return found

    monkeypatch.setattr(application, "check_existing_request", gated_check)
    outcomes = []

    def request(sender, target):
        try:
            send(uow, students[sender], students[target])
            outcomes.append("sent")
        except (InvalidStateError, ConflictError):
            outcomes.append("refused")

    threads = [threading.Thread(target=request, args=pair) for pair in zip(senders, targets)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["refused", "sent"]
    pending = [r for r in uow.partnership_requests.find_all() if r.status == RequestStatus.PENDING]
    assert len(pending) == 1


# ---------------------------------------------------------------------------
# Accepting
# ---------------------------------------------------------------------------

def test_accept_pairs_students_and_releases_stale_requests(uow, make_student):
    alice, bob, carol = make_student("Alice"), make_student("Bob"), make_student("Carol")
    request = send(uow, alice, bob)

    # Older data can hold a second pending request involving Alice.
    uow.partnership_requests.create(PartnershipRequest(
        requester_id=carol.id,
        requester_name=carol.full_name,
        target_student_id=alice.id,
        target_student_name=alice.full_name,
    ))
    uow.students.update(carol.id, {"partnership_status": PartnershipStatus.PENDING_SENT.value})

    dto = respond(uow, request.id, bob, RequestAction.ACCEPT)

    assert dto.status == "accepted"
    assert dto.responded_at is not None
    a, b = uow.students.get(alice.id), uow.students.get(bob.id)
    assert (a.partner_id, a.partnership_status) == (bob.id, PartnershipStatus.PAIRED)
    assert (b.partner_id, b.partnership_status) == (alice.id, PartnershipStatus.PAIRED)

    assert uow.partnership_requests.find_pending_incoming(alice.id) == []
    assert status_of(uow, carol) == PartnershipStatus.NONE


def test_accept_stands_when_cleanup_fails(uow, monkeypatch, make_student):
    alice, bob = make_student(), make_student()
    request = send(uow, alice, bob)

    def broken(*args, **kwargs):
        raise StoreError("batch write failed")

    monkeypatch.setattr(application, "cancel_all_pending_requests", broken)
    monkeypatch.setattr(application, "update_partner_info_on_applications", broken)

    dto = respond(uow, request.id, bob, RequestAction.ACCEPT)

    assert dto.status == "accepted"
    a, b = uow.students.get(alice.id), uow.students.get(bob.id)
    assert (a.partner_id, a.partnership_status) == (bob.id, PartnershipStatus.PAIRED)
    assert (b.partner_id, b.partnership_status) == (alice.id, PartnershipStatus.PAIRED)


def test_only_the_target_can_respond(uow, make_student):
    alice, bob = make_student(), make_student()
    request = send(uow, alice, bob)

    with pytest.raises(AuthorizationError):
        respond(uow, request.id, alice, RequestAction.ACCEPT)
    assert status_of(uow, bob) == PartnershipStatus.PENDING_RECEIVED


def test_responding_twice_is_invalid_state(uow, make_student):
    alice, bob = make_student(), make_student()
    request = send(uow, alice, bob)
    respond(uow, request.id, bob, RequestAction.ACCEPT)

    with pytest.raises(InvalidStateError):
        respond(uow, request.id, bob, RequestAction.REJECT)


def test_accept_conflicts_when_the_handshake_was_broken(uow, make_student):
    alice, bob = make_student(), make_student()
    request = send(uow, alice, bob)
    uow.students.update(alice.id, {"partnership_status": PartnershipStatus.NONE.value})

    with pytest.raises(ConflictError):
        respond(uow, request.id, bob, RequestAction.ACCEPT)

    assert uow.students.get(alice.id).partner_id is None
    assert uow.students.get(bob.id).partner_id is None
    assert uow.partnership_requests.get(request.id).status == RequestStatus.PENDING


def test_accept_copies_partner_details_onto_active_applications(
    uow, make_student, make_supervisor, make_application
):
    alice, bob = make_student("Alice"), make_student("Bob")
    supervisor = make_supervisor()
    application = make_application(alice, supervisor)
    request = send(uow, alice, bob)

    respond(uow, request.id, bob, RequestAction.ACCEPT)

    updated = uow.applications.get(application.id)
    assert updated.has_partner is True
    assert updated.partner_name == "Bob"
    assert updated.partner_email == bob.email


# ---------------------------------------------------------------------------
# Rejecting and cancelling
# ---------------------------------------------------------------------------

def test_reject_releases_both_students(uow, make_student):
    alice, bob = make_student(), make_student()
    request = send(uow, alice, bob)

    dto = respond(uow, request.id, bob, RequestAction.REJECT)

    assert dto.status == "rejected"
    assert status_of(uow, alice) == PartnershipStatus.NONE
    assert status_of(uow, bob) == PartnershipStatus.NONE


def test_reject_leaves_a_paired_requester_alone(uow, make_student):
    alice, bob, other = make_student(), make_student(), make_student()
    request = send(uow, alice, bob)
    uow.students.update(alice.id, {
        "partner_id": other.id,
        "partnership_status": PartnershipStatus.PAIRED.value,
    })

    respond(uow, request.id, bob, RequestAction.REJECT)

    a = uow.students.get(alice.id)
    assert a.partnership_status == PartnershipStatus.PAIRED
    assert a.partner_id == other.id
    assert status_of(uow, bob) == PartnershipStatus.NONE


def test_cancel_by_sender(uow, make_student):
    alice, bob = make_student(), make_student()
    request = send(uow, alice, bob)

    dto = CancelPartnershipRequestUseCase().execute(
        CancelPartnershipRequestCommand(request_id=request.id, requester_id=alice.id), uow
    )

    assert dto.status == "cancelled"
    assert status_of(uow, alice) == PartnershipStatus.NONE
    assert status_of(uow, bob) == PartnershipStatus.NONE
    # Both are free again.
    send(uow, bob, alice)


def test_only_the_sender_can_cancel(uow, make_student):
    alice, bob = make_student(), make_student()
    request = send(uow, alice, bob)
    with pytest.raises(AuthorizationError):
        CancelPartnershipRequestUseCase().execute(
            CancelPartnershipRequestCommand(request_id=request.id, requester_id=bob.id), uow
        )


def test_cancel_unknown_request_is_not_found(uow, make_student):
    with pytest.raises(NotFoundError):
        CancelPartnershipRequestUseCase().execute(
            CancelPartnershipRequestCommand(request_id="missing", requester_id=make_student().id), uow
        )


def test_list_requests_by_direction(uow, make_student):
    alice, bob, carol, dave = make_student(), make_student(), make_student(), make_student()
    send(uow, alice, bob)
    send(uow, carol, dave)

    use_case = ListPartnershipRequestsUseCase()
    assert [r.target_student_id for r in use_case.execute(alice.id, uow, "outgoing")] == [bob.id]
    assert use_case.execute(alice.id, uow, "incoming") == []
    assert [r.requester_id for r in use_case.execute(bob.id, uow)] == [alice.id]
    with pytest.raises(ValueError):
        use_case.execute(alice.id, uow, "sideways")
