import pytest

from infrastructure import InMemoryDocumentStore
from model import ApplicationStatus, RequestStatus, Student
from repository import (
    FieldFilter,
    StoreError,
    TransactionConflictError,
    commit_batch_updates,
    execute_batch_updates,
    from_document,
)


@pytest.fixture
def store():
    return InMemoryDocumentStore(max_attempts=5, batch_limit=500)


def test_snapshots_are_copies(store):
    ref = store.document("students", "s1")
    store.create(ref, {"full_name": "Ann", "skills": ["python"]})

    snapshot = store.get(ref)
    snapshot.data["skills"].append("rust")

    assert store.get(ref).data["skills"] == ["python"]


def test_missing_document_snapshot(store):
    snapshot = store.get(store.document("students", "nobody"))
    assert not snapshot.exists
    assert snapshot.id == "nobody"


def test_create_existing_and_update_missing_fail(store):
    ref = store.document("students", "s1")
    store.create(ref, {"full_name": "Ann"})

    with pytest.raises(StoreError):
        store.create(ref, {"full_name": "Ann again"})
    with pytest.raises(StoreError):
        store.update(store.document("students", "s2"), {"full_name": "Bob"})


def test_set_replaces_the_whole_document(store):
    ref = store.document("students", "s1")
    store.set(ref, {"full_name": "Ann", "department": "CS"})
    store.set(ref, {"full_name": "Ann Lee"})
    assert store.get(ref).data == {"full_name": "Ann Lee"}


def test_generated_ids_are_unique(store):
    ids = {store.document("students").id for _ in range(100)}
    assert len(ids) == 100


def test_enums_are_stored_by_value(store):
    ref = store.document("requests", "r1")
    store.create(ref, {"status": RequestStatus.PENDING})
    store.update(ref, {"status": RequestStatus.CANCELLED})
    assert store.get(ref).data["status"] == "cancelled"


def test_query_filters(store):
    for i, status in enumerate(["pending", "approved", "rejected", "pending"]):
        store.create(store.document("applications", f"a{i}"), {
            "status": status,
            "score": i,
            "tags": ["ml"] if i % 2 else [],
        })

    def ids(*filters, limit=None):
        return sorted(s.id for s in store.query("applications", filters, limit=limit))

    assert ids(FieldFilter("status", "==", "pending")) == ["a0", "a3"]
    assert ids(FieldFilter("status", "in", [ApplicationStatus.PENDING, ApplicationStatus.APPROVED])) == [
        "a0", "a1", "a3",
    ]
    assert ids(FieldFilter("status", "not-in", ["pending"])) == ["a1", "a2"]
    assert ids(FieldFilter("score", ">=", 2)) == ["a2", "a3"]
    assert ids(FieldFilter("tags", "array-contains", "ml")) == ["a1", "a3"]
    assert ids(FieldFilter("status", "!=", "pending"), FieldFilter("score", "<", 2)) == ["a1"]
    assert len(ids(FieldFilter("status", "==", "pending"), limit=1)) == 1
    assert store.query("nothing-here") == []


def test_transaction_is_rerun_after_concurrent_write(store):
    ref = store.document("counters", "c")
    store.create(ref, {"n": 0})
    seen = []

    def txn(tx):
        value = tx.get(ref).data["n"]
        seen.append(value)
        if len(seen) == 1:
            store.update(ref, {"n": 10})
        tx.update(ref, {"n": value + 1})
        return value + 1

    assert store.run_transaction(txn) == 11
    assert seen == [0, 10]
    assert store.get(ref).data["n"] == 11


def test_transaction_gives_up_after_max_attempts():
    store = InMemoryDocumentStore(max_attempts=3)
    ref = store.document("counters", "c")
    store.create(ref, {"n": 0})
    attempts = []

    def txn(tx):
        value = tx.get(ref).data["n"]
        attempts.append(value)
        store.update(ref, {"n": value + 100})
        tx.update(ref, {"n": -1})

    with pytest.raises(TransactionConflictError):
        store.run_transaction(txn)
    assert len(attempts) == 3
    assert store.get(ref).data["n"] == 300


def test_transaction_conflicts_when_a_missing_document_is_created(store):
    ref = store.document("students", "late")
    calls = []

    def txn(tx):
        exists = tx.get(ref).exists
        calls.append(exists)
        if len(calls) == 1:
            store.create(ref, {"full_name": "Late"})
        if not exists:
            tx.create(ref, {"full_name": "Mine"})

    store.run_transaction(txn)
    assert calls == [False, True]
    assert store.get(ref).data["full_name"] == "Late"


def test_reads_after_writes_are_rejected(store):
    a = store.document("students", "a")
    b = store.document("students", "b")
    store.create(a, {"n": 1})
    store.create(b, {"n": 2})

    def txn(tx):
        tx.get(a)
        tx.update(a, {"n": 5})
        tx.get(b)

    with pytest.raises(StoreError, match="reads"):
        store.run_transaction(txn)
    assert store.get(a).data["n"] == 1


def test_exception_in_transaction_discards_writes(store):
    ref = store.document("students", "a")
    store.create(ref, {"n": 1})

    def txn(tx):
        tx.get(ref)
        tx.update(ref, {"n": 2})
        tx.create(store.document("students", "b"), {"n": 3})
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.run_transaction(txn)
    assert store.get(ref).data["n"] == 1
    assert not store.get(store.document("students", "b")).exists


def test_batch_is_capped_and_single_use():
    store = InMemoryDocumentStore(batch_limit=3)
    refs = [store.document("docs", str(i)) for i in range(4)]
    for ref in refs:
        store.create(ref, {"v": 0})

    batch = store.batch()
    for ref in refs[:3]:
        batch.update(ref, {"v": 1})
    with pytest.raises(StoreError):
        batch.update(refs[3], {"v": 1})

    assert batch.commit() == 3
    assert [store.get(r).data["v"] for r in refs] == [1, 1, 1, 0]
    with pytest.raises(StoreError):
        batch.commit()


def test_batch_commit_is_atomic(store):
    present = store.document("docs", "present")
    store.create(present, {"v": 0})

    batch = store.batch()
    batch.update(present, {"v": 1})
    batch.update(store.document("docs", "missing"), {"v": 1})
    with pytest.raises(StoreError):
        batch.commit()
    assert store.get(present).data["v"] == 0


def test_execute_batch_updates_chunks_large_updates(store, monkeypatch):
    refs = [store.document("docs", str(i)) for i in range(1201)]
    for ref in refs:
        store.create(ref, {"flag": False})

    batch_sizes = []
    make_batch = store.batch

    def counting_batch():
        batch = make_batch()
        original_commit = batch.commit

        def commit():
            batch_sizes.append(len(batch))
            return original_commit()

        batch.commit = commit
        return batch

    monkeypatch.setattr(store, "batch", counting_batch)

    assert execute_batch_updates(store, refs, {"flag": True}, "flag everything") == 1201
    assert batch_sizes == [500, 500, 201]
    assert all(s.data["flag"] for s in store.query("docs"))


def test_commit_batch_updates_clamps_oversized_chunks(store):
    updates = [(store.document("docs", str(i)), {"n": i}) for i in range(501)]
    for ref, _ in updates:
        store.create(ref, {"n": -1})

    assert commit_batch_updates(store, updates, "renumber", chunk_size=1000) == 501
    assert sorted(s.data["n"] for s in store.query("docs")) == list(range(501))


def test_from_document_coerces_enums_and_ignores_unknown_fields():
    student = from_document(Student, "s1", {
        "full_name": "Ann",
        "partnership_status": "pending_sent",
        "legacy_field": "ignored",
    })
    assert student.id == "s1"
    assert student.partnership_status.value == "pending_sent"
    assert student.partner_id is None
