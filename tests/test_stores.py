import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from portal_stores import InMemoryStore
from portal_system import (
    CapacityExceeded,
    DuplicateKeyError,
    Event,
    EventNotFound,
    Registration,
    StoreUnavailableError,
)

NOW = datetime(2025, 9, 1, 9, 0, tzinfo=timezone.utc)


def event(**kwargs):
    fields = {
        "id": None,
        "title": "Seminar on Compilers",
        "event_type": "seminar",
        "event_date": NOW + timedelta(days=3),
        "registration_deadline": NOW + timedelta(days=1),
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(kwargs)
    return Event(**fields)


def registration(event_id, roll="21CSE001", email="alice@example.com", created_at=NOW):
    return Registration(
        id=None,
        event_id=event_id,
        student_name="Alice",
        student_email=email,
        student_roll_number=roll,
        created_at=created_at,
    )


def allow_all(ev, count):
    assert ev is not None


def at_most(limit):
    def check(ev, count):
        if count >= limit:
            raise CapacityExceeded()
    return check


def exercise_store(store):
    """Behaviour every BaseStore implementation shares."""
    ev = store.add_event(event())
    other = store.add_event(event(title="Another Seminar"))
    assert other.id > ev.id
    assert store.get_event(ev.id).title == "Seminar on Compilers"
    assert store.get_event(10_000) is None

    first = store.admit_registration(registration(ev.id), allow_all)
    assert first.id is not None
    with pytest.raises(DuplicateKeyError):
        store.admit_registration(registration(ev.id, email="other@example.com"), allow_all)

    # Rule rejections write nothing
    with pytest.raises(CapacityExceeded):
        store.admit_registration(registration(ev.id, roll="21CSE002"), at_most(1))
    assert store.count_registrations(ev.id) == 1

    later = store.admit_registration(registration(ev.id, roll="21CSE003", created_at=NOW + timedelta(minutes=5)), allow_all)
    store.admit_registration(registration(other.id), allow_all)
    assert [r.id for r in store.list_registrations(ev.id)] == [first.id, later.id]
    assert store.registration_counts() == {ev.id: 2, other.id: 1}

    closed = store.set_registration_open(ev.id, False, NOW + timedelta(hours=1))
    assert closed.registration_open is False
    assert store.get_event(ev.id).updated_at == NOW + timedelta(hours=1)

    renamed = store.replace_event(event(id=ev.id, title="Seminar on Parsers"))
    assert renamed.title == "Seminar on Parsers"
    assert store.replace_event(event(id=10_000)) is None

    assert store.delete_registration(later.id) is True
    assert store.delete_registration(later.id) is False

    assert store.delete_event(ev.id) == 1
    assert store.delete_event(ev.id) is None
    assert store.list_registrations(ev.id) == []
    assert store.count_registrations(other.id) == 1
    assert store.ping() is True


def must_exist_with_capacity(limit):
    def check(ev, count):
        if ev is None:
            raise EventNotFound()
        if count >= limit:
            raise CapacityExceeded()
    return check


def admit_all_at_once(store, event_id, rolls, check, alongside=None):
    """Admit one registration per roll number from parallel threads and collect outcome names."""
    barrier = threading.Barrier(len(rolls) + (1 if alongside else 0))

    def admit(roll):
        barrier.wait()
        try:
            store.admit_registration(registration(event_id, roll=roll, email=f"{roll.lower()}@example.com"), check)
            return "ok"
        except (CapacityExceeded, EventNotFound, DuplicateKeyError) as e:
            return type(e).__name__

    def run_alongside():
        barrier.wait()
        alongside()

    with ThreadPoolExecutor(max_workers=len(rolls) + 1) as pool:
        side = pool.submit(run_alongside) if alongside else None
        outcomes = list(pool.map(admit, rolls))
        if side is not None:
            side.result()
    return outcomes


def exercise_concurrency(store):
    """Concurrent admissions never oversell, and a cascade never leaves orphans."""
    ev = store.add_event(event(title="Packed Workshop"))
    outcomes = admit_all_at_once(store, ev.id, [f"21CSE1{i:02d}" for i in range(10)], must_exist_with_capacity(3))
    assert outcomes.count("ok") == 3
    assert outcomes.count("CapacityExceeded") == 7
    assert store.count_registrations(ev.id) == 3

    # No admission has touched this event yet when the delete races them
    doomed = store.add_event(event(title="Cancelled Talk"))
    outcomes = admit_all_at_once(
        store,
        doomed.id,
        [f"21CSE2{i:02d}" for i in range(6)],
        must_exist_with_capacity(100),
        alongside=lambda: store.delete_event(doomed.id),
    )
    assert set(outcomes) <= {"ok", "EventNotFound"}
    assert store.get_event(doomed.id) is None
    assert store.count_registrations(doomed.id) == 0
    assert store.list_registrations(doomed.id) == []


def test_in_memory_store_contract():
    exercise_store(InMemoryStore())


def test_in_memory_store_concurrency():
    exercise_concurrency(InMemoryStore())


def test_in_memory_store_returns_copies():
    store = InMemoryStore()
    ev = store.add_event(event())
    ev.title = "Tampered"
    assert store.get_event(ev.id).title == "Seminar on Compilers"


def test_in_memory_store_frees_key_after_delete():
    store = InMemoryStore()
    ev = store.add_event(event())
    reg = store.admit_registration(registration(ev.id), allow_all)
    store.delete_registration(reg.id)
    assert store.admit_registration(registration(ev.id), allow_all).id != reg.id


def test_in_memory_store_rejects_unknown_duplicate_key():
    with pytest.raises(ValueError):
        InMemoryStore(duplicate_key="phone")


def test_in_memory_store_lock_timeout():
    store = InMemoryStore(timeout=0.01)
    store._lock.acquire()
    try:
        # RLock is re-entrant for the owner, so wait from another thread
        errors = []

        def attempt():
            try:
                store.ping()
            except StoreUnavailableError as e:
                errors.append(e)

        t = threading.Thread(target=attempt)
        t.start()
        t.join()
        assert len(errors) == 1
    finally:
        store._lock.release()


@pytest.mark.skipif(not os.getenv("MONGODB_URI"), reason="MONGODB_URI not set (replica set required)")
def test_mongo_store_contract():
    from portal_stores import MongoStore

    prefix = f"test_{uuid.uuid4().hex[:8]}_"
    store = MongoStore(uri=os.environ["MONGODB_URI"], db_name=os.getenv("DB_NAME", "event_portal_test"), collection_prefix=prefix)
    try:
        exercise_store(store)
        exercise_concurrency(store)
    finally:
        for name in store.db.list_collection_names():
            if name.startswith(prefix):
                store.db.drop_collection(name)
