import threading
from collections import Counter

import pytest
from fastapi import HTTPException
from sqlalchemy.orm import sessionmaker

from slotbook.database import Base, build_engine
from slotbook.domain.scheduling.matching import MatchingEngine
from slotbook.domain.scheduling.policies import Actor
from slotbook.domain.scheduling.repository import RequestRepository
from slotbook.domain.scheduling.schemas import (
    AlternativeRequest,
    AvailabilityCreate,
    SlotCancel,
    SlotRequestCreate,
)
from slotbook.domain.scheduling.waitlist import BucketKey, WaitlistQueue
from slotbook.models import (
    REQUEST_PENDING,
    ROLE_ADMIN,
    ROLE_PROVIDER,
    ROLE_REQUESTER,
    Slot,
    StudentRequest,
    User,
)

THREADS = 8


@pytest.fixture
def shared_db(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def seeded(shared_db, dispatcher, now):
    db = shared_db()
    provider = User(full_name="Dr. Xavier", email="x@example.com", role=ROLE_PROVIDER)
    requesters = [
        User(full_name=f"Requester {i}", email=f"r{i}@example.com", role=ROLE_REQUESTER)
        for i in range(THREADS)
    ]
    db.add_all([provider, *requesters])
    db.commit()

    slot = MatchingEngine(db, dispatcher=dispatcher, clock=lambda: now).mark_available(
        AvailabilityCreate(date="2024-05-08", start_time="09:00", end_time="10:00"),
        Actor.from_user(provider),
    ).slot
    actors = [Actor.from_user(r) for r in requesters]
    provider_id, slot_id = provider.id, slot.id
    db.close()
    return provider_id, slot_id, actors


def run_concurrently(shared_db, dispatcher, now, actors, call):
    barrier = threading.Barrier(len(actors))
    outcomes = []
    guard = threading.Lock()

    def worker(actor):
        db = shared_db()
        engine = MatchingEngine(db, dispatcher=dispatcher, clock=lambda: now)
        barrier.wait()
        try:
            outcome = call(engine, actor)
        except HTTPException as e:
            outcome = e.status_code
        finally:
            db.close()
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(actor,)) for actor in actors]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(30)
    return Counter(outcomes)


def assert_single_booking(shared_db, slot_id):
    db = shared_db()
    try:
        slot = db.get(Slot, slot_id)
        assert slot.status == "booked"
        assigned = db.query(StudentRequest).filter_by(status="assigned").all()
        assert len(assigned) == 1
        assert assigned[0].requester_id == slot.requester_id
        assert assigned[0].assigned_slot_id == slot.id
    finally:
        db.close()


def test_simultaneous_exact_requests_book_once(shared_db, dispatcher, now, seeded):
    provider_id, slot_id, actors = seeded
    data = SlotRequestCreate(
        specific_date="2024-05-08", specific_time="09:00", preferred_provider_id=provider_id
    )

    outcomes = run_concurrently(
        shared_db,
        dispatcher,
        now,
        actors,
        lambda engine, actor: engine.request_slot(data, actor).match_status,
    )

    assert outcomes["matched"] == 1
    assert outcomes["matched"] + outcomes["rejected"] + outcomes[409] == THREADS
    assert_single_booking(shared_db, slot_id)


def test_simultaneous_alternative_requests_book_once(shared_db, dispatcher, now, seeded):
    _, slot_id, actors = seeded

    outcomes = run_concurrently(
        shared_db,
        dispatcher,
        now,
        actors,
        lambda engine, actor: engine.request_alternative(
            AlternativeRequest(option="auto"), actor
        ).match_status,
    )

    assert outcomes["matched"] == 1
    assert outcomes["no_match"] == THREADS - 1
    assert_single_booking(shared_db, slot_id)


@pytest.fixture
def reassignable(shared_db, dispatcher, now):
    """A past slot booked by Alice with Bob then Carol waiting in its bucket"""
    db = shared_db()
    provider = User(full_name="Dr. Xavier", email="x@example.com", role=ROLE_PROVIDER)
    admin = User(full_name="Alex Admin", email="admin@example.com", role=ROLE_ADMIN)
    alice, bob, carol = (
        User(full_name=name, email=f"{name.lower()}@example.com", role=ROLE_REQUESTER)
        for name in ("Alice", "Bob", "Carol")
    )
    db.add_all([provider, admin, alice, bob, carol])
    db.commit()

    engine = MatchingEngine(db, dispatcher=dispatcher, clock=lambda: now)
    engine.mark_available(
        AvailabilityCreate(date="2024-05-01", start_time="09:00", end_time="10:00"),
        Actor.from_user(provider),
    )
    slot = engine.request_slot(
        SlotRequestCreate(
            specific_date="2024-05-01", specific_time="09:00", preferred_provider_id=provider.id
        ),
        Actor.from_user(alice),
    ).slot

    queue = WaitlistQueue(db)
    for requester in (bob, carol):
        request = RequestRepository.create_request(
            db,
            requester_id=requester.id,
            requester_name=requester.full_name,
            preferred_days=[],
            preferred_times=["09:00"],
            preferred_provider_id=provider.id,
            status=REQUEST_PENDING,
        )
        queue.enqueue(request, BucketKey(provider.id, "2024-05-01", "09:00"))
        db.commit()

    actors = {"admin": Actor.from_user(admin), "alice": Actor.from_user(alice)}
    db.close()
    return slot.id, actors


def test_simultaneous_reassignments_claim_one_head(shared_db, dispatcher, now, reassignable):
    slot_id, actors = reassignable

    def cancel(engine, actor):
        data = SlotCancel(reassign=True) if actor.is_admin else SlotCancel()
        return engine.cancel_slot(slot_id, data, actor).status

    outcomes = run_concurrently(
        shared_db, dispatcher, now, [actors["alice"], actors["admin"]], cancel
    )

    # Whoever goes first hands the slot to Bob and clears Carol; the other
    # either releases Bob's booking or is refused
    assert outcomes["booked"] == 1
    assert set(outcomes) <= {"booked", "available", 400, 403, 409}

    db = shared_db()
    try:
        slot = db.get(Slot, slot_id)
        claimed = (
            db.query(StudentRequest)
            .filter(StudentRequest.assigned_slot_id == slot.id)
            .filter(StudentRequest.requester_name != "Alice")
            .all()
        )
        assert [r.requester_name for r in claimed] == ["Bob"]

        carol = db.query(StudentRequest).filter_by(requester_name="Carol").one()
        assert carol.status == "cancelled"
        assert carol.assigned_slot_id is None

        assigned = db.query(StudentRequest).filter_by(status="assigned").all()
        if slot.status == "booked":
            assert slot.requester_name == "Bob"
            assert [r.id for r in assigned] == [claimed[0].id]
        else:
            assert slot.status == "available"
            assert slot.requester_id is None
            assert assigned == []
    finally:
        db.close()


def test_completion_rechecks_ownership_once_locked(
    shared_db, dispatcher, now, reassignable, monkeypatch
):
    slot_id, actors = reassignable
    db, other = shared_db(), shared_db()
    engine = MatchingEngine(db, dispatcher=dispatcher, clock=lambda: now)
    canceller = MatchingEngine(other, dispatcher=dispatcher, clock=lambda: now)
    read_slot = engine._get_slot
    reassigned = []

    def read_then_lose_the_slot(slot_id):
        slot = read_slot(slot_id)
        if not reassigned:
            # Alice's own cancel lands between the unlocked read and the lock
            reassigned.append(canceller.cancel_slot(slot_id, SlotCancel(), actors["alice"]))
        return slot

    monkeypatch.setattr(engine, "_get_slot", read_then_lose_the_slot)
    try:
        with pytest.raises(HTTPException) as exc:
            engine.complete_slot(slot_id, actors["alice"])
        assert exc.value.status_code == 403
        assert reassigned[0].requester_name == "Bob"
    finally:
        db.close()
        other.close()

    check = shared_db()
    try:
        slot = check.get(Slot, slot_id)
        assert slot.status == "booked"
        assert slot.requester_name == "Bob"
    finally:
        check.close()
