import pytest
from fastapi import HTTPException

from slotbook.domain.scheduling.schemas import (
    AvailabilityCreate,
    RemovalReceipt,
    SlotCancel,
    SlotRequestCreate,
)
from slotbook.models import Slot, StudentRequest

DATE = "2024-05-01"
TIME = "09:00"


@pytest.fixture
def open_slot(engine, actors):
    data = AvailabilityCreate(date=DATE, start_time=TIME, end_time="10:00")
    return engine.mark_available(data, actors["provider"]).slot


@pytest.fixture
def booked_slot(engine, actors, users, open_slot):
    result = engine.request_slot(
        SlotRequestCreate(
            specific_date=DATE, specific_time=TIME, preferred_provider_id=users["provider"].id
        ),
        actors["alice"],
    )
    assert result.match_status == "matched"
    return result.slot


@pytest.fixture
def queue_for_provider(waitlist, users):
    def add(*names):
        return [waitlist(users[name], users["provider"].id, DATE, TIME) for name in names]

    return add


def request_status(db, request):
    return db.get(StudentRequest, request.id).status


# ----------------------------------------------------------------------
# Booked slots
# ----------------------------------------------------------------------


def test_requester_cancel_reassigns_to_waitlist_head(
    engine, actors, users, db, dispatcher, booked_slot, queue_for_provider
):
    bob_request, carol_request = queue_for_provider("bob", "carol")
    dispatcher.clear()

    result = engine.cancel_slot(booked_slot.id, SlotCancel(reason="Sick"), actors["alice"])

    assert result.status == "booked"
    assert result.requester_id == users["bob"].id
    assert result.requester_name == "Bob"
    assert "Reason: Sick" in result.notes

    bob = db.get(StudentRequest, bob_request.id)
    assert bob.status == "assigned"
    assert bob.assigned_slot_id == booked_slot.id
    assert request_status(db, carol_request) == "cancelled"

    alice_requests = db.query(StudentRequest).filter_by(requester_id=users["alice"].id).all()
    assert [r.status for r in alice_requests] == ["cancelled"]

    assert dispatcher.types_for(users["bob"].id) == ["waitlist_matched"]
    assert dispatcher.types_for(users["carol"].id) == ["slot_unavailable"]
    assert dispatcher.types_for(users["alice"].id) == ["appointment_cancelled"]
    assert dispatcher.types_for(users["provider"].id) == ["appointment_cancelled"]


def test_requester_cancel_reassigns_even_without_reassign_flag(
    engine, actors, users, booked_slot, queue_for_provider
):
    queue_for_provider("bob")

    result = engine.cancel_slot(booked_slot.id, SlotCancel(reassign=False), actors["alice"])

    assert result.status == "booked"
    assert result.requester_id == users["bob"].id


def test_provider_cancel_defaults_to_reassignment(
    engine, actors, users, booked_slot, queue_for_provider
):
    queue_for_provider("bob")

    result = engine.cancel_slot(booked_slot.id, SlotCancel(), actors["provider"])

    assert result.status == "booked"
    assert result.requester_id == users["bob"].id


def test_provider_cancel_without_reassign_releases_and_clears_waitlist(
    engine, actors, users, db, dispatcher, booked_slot, queue_for_provider
):
    bob_request, carol_request = queue_for_provider("bob", "carol")
    dispatcher.clear()

    result = engine.cancel_slot(
        booked_slot.id, SlotCancel(reason="Conference", reassign=False), actors["provider"]
    )

    assert result.status == "available"
    assert result.requester_id is None
    assert result.requester_name is None
    assert result.notes == "Conference"
    assert request_status(db, bob_request) == "cancelled"
    assert request_status(db, carol_request) == "cancelled"
    assert dispatcher.types_for(users["bob"].id) == ["slot_unavailable"]
    assert dispatcher.types_for(users["alice"].id) == ["appointment_cancelled"]


def test_cancel_with_empty_waitlist_releases(engine, actors, users, db, dispatcher, booked_slot):
    dispatcher.clear()

    result = engine.cancel_slot(booked_slot.id, SlotCancel(reassign=True), actors["admin"])

    assert result.status == "available"
    assert result.requester_id is None
    assert db.query(StudentRequest).filter_by(status="assigned").count() == 0
    assert dispatcher.types_for(users["alice"].id) == ["appointment_cancelled"]
    assert dispatcher.types_for(users["provider"].id) == ["appointment_cancelled"]

    # The released slot can be booked again
    again = engine.request_slot(
        SlotRequestCreate(
            specific_date=DATE, specific_time=TIME, preferred_provider_id=users["provider"].id
        ),
        actors["bob"],
    )
    assert again.match_status == "matched"


def test_requester_cancel_falls_back_to_any_provider_bucket(
    engine, actors, users, waitlist, booked_slot
):
    waitlist(users["dave"], None, DATE, TIME)

    result = engine.cancel_slot(booked_slot.id, SlotCancel(), actors["alice"])

    assert result.status == "booked"
    assert result.requester_id == users["dave"].id


def test_cancel_message_depends_on_who_cancelled(engine, actors, users, dispatcher, booked_slot):
    dispatcher.clear()
    engine.cancel_slot(booked_slot.id, SlotCancel(), actors["provider"])

    messages = {uid: event.message for uid, event in dispatcher.sent}
    assert "Your provider (Dr. Xavier) has cancelled" in messages[users["alice"].id]
    assert messages[users["provider"].id].startswith("You have cancelled the appointment with Alice")


# ----------------------------------------------------------------------
# Available slots
# ----------------------------------------------------------------------


def test_provider_removes_available_slot(engine, actors, users, db, dispatcher, open_slot):
    result = engine.cancel_slot(open_slot.id, SlotCancel(reason="Holiday"), actors["provider"])

    assert isinstance(result, RemovalReceipt)
    assert result.status == "removed"
    assert result.id == open_slot.id
    assert db.get(Slot, open_slot.id) is None
    assert dispatcher.types_for(users["provider"].id) == ["availability_cancelled"]


def test_admin_soft_cancels_available_slot(engine, actors, db, open_slot):
    result = engine.cancel_slot(open_slot.id, SlotCancel(), actors["admin"])

    assert result.status == "cancelled"
    assert db.get(Slot, open_slot.id).status == "cancelled"


def test_explicit_reassign_keeps_waitlist_when_slot_removed(
    engine, actors, users, db, dispatcher, open_slot, queue_for_provider
):
    (bob_request,) = queue_for_provider("bob")
    dispatcher.clear()

    engine.cancel_slot(open_slot.id, SlotCancel(reassign=True), actors["provider"])

    assert request_status(db, bob_request) == "waiting"
    assert dispatcher.types_for(users["bob"].id) == ["slot_reassignment_pending"]


def test_removal_without_reassign_clears_waitlist(
    engine, actors, users, db, dispatcher, open_slot, queue_for_provider
):
    (bob_request,) = queue_for_provider("bob")
    dispatcher.clear()

    engine.cancel_slot(open_slot.id, SlotCancel(), actors["provider"])

    assert request_status(db, bob_request) == "cancelled"
    assert dispatcher.types_for(users["bob"].id) == ["slot_unavailable"]


# ----------------------------------------------------------------------
# Rejections
# ----------------------------------------------------------------------


def test_cannot_cancel_terminal_slot(engine, actors, open_slot):
    engine.cancel_slot(open_slot.id, SlotCancel(), actors["admin"])

    with pytest.raises(HTTPException) as exc:
        engine.cancel_slot(open_slot.id, SlotCancel(), actors["admin"])
    assert exc.value.status_code == 400


def test_unrelated_users_cannot_cancel(engine, actors, booked_slot):
    for name in ("bob", "provider2"):
        with pytest.raises(HTTPException) as exc:
            engine.cancel_slot(booked_slot.id, SlotCancel(), actors[name])
        assert exc.value.status_code == 403


def test_cancel_unknown_slot(engine, actors):
    with pytest.raises(HTTPException) as exc:
        engine.cancel_slot(404, SlotCancel(), actors["admin"])
    assert exc.value.status_code == 404
