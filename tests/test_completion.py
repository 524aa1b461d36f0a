import pytest
from fastapi import HTTPException

from slotbook.domain.scheduling.schemas import AvailabilityCreate, SlotRequestCreate


def book(engine, actors, users, date, time="09:00"):
    end = f"{int(time[:2]) + 1:02d}:{time[3:]}"
    engine.mark_available(
        AvailabilityCreate(date=date, start_time=time, end_time=end), actors["provider"]
    )
    result = engine.request_slot(
        SlotRequestCreate(
            specific_date=date, specific_time=time, preferred_provider_id=users["provider"].id
        ),
        actors["alice"],
    )
    return result.slot


def test_provider_completes_past_slot(engine, actors, users, dispatcher):
    slot = book(engine, actors, users, "2024-05-01")
    dispatcher.clear()

    result = engine.complete_slot(slot.id, actors["provider"])

    assert result.status == "completed"
    assert dispatcher.types_for(users["alice"].id) == ["appointment_completed"]
    assert dispatcher.types_for(users["provider"].id) == []
    assert "Please provide feedback" in dispatcher.sent[0][1].message


def test_requester_completion_notifies_provider(engine, actors, users, dispatcher):
    slot = book(engine, actors, users, "2024-05-01")
    dispatcher.clear()

    engine.complete_slot(slot.id, actors["alice"])

    assert dispatcher.types_for(users["alice"].id) == ["appointment_completed"]
    assert dispatcher.types_for(users["provider"].id) == ["appointment_completed"]


def test_admin_completion_notifies_both(engine, actors, users, dispatcher):
    slot = book(engine, actors, users, "2024-05-01")
    dispatcher.clear()

    engine.complete_slot(slot.id, actors["admin"])

    assert len(dispatcher.sent) == 2


def test_completing_twice_does_not_renotify(engine, actors, users, dispatcher):
    slot = book(engine, actors, users, "2024-05-01")
    engine.complete_slot(slot.id, actors["provider"])
    dispatcher.clear()

    with pytest.raises(HTTPException) as exc:
        engine.complete_slot(slot.id, actors["provider"])

    assert exc.value.status_code == 409
    assert dispatcher.sent == []


def test_future_slot_cannot_be_completed(engine, actors, users, dispatcher):
    # Starts an hour after the fixed clock
    slot = book(engine, actors, users, "2024-05-06", time="09:00")
    dispatcher.clear()

    with pytest.raises(HTTPException) as exc:
        engine.complete_slot(slot.id, actors["provider"])

    assert exc.value.status_code == 400
    assert dispatcher.sent == []


def test_only_booked_slots_complete(engine, actors):
    slot = engine.mark_available(
        AvailabilityCreate(date="2024-05-01", start_time="09:00", end_time="10:00"),
        actors["provider"],
    ).slot

    with pytest.raises(HTTPException) as exc:
        engine.complete_slot(slot.id, actors["provider"])
    assert exc.value.status_code == 400


def test_unrelated_users_cannot_complete(engine, actors, users):
    slot = book(engine, actors, users, "2024-05-01")

    for name in ("bob", "provider2"):
        with pytest.raises(HTTPException) as exc:
            engine.complete_slot(slot.id, actors[name])
        assert exc.value.status_code == 403
