"""Scheduling repository - Database operations for slots and requests

Unlike the other repositories these methods only flush: the matching engine
owns the transaction and commits each operation as a single unit.
"""

from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...models import (
    REQUEST_ASSIGNED,
    SLOT_AVAILABLE,
    SLOT_CANCELLED,
    Slot,
    StudentRequest,
    User,
    utcnow,
)


class SlotRepository:
    """Repository for slot database operations"""

    @staticmethod
    def get_slot(db: Session, slot_id: int) -> Optional[Slot]:
        """Get a slot by ID"""
        return db.query(Slot).filter(Slot.id == slot_id).first()

    @staticmethod
    def find_slot(db: Session, provider_id: int, date: str, start_time: str) -> Optional[Slot]:
        """Get the live (non-cancelled) slot at an exact provider/date/time"""
        return (
            db.query(Slot)
            .filter(
                Slot.provider_id == provider_id,
                Slot.date == date,
                Slot.start_time == start_time,
                Slot.status != SLOT_CANCELLED,
            )
            .order_by(Slot.created_at.asc(), Slot.id.asc())
            .first()
        )

    @staticmethod
    def find_available_slots(
        db: Session, date: str, start_time: str, provider_id: Optional[int] = None
    ) -> list[Slot]:
        """Available slots at a date/time, oldest first, optionally for one provider"""
        query = db.query(Slot).filter(
            Slot.date == date,
            Slot.start_time == start_time,
            Slot.status == SLOT_AVAILABLE,
        )
        if provider_id is not None:
            query = query.filter(Slot.provider_id == provider_id)
        return query.order_by(Slot.created_at.asc(), Slot.id.asc()).all()

    @staticmethod
    def find_earliest_available(
        db: Session, from_date: str, provider_id: Optional[int] = None
    ) -> list[Slot]:
        """Available slots on or after a date, in calendar order"""
        query = db.query(Slot).filter(
            Slot.status == SLOT_AVAILABLE,
            Slot.requester_id.is_(None),
            Slot.date >= from_date,
        )
        if provider_id is not None:
            query = query.filter(Slot.provider_id == provider_id)
        return query.order_by(Slot.date.asc(), Slot.start_time.asc(), Slot.id.asc()).all()

    @staticmethod
    def list_provider_day(db: Session, provider_id: int, date: str) -> list[Slot]:
        """Non-cancelled slots of a provider on one date (for overlap checks)"""
        return (
            db.query(Slot)
            .filter(
                Slot.provider_id == provider_id,
                Slot.date == date,
                Slot.status != SLOT_CANCELLED,
            )
            .order_by(Slot.start_time.asc())
            .all()
        )

    @staticmethod
    def list_slots(
        db: Session,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        provider_id: Optional[int] = None,
        requester_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> list[Slot]:
        """Sorted range query with optional filters"""
        query = db.query(Slot)

        if start_date:
            query = query.filter(Slot.date >= start_date)
        if end_date:
            query = query.filter(Slot.date <= end_date)
        if provider_id is not None:
            query = query.filter(Slot.provider_id == provider_id)
        if requester_id is not None:
            query = query.filter(Slot.requester_id == requester_id)
        if status:
            query = query.filter(Slot.status == status)

        return query.order_by(Slot.date.asc(), Slot.start_time.asc(), Slot.id.asc()).all()

    @staticmethod
    def create_slot(db: Session, **slot_data) -> Slot:
        """Stage a new slot and flush so it gets an ID"""
        slot = Slot(**slot_data)
        db.add(slot)
        db.flush()
        return slot

    @staticmethod
    def compare_and_update(db: Session, slot: Slot, expected_status: str, **updates) -> bool:
        """
        Atomically apply updates if the slot is still in expected_status at the
        version this session read. Returns False when another writer got there first.
        """
        updates["version"] = Slot.version + 1
        updates["updated_at"] = utcnow()
        matched = (
            db.query(Slot)
            .filter(
                Slot.id == slot.id,
                Slot.status == expected_status,
                Slot.version == slot.version,
            )
            .update(updates, synchronize_session=False)
        )
        if matched:
            db.refresh(slot)
        else:
            db.expire(slot)
        return matched == 1

    @staticmethod
    def delete_slot(db: Session, slot: Slot) -> bool:
        """Hard-delete a slot if nobody changed it since it was read"""
        deleted = (
            db.query(Slot)
            .filter(Slot.id == slot.id, Slot.status == slot.status, Slot.version == slot.version)
            .delete(synchronize_session=False)
        )
        if deleted:
            db.expunge(slot)
        return deleted == 1


class RequestRepository:
    """Repository for student request database operations"""

    @staticmethod
    def get_request(db: Session, request_id: int) -> Optional[StudentRequest]:
        return db.query(StudentRequest).filter(StudentRequest.id == request_id).first()

    @staticmethod
    def create_request(db: Session, **request_data) -> StudentRequest:
        """Stage a new request and flush so it gets an ID"""
        request = StudentRequest(**request_data)
        db.add(request)
        db.flush()
        return request

    @staticmethod
    def list_requests(
        db: Session,
        requester_id: Optional[int] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[StudentRequest]:
        query = db.query(StudentRequest)
        if requester_id is not None:
            query = query.filter(StudentRequest.requester_id == requester_id)
        if statuses:
            query = query.filter(StudentRequest.status.in_(list(statuses)))
        return query.order_by(StudentRequest.created_at.desc(), StudentRequest.id.desc()).all()

    @staticmethod
    def list_assigned_to_slot(db: Session, slot_id: int) -> list[StudentRequest]:
        return (
            db.query(StudentRequest)
            .filter(
                StudentRequest.assigned_slot_id == slot_id,
                StudentRequest.status == REQUEST_ASSIGNED,
            )
            .all()
        )

    @staticmethod
    def transition(
        db: Session, request: StudentRequest, expected_statuses: Iterable[str], **updates
    ) -> bool:
        """Compare-and-update on the request status"""
        updates["updated_at"] = utcnow()
        matched = (
            db.query(StudentRequest)
            .filter(
                StudentRequest.id == request.id,
                StudentRequest.status.in_(list(expected_statuses)),
            )
            .update(updates, synchronize_session=False)
        )
        if matched:
            db.refresh(request)
        else:
            db.expire(request)
        return matched == 1


class UserRepository:
    """Lookups for the user collaborator"""

    @staticmethod
    def get_user(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()
