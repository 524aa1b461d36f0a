"""
Cancellation Coordinator

Decides what a cancelled slot turns into and who hears about it:

    booked + waiting bucket + reassignment allowed -> rebound to the bucket head
    booked otherwise                               -> released back to available
    available, cancelled by its provider            -> row deleted (removal receipt)
    available, cancelled by an admin                -> soft-cancelled for audit

Runs inside the engine's locked unit of work; it only flushes and queues events.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import (
    REQUEST_ASSIGNED,
    REQUEST_CANCELLED,
    SLOT_AVAILABLE,
    SLOT_BOOKED,
    SLOT_CANCELLED,
    SLOT_COMPLETED,
    Slot,
    StudentRequest,
)
from ...services.notification_service import (
    APPOINTMENT_CANCELLED,
    AVAILABILITY_CANCELLED,
    SLOT_REASSIGNMENT_PENDING,
    SLOT_UNAVAILABLE,
    WAITLIST_MATCHED,
    NotificationEvent,
    NotificationOutbox,
)
from .policies import Actor
from .repository import RequestRepository, SlotRepository
from .schemas import RemovalReceipt, SlotCancel
from .waitlist import BucketKey, WaitlistQueue

logger = logging.getLogger(__name__)


@dataclass
class CancellationOutcome:
    slot: Optional[Slot] = None
    receipt: Optional[RemovalReceipt] = None


def _with_reason(message: str, reason: Optional[str]) -> str:
    return f"{message} Reason: {reason}" if reason else message


class CancellationCoordinator:
    def __init__(self, db: Session, queue: WaitlistQueue):
        self.db = db
        self.queue = queue
        self.slots = SlotRepository()
        self.requests = RequestRepository()

    def cancel(
        self, slot: Slot, actor: Actor, data: SlotCancel, outbox: NotificationOutbox
    ) -> CancellationOutcome:
        if slot.status in (SLOT_COMPLETED, SLOT_CANCELLED):
            raise HTTPException(
                status_code=400, detail=f"Cannot cancel a slot that is already {slot.status}"
            )

        key = BucketKey(slot.provider_id, slot.date, slot.start_time)
        logger.info(
            f"📥 Cancelling slot {slot.id} ({slot.status}) by user {actor.id} "
            f"reassign={data.reassign}"
        )

        if slot.status == SLOT_BOOKED and slot.requester_id is not None:
            return self._cancel_booked(slot, actor, data, key, outbox)
        if slot.status == SLOT_AVAILABLE:
            return self._cancel_available(slot, actor, data, key, outbox)

        # Anything else (e.g. booked with no requester) just ends cancelled
        self._update(slot, slot.status, status=SLOT_CANCELLED, notes=data.reason or slot.notes)
        self._settle_waitlist(slot, key, data, outbox)
        return CancellationOutcome(slot=slot)

    # ------------------------------------------------------------------
    # Booked
    # ------------------------------------------------------------------

    def _cancel_booked(
        self,
        slot: Slot,
        actor: Actor,
        data: SlotCancel,
        key: BucketKey,
        outbox: NotificationOutbox,
    ) -> CancellationOutcome:
        displaced_id = slot.requester_id
        displaced_name = slot.requester_name
        cancelled_by_requester = displaced_id == actor.id and not actor.is_admin

        for request in self.requests.list_assigned_to_slot(self.db, slot.id):
            self.requests.transition(
                self.db, request, [REQUEST_ASSIGNED], status=REQUEST_CANCELLED
            )

        bucket_key, entries = self.queue.candidate_bucket(key)
        should_reassign = bool(entries) and (cancelled_by_requester or data.reassign is not False)

        head = None
        if should_reassign:
            head = entries[0]
            note = (
                f"Reassigned from {displaced_name} to {head.requester_name} after cancellation."
            )
            self._update(
                slot,
                SLOT_BOOKED,
                requester_id=head.requester_id,
                requester_name=head.requester_name,
                notes=_with_reason(note, data.reason),
            )
            self.queue.pop(entries, slot)
            passed_over = self.queue.clear(entries[1:])
            logger.info(
                f"✅ Slot {slot.id} reassigned from requester {displaced_id} to "
                f"{head.requester_id} (bucket {bucket_key.lock_key})"
            )
            self._queue_reassignment_events(outbox, slot, head, passed_over)
        else:
            self._update(
                slot,
                SLOT_BOOKED,
                status=SLOT_AVAILABLE,
                requester_id=None,
                requester_name=None,
                notes=data.reason or slot.notes,
            )
            logger.info(f"✅ Slot {slot.id} released back to available")
            self._settle_waitlist(slot, key, data, outbox)

        self._queue_participant_events(
            outbox,
            slot,
            actor,
            displaced_id,
            displaced_name,
            data.reason,
            cancelled_by_requester=cancelled_by_requester,
            reassigned=head is not None,
        )
        return CancellationOutcome(slot=slot)

    # ------------------------------------------------------------------
    # Available
    # ------------------------------------------------------------------

    def _cancel_available(
        self,
        slot: Slot,
        actor: Actor,
        data: SlotCancel,
        key: BucketKey,
        outbox: NotificationOutbox,
    ) -> CancellationOutcome:
        if actor.is_admin:
            self._update(slot, SLOT_AVAILABLE, status=SLOT_CANCELLED, notes=data.reason or slot.notes)
            logger.info(f"✅ Available slot {slot.id} soft-cancelled by admin {actor.id}")
            self._settle_waitlist(slot, key, data, outbox)
            return CancellationOutcome(slot=slot)

        receipt = RemovalReceipt(
            id=slot.id,
            date=slot.date,
            start_time=slot.start_time,
            message="Slot has been cancelled and removed from the system",
        )
        provider_id = slot.provider_id
        self._settle_waitlist(slot, key, data, outbox)
        if not self.slots.delete_slot(self.db, slot):
            raise HTTPException(status_code=409, detail="Slot changed while it was being removed")
        logger.info(f"🗑️ Available slot {receipt.id} removed by provider {provider_id}")

        outbox.add(
            provider_id,
            NotificationEvent(
                title="Availability Cancelled",
                message=_with_reason(
                    f"You have cancelled your availability on {receipt.date} at {receipt.start_time}.",
                    data.reason,
                ),
                type=AVAILABILITY_CANCELLED,
                related_id=str(receipt.id),
            ),
        )
        return CancellationOutcome(receipt=receipt)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _update(self, slot: Slot, expected_status: str, **updates) -> None:
        if not self.slots.compare_and_update(self.db, slot, expected_status, **updates):
            raise HTTPException(
                status_code=409, detail="Slot was modified by another request. Please retry."
            )

    def _settle_waitlist(
        self, slot: Slot, key: BucketKey, data: SlotCancel, outbox: NotificationOutbox
    ) -> None:
        """
        Waitlist treatment when nobody took the slot over. Only an explicit
        reassign=true keeps the provider's bucket alive.
        """
        entries = self.queue.bucket(key)
        if not entries:
            return

        if data.reassign is True:
            for entry in entries:
                outbox.add(
                    entry.requester_id,
                    NotificationEvent(
                        title="Slot Assignment Update",
                        message=(
                            f"The slot on {slot.date} at {slot.start_time} was cancelled, but your "
                            "request is still active. You will be automatically assigned if this "
                            "slot becomes available again."
                        ),
                        type=SLOT_REASSIGNMENT_PENDING,
                        related_id=str(entry.id),
                    ),
                )
            logger.info(f"🕒 Kept {len(entries)} waiting request(s) on {key.lock_key}")
            return

        for entry in self.queue.clear(entries):
            outbox.add(
                entry.requester_id,
                NotificationEvent(
                    title="Slot Unavailable",
                    message=_with_reason(
                        f"The slot you were waiting for on {slot.date} at {slot.start_time} with "
                        f"{slot.provider_name} is no longer available.",
                        data.reason,
                    ),
                    type=SLOT_UNAVAILABLE,
                    related_id=str(entry.id),
                ),
            )

    def _queue_reassignment_events(
        self,
        outbox: NotificationOutbox,
        slot: Slot,
        head: StudentRequest,
        passed_over: list[StudentRequest],
    ) -> None:
        outbox.add(
            head.requester_id,
            NotificationEvent(
                title="Appointment Assigned",
                message=(
                    f"Good news! A slot on {slot.date} at {slot.start_time} with "
                    f"{slot.provider_name} has become available and has been assigned to you."
                ),
                type=WAITLIST_MATCHED,
                related_id=str(slot.id),
            ),
        )
        for other in passed_over:
            outbox.add(
                other.requester_id,
                NotificationEvent(
                    title="Slot Update",
                    message=(
                        f"The slot you were waiting for on {slot.date} at {slot.start_time} with "
                        f"{slot.provider_name} has been assigned to another requester higher in "
                        "the waitlist."
                    ),
                    type=SLOT_UNAVAILABLE,
                    related_id=str(other.id),
                ),
            )

    def _queue_participant_events(
        self,
        outbox: NotificationOutbox,
        slot: Slot,
        actor: Actor,
        displaced_id: int,
        displaced_name: Optional[str],
        reason: Optional[str],
        cancelled_by_requester: bool,
        reassigned: bool,
    ) -> None:
        when = f"{slot.date} at {slot.start_time}"
        if cancelled_by_requester:
            requester_title = "You Cancelled Appointment"
            provider_title = "Requester Cancelled Appointment"
            requester_message = f"You have cancelled your appointment scheduled for {when}."
            follow_up = (
                "The slot has been automatically reassigned to a waitlisted requester."
                if reassigned
                else "The slot is now available again."
            )
            provider_message = (
                f"{displaced_name} has cancelled their appointment scheduled for {when}. {follow_up}"
            )
        elif actor.is_provider and actor.id == slot.provider_id:
            requester_title = provider_title = "Appointment Cancelled"
            requester_message = (
                f"Your provider ({slot.provider_name}) has cancelled your appointment scheduled "
                f"for {when}."
            )
            provider_message = f"You have cancelled the appointment with {displaced_name} scheduled for {when}."
        else:
            requester_title = provider_title = "Appointment Cancelled"
            requester_message = (
                f"Your appointment scheduled for {when} has been cancelled by an administrator."
            )
            provider_message = (
                f"The appointment with {displaced_name} scheduled for {when} has been cancelled "
                "by an administrator."
            )

        outbox.add(
            displaced_id,
            NotificationEvent(
                title=requester_title,
                message=_with_reason(requester_message, reason),
                type=APPOINTMENT_CANCELLED,
                related_id=str(slot.id),
            ),
        )
        outbox.add(
            slot.provider_id,
            NotificationEvent(
                title=provider_title,
                message=_with_reason(provider_message, reason),
                type=APPOINTMENT_CANCELLED,
                related_id=str(slot.id),
            ),
        )
