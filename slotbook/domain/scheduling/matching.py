"""
Matching Engine

The single write surface of the scheduling domain:
- mark_available: a provider publishes a slot; a waiting bucket head takes it at once
- request_slot: exact target, then preference list, then any-provider fallback
- cancel_slot: delegated to CancellationCoordinator (reassign vs release)
- complete_slot: close out a booked slot whose start has passed

Every operation holds the slot-key lock(s) it touches, commits exactly once,
and only then hands its queued notifications to the dispatcher.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Optional, Union

from fastapi import HTTPException
from sqlalchemy.orm import Session, sessionmaker

from ...locks import slot_lock
from ...models import (
    REQUEST_ASSIGNED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    REQUEST_WAITING,
    SLOT_AVAILABLE,
    SLOT_BOOKED,
    SLOT_COMPLETED,
    Slot,
    StudentRequest,
)
from ...services.notification_service import (
    APPOINTMENT_ASSIGNED,
    APPOINTMENT_COMPLETED,
    SLOT_UNAVAILABLE,
    WAITLIST_ADDED,
    DatabaseNotificationDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    NotificationOutbox,
)
from . import policies
from .cancellation import CancellationCoordinator
from .policies import Actor
from .repository import RequestRepository, SlotRepository, UserRepository
from .schemas import (
    AdminAssign,
    AdminAssignResult,
    AlternativeRequest,
    AssignedRequester,
    AvailabilityCreate,
    AvailabilityResult,
    MatchResult,
    RemovalReceipt,
    SlotCancel,
    SlotRequestCreate,
    SlotResponse,
    StudentRequestResponse,
)
from .timeutils import intervals_overlap, next_weekday_date, slot_start, weekday_label
from .waitlist import BucketKey, WaitlistQueue, provider_day_lock_key

logger = logging.getLogger(__name__)


class MatchingEngine:
    """Binds availability and requests to slots under FIFO and fallback rules"""

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.dispatcher = dispatcher or DatabaseNotificationDispatcher(
            sessionmaker(bind=db.get_bind(), autocommit=False, autoflush=False)
        )
        self.clock = clock
        self.slots = SlotRepository()
        self.requests = RequestRepository()
        self.users = UserRepository()
        self.queue = WaitlistQueue(db)
        self.cancellations = CancellationCoordinator(db, self.queue)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, outbox: NotificationOutbox):
        """Commit once on success; on any error roll back and drop queued events"""
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            outbox.discard()
            raise

    def _dispatch(self, outbox: NotificationOutbox) -> None:
        if not len(outbox):
            return
        result = outbox.flush(self.dispatcher)
        if result["failed"]:
            logger.warning(f"⚠️ {result['failed']} notification(s) failed after commit: {result}")

    # ------------------------------------------------------------------
    # MarkAvailable
    # ------------------------------------------------------------------

    def mark_available(self, data: AvailabilityCreate, actor: Actor) -> AvailabilityResult:
        """Publish availability; hand it straight to the head of a waiting bucket if any"""
        provider_id = data.provider_id if (actor.is_admin and data.provider_id) else actor.id
        if not policies.can_mark_available(actor, provider_id):
            raise HTTPException(
                status_code=403, detail="Only providers or administrators can mark availability"
            )
        provider_name = self._user_name(provider_id, actor, role_label="Provider")

        key = BucketKey(provider_id, data.date, data.start_time)
        outbox = NotificationOutbox()
        logger.info(f"📥 Marking availability {key.lock_key}-{data.end_time} by user {actor.id}")

        with slot_lock(
            provider_day_lock_key(provider_id, data.date), key.lock_key, key.any_provider().lock_key
        ):
            with self._transaction(outbox):
                self._check_overlap(provider_id, data.date, data.start_time, data.end_time)

                slot_data = {
                    "date": data.date,
                    "weekday": weekday_label(data.date),
                    "start_time": data.start_time,
                    "end_time": data.end_time,
                    "provider_id": provider_id,
                    "provider_name": provider_name,
                    "status": SLOT_AVAILABLE,
                    "notes": data.notes,
                    "is_recurring": bool(data.is_recurring and data.recurring_days),
                    "recurring_days": data.recurring_days if data.is_recurring else None,
                }

                bucket_key, entries = self.queue.candidate_bucket(key)
                head = None
                if entries:
                    head = entries[0]
                    slot_data.update(
                        status=SLOT_BOOKED,
                        requester_id=head.requester_id,
                        requester_name=head.requester_name,
                    )
                    slot = self.slots.create_slot(self.db, **slot_data)
                    self.queue.pop(entries, slot)
                    passed_over = self.queue.clear(entries[1:])
                    self._queue_auto_assignment_events(outbox, slot, head, passed_over)
                    logger.info(
                        f"✅ Slot {slot.id} created booked for waiting requester "
                        f"{head.requester_id} from bucket {bucket_key.lock_key}"
                    )
                else:
                    slot = self.slots.create_slot(self.db, **slot_data)
                    logger.info(f"✅ Slot {slot.id} created available")

        self._dispatch(outbox)

        if head is None:
            return AvailabilityResult(slot=SlotResponse.model_validate(slot))
        return AvailabilityResult(
            slot=SlotResponse.model_validate(slot),
            assigned_requester=AssignedRequester(id=head.requester_id, name=head.requester_name),
            message=(
                "This slot has been automatically assigned to a waiting requester: "
                f"{head.requester_name}"
            ),
        )

    def _check_overlap(
        self, provider_id: int, date: str, start_time: str, end_time: str
    ) -> None:
        for existing in self.slots.list_provider_day(self.db, provider_id, date):
            if intervals_overlap(start_time, end_time, existing.start_time, existing.end_time):
                logger.warning(
                    f"⚠️ Availability {date} {start_time}-{end_time} overlaps slot {existing.id}"
                )
                raise HTTPException(
                    status_code=409,
                    detail="This time slot overlaps with existing availability",
                )

    def _queue_auto_assignment_events(
        self,
        outbox: NotificationOutbox,
        slot: Slot,
        head: StudentRequest,
        passed_over: list[StudentRequest],
    ) -> None:
        outbox.add_many(
            [head.requester_id, slot.provider_id],
            NotificationEvent(
                title="Appointment Automatically Assigned",
                message=(
                    f"Based on the waiting list position, an appointment on {slot.date} at "
                    f"{slot.start_time} with {slot.provider_name} has been assigned to "
                    f"{head.requester_name}."
                ),
                type=APPOINTMENT_ASSIGNED,
                related_id=str(slot.id),
            ),
        )
        for other in passed_over:
            outbox.add(
                other.requester_id,
                NotificationEvent(
                    title="Appointment Not Available",
                    message=(
                        f"The slot you were waiting for on {slot.date} at {slot.start_time} with "
                        f"{slot.provider_name} has been assigned to another requester who was "
                        "ahead in the queue."
                    ),
                    type=SLOT_UNAVAILABLE,
                    related_id=str(other.id),
                ),
            )

    # ------------------------------------------------------------------
    # RequestSlot
    # ------------------------------------------------------------------

    def request_slot(self, data: SlotRequestCreate, actor: Actor) -> MatchResult:
        """Resolve a request: exact target, preference list, then any-provider fallback"""
        requester_id, requester_name = self._resolve_requester(data.requester_id, actor)
        logger.info(f"📥 Slot request from requester {requester_id} (by user {actor.id})")

        request_data = {
            "requester_id": requester_id,
            "requester_name": requester_name,
            "preferred_days": data.preferred_days,
            "preferred_times": data.preferred_times,
            "preferred_provider_id": data.preferred_provider_id,
            "requested_date": data.specific_date,
            "requested_time": data.specific_time,
            "waiting_for_provider": data.is_exact_target,
            "status": REQUEST_PENDING,
            "notes": data.notes,
        }

        if data.is_exact_target:
            return self._request_exact(data, request_data)
        return self._request_by_preference(data, request_data)

    def _request_exact(self, data: SlotRequestCreate, request_data: dict) -> MatchResult:
        key = BucketKey(data.preferred_provider_id, data.specific_date, data.specific_time)
        outbox = NotificationOutbox()
        slot = None

        with slot_lock(key.lock_key):
            with self._transaction(outbox):
                request = self.requests.create_request(self.db, **request_data)

                if key.is_any:
                    # No provider named: any provider's slot at that exact time will do
                    slot = self._book_first(
                        self.slots.find_available_slots(self.db, key.date, key.time), request
                    )
                    match_status = "matched" if slot else "waiting"
                else:
                    existing = self.slots.find_slot(self.db, key.provider_id, key.date, key.time)
                    if existing is None:
                        match_status = "waiting"
                    elif existing.status == SLOT_AVAILABLE and existing.requester_id is None:
                        slot = existing if self._book(existing, request) else None
                        match_status = "matched" if slot else "rejected"
                    else:
                        match_status = "rejected"

                if match_status == "waiting":
                    self.queue.enqueue(request, key)
                elif match_status == "rejected":
                    self.requests.transition(
                        self.db, request, [REQUEST_PENDING], status=REQUEST_REJECTED
                    )
                    logger.info(f"⛔ Request {request.id} rejected: {key.lock_key} already taken")
                else:
                    self._queue_match_events(outbox, slot, request, alternate=False)

        self._dispatch(outbox)
        return self._match_result(request, match_status, slot)

    def _request_by_preference(self, data: SlotRequestCreate, request_data: dict) -> MatchResult:
        today = self.clock().date()
        pairs = [
            (next_weekday_date(day, today), time)
            for day in data.preferred_days
            for time in data.preferred_times
        ]
        # Only the first pair is remembered as the wait key
        wait_key = BucketKey(data.preferred_provider_id, pairs[0][0], pairs[0][1])
        outbox = NotificationOutbox()
        slot = None
        match_status = "waiting"

        with slot_lock(wait_key.lock_key):
            with self._transaction(outbox):
                request = self.requests.create_request(self.db, **request_data)

                if data.preferred_provider_id is not None:
                    for date, time in pairs:
                        slot = self._book_first(
                            self.slots.find_available_slots(
                                self.db, date, time, provider_id=data.preferred_provider_id
                            ),
                            request,
                        )
                        if slot:
                            match_status = "matched"
                            break

                if slot is None:
                    for date, time in pairs:
                        slot = self._book_first(
                            self.slots.find_available_slots(self.db, date, time), request
                        )
                        if slot:
                            match_status = (
                                "alternate_offered"
                                if data.preferred_provider_id is not None
                                else "matched"
                            )
                            break

                if slot is None:
                    self.queue.enqueue(request, wait_key)
                else:
                    self._queue_match_events(
                        outbox, slot, request, alternate=match_status == "alternate_offered"
                    )

        self._dispatch(outbox)
        return self._match_result(request, match_status, slot)

    def _book(self, slot: Slot, request: StudentRequest, **request_updates) -> bool:
        """
        Compare-and-update the slot available -> booked for the request's
        requester and mark the request assigned. False if someone else won.
        """
        booked = self.slots.compare_and_update(
            self.db,
            slot,
            SLOT_AVAILABLE,
            status=SLOT_BOOKED,
            requester_id=request.requester_id,
            requester_name=request.requester_name,
        )
        if not booked:
            logger.info(f"⚠️ Slot {slot.id} was taken concurrently; trying next candidate")
            return False

        assigned = self.requests.transition(
            self.db,
            request,
            [REQUEST_PENDING],
            status=REQUEST_ASSIGNED,
            assigned_slot_id=slot.id,
            **request_updates,
        )
        if not assigned:
            raise HTTPException(status_code=409, detail="Request changed while it was being matched")
        logger.info(f"✅ Slot {slot.id} booked for requester {request.requester_id}")
        return True

    def _book_first(
        self, candidates: list[Slot], request: StudentRequest, **request_updates
    ) -> Optional[Slot]:
        for candidate in candidates:
            if self._book(candidate, request, **request_updates):
                return candidate
        return None

    def _queue_match_events(
        self, outbox: NotificationOutbox, slot: Slot, request: StudentRequest, alternate: bool
    ) -> None:
        suffix = " with an alternative provider" if alternate else ""
        outbox.add_many(
            [request.requester_id, slot.provider_id],
            NotificationEvent(
                title="Appointment Assigned",
                message=(
                    f"An appointment has been scheduled for {slot.date} at {slot.start_time}"
                    f"{suffix}."
                ),
                type=APPOINTMENT_ASSIGNED,
                related_id=str(slot.id),
            ),
        )

    def _match_result(
        self, request: StudentRequest, match_status: str, slot: Optional[Slot]
    ) -> MatchResult:
        messages = {
            "matched": None,
            "alternate_offered": "Your preferred provider had no opening; an alternative provider was booked.",
            "waiting": (
                "You have been placed on the waiting list for this slot. Once the provider "
                "marks it as available, you may be assigned."
            ),
            "rejected": "This slot is already booked. Please try a different time or provider.",
        }
        return MatchResult(
            request=StudentRequestResponse.model_validate(request),
            match_status=match_status,
            slot=SlotResponse.model_validate(slot) if slot is not None else None,
            message=messages.get(match_status),
        )

    # ------------------------------------------------------------------
    # Alternative slot after a rejection
    # ------------------------------------------------------------------

    def request_alternative(self, data: AlternativeRequest, actor: Actor) -> MatchResult:
        """Book the earliest open slot, preferred provider first, then anyone"""
        requester_id, requester_name = self._resolve_requester(data.requester_id, actor)

        if data.option == "other":
            return MatchResult(
                match_status="pending", message="You can select another slot from the calendar."
            )

        today = self.clock().date().isoformat()
        candidates = []
        if data.preferred_provider_id is not None:
            candidates = self.slots.find_earliest_available(
                self.db, today, provider_id=data.preferred_provider_id
            )
        if not candidates:
            candidates = self.slots.find_earliest_available(self.db, today)
        if not candidates:
            return MatchResult(
                match_status="no_match",
                message=(
                    "No available slots were found. Please try selecting a different provider "
                    "or check back later."
                ),
            )

        outbox = NotificationOutbox()
        slot = None
        with self._transaction(outbox):
            request = self.requests.create_request(
                self.db,
                requester_id=requester_id,
                requester_name=requester_name,
                preferred_days=[],
                preferred_times=[],
                preferred_provider_id=data.preferred_provider_id,
                status=REQUEST_PENDING,
                notes="Auto-matched through alternative slot request",
            )
            for candidate in candidates:
                if self._book(
                    candidate,
                    request,
                    preferred_days=[candidate.weekday],
                    preferred_times=[candidate.start_time],
                ):
                    slot = candidate
                    break

            if slot is None:
                self.requests.transition(
                    self.db, request, [REQUEST_PENDING], status=REQUEST_REJECTED
                )
            else:
                self._queue_match_events(outbox, slot, request, alternate=False)

        self._dispatch(outbox)
        if slot is None:
            return MatchResult(
                request=StudentRequestResponse.model_validate(request),
                match_status="no_match",
                message="All open slots were taken while matching. Please try again.",
            )
        return MatchResult(
            request=StudentRequestResponse.model_validate(request),
            match_status="matched",
            slot=SlotResponse.model_validate(slot),
            message=f"You've been matched with {slot.provider_name} on {slot.date} at {slot.start_time}.",
        )

    # ------------------------------------------------------------------
    # CancelSlot
    # ------------------------------------------------------------------

    def cancel_slot(
        self, slot_id: int, data: SlotCancel, actor: Actor
    ) -> Union[SlotResponse, RemovalReceipt]:
        """Cancel a slot: reassign to the waitlist head, release, or remove"""
        slot = self._get_slot(slot_id)
        if not policies.can_cancel_slot(actor, slot):
            raise HTTPException(status_code=403, detail="Unauthorized to cancel this slot")

        key = BucketKey(slot.provider_id, slot.date, slot.start_time)
        outbox = NotificationOutbox()

        with slot_lock(key.lock_key, key.any_provider().lock_key):
            with self._transaction(outbox):
                slot = self._reload_slot(slot)
                if not policies.can_cancel_slot(actor, slot):
                    raise HTTPException(status_code=403, detail="Unauthorized to cancel this slot")
                outcome = self.cancellations.cancel(slot, actor, data, outbox)

        self._dispatch(outbox)
        if outcome.receipt is not None:
            return outcome.receipt
        return SlotResponse.model_validate(outcome.slot)

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    def complete_slot(self, slot_id: int, actor: Actor) -> SlotResponse:
        """Mark a booked slot completed once its start time has passed"""
        slot = self._get_slot(slot_id)
        if not policies.can_complete_slot(actor, slot):
            raise HTTPException(
                status_code=403, detail="Unauthorized to mark this slot as completed"
            )

        key = BucketKey(slot.provider_id, slot.date, slot.start_time)
        outbox = NotificationOutbox()

        with slot_lock(key.lock_key):
            with self._transaction(outbox):
                slot = self._reload_slot(slot)
                if not policies.can_complete_slot(actor, slot):
                    raise HTTPException(
                        status_code=403, detail="Unauthorized to mark this slot as completed"
                    )
                if slot.status == SLOT_COMPLETED:
                    raise HTTPException(status_code=409, detail="Slot is already completed")
                if slot.status != SLOT_BOOKED:
                    raise HTTPException(
                        status_code=400,
                        detail=f"Only booked slots can be completed. Current status: {slot.status}",
                    )
                if slot_start(slot.date, slot.start_time) > self.clock():
                    raise HTTPException(
                        status_code=400, detail="Cannot mark a future slot as completed"
                    )
                if not self.slots.compare_and_update(
                    self.db, slot, SLOT_BOOKED, status=SLOT_COMPLETED
                ):
                    raise HTTPException(status_code=409, detail="Slot changed; please retry")
                self._queue_completion_events(outbox, slot, actor)

        logger.info(f"✅ Slot {slot.id} marked completed by user {actor.id}")
        self._dispatch(outbox)
        return SlotResponse.model_validate(slot)

    def _queue_completion_events(self, outbox: NotificationOutbox, slot: Slot, actor: Actor) -> None:
        marked_by_requester = actor.is_requester and slot.requester_id == actor.id
        message = (
            f"Your appointment on {slot.date} at {slot.start_time} with {slot.provider_name} "
            "has been marked as completed."
        )
        if not marked_by_requester:
            message += " Please provide feedback."
        outbox.add(
            slot.requester_id,
            NotificationEvent(
                title="Appointment Completed",
                message=message,
                type=APPOINTMENT_COMPLETED,
                related_id=str(slot.id),
            ),
        )
        if marked_by_requester or actor.is_admin:
            outbox.add(
                slot.provider_id,
                NotificationEvent(
                    title="Appointment Completed",
                    message=(
                        f"Your appointment on {slot.date} at {slot.start_time} with "
                        f"{slot.requester_name} has been marked as completed."
                    ),
                    type=APPOINTMENT_COMPLETED,
                    related_id=str(slot.id),
                ),
            )

    # ------------------------------------------------------------------
    # Admin assignment
    # ------------------------------------------------------------------

    def admin_assign(self, data: AdminAssign, actor: Actor) -> AdminAssignResult:
        """
        Admin-only booking:
            1. slot_id given -> bind the requester to that available slot
            2. provider_id given -> create a slot already booked for both
            3. neither -> waitlist the requester for any provider at date/time
        """
        if not actor.is_admin:
            raise HTTPException(status_code=403, detail="Only administrators can perform this action")

        requester_name = data.requester_name or self._user_name(
            data.requester_id, actor, role_label="Requester"
        )
        stamp = self.clock().strftime("%Y-%m-%d %H:%M")
        outbox = NotificationOutbox()

        if data.slot_id is not None:
            slot = self._get_slot(data.slot_id)
            key = BucketKey(slot.provider_id, slot.date, slot.start_time)
            with slot_lock(key.lock_key):
                with self._transaction(outbox):
                    slot = self._reload_slot(slot)
                    if slot.status != SLOT_AVAILABLE or slot.requester_id is not None:
                        raise HTTPException(
                            status_code=409,
                            detail=f"Slot is not available. Current status: {slot.status}",
                        )
                    notes = f"{slot.notes}\nAdmin assigned: {stamp}" if slot.notes else f"Admin assigned: {stamp}"
                    if data.notes:
                        notes = f"{notes}\n{data.notes}"
                    if not self.slots.compare_and_update(
                        self.db,
                        slot,
                        SLOT_AVAILABLE,
                        status=SLOT_BOOKED,
                        requester_id=data.requester_id,
                        requester_name=requester_name,
                        notes=notes,
                    ):
                        raise HTTPException(status_code=409, detail="Slot was booked concurrently")
                    self._queue_admin_events(outbox, slot, data.requester_id, created=False)
            self._dispatch(outbox)
            return AdminAssignResult(
                message="Requester successfully assigned to existing slot",
                slot=SlotResponse.model_validate(slot),
            )

        if data.provider_id is not None:
            provider_name = self._user_name(data.provider_id, actor, role_label="Provider")
            key = BucketKey(data.provider_id, data.date, data.start_time)
            with slot_lock(
                provider_day_lock_key(data.provider_id, data.date),
                key.lock_key,
                key.any_provider().lock_key,
            ):
                with self._transaction(outbox):
                    self._check_overlap(data.provider_id, data.date, data.start_time, data.end_time)
                    slot = self.slots.create_slot(
                        self.db,
                        date=data.date,
                        weekday=weekday_label(data.date),
                        start_time=data.start_time,
                        end_time=data.end_time,
                        provider_id=data.provider_id,
                        provider_name=provider_name,
                        requester_id=data.requester_id,
                        requester_name=requester_name,
                        status=SLOT_BOOKED,
                        notes=data.notes or f"Admin created: {stamp}",
                    )
                    self._queue_admin_events(outbox, slot, data.requester_id, created=True)
            self._dispatch(outbox)
            return AdminAssignResult(
                message="New slot created and assigned to both provider and requester",
                slot=SlotResponse.model_validate(slot),
            )

        key = BucketKey(None, data.date, data.start_time)
        with slot_lock(key.lock_key):
            with self._transaction(outbox):
                request = self.requests.create_request(
                    self.db,
                    requester_id=data.requester_id,
                    requester_name=requester_name,
                    preferred_days=[weekday_label(data.date)],
                    preferred_times=[data.start_time],
                    status=REQUEST_PENDING,
                    notes=data.notes or f"Admin waitlisted for {data.date} at {data.start_time}",
                )
                self.queue.enqueue(request, key)
                outbox.add(
                    data.requester_id,
                    NotificationEvent(
                        title="Waitlisted for Appointment",
                        message=(
                            f"An administrator has added you to the waitlist for an appointment on "
                            f"{data.date} at {data.start_time}. You'll be notified when a provider "
                            "becomes available."
                        ),
                        type=WAITLIST_ADDED,
                        related_id=str(request.id),
                    ),
                )
        self._dispatch(outbox)
        return AdminAssignResult(
            message="Requester successfully waitlisted for future provider availability",
            request=StudentRequestResponse.model_validate(request),
        )

    def _queue_admin_events(
        self, outbox: NotificationOutbox, slot: Slot, requester_id: int, created: bool
    ) -> None:
        if created:
            title = "New Appointment Scheduled"
            message = f"An administrator has created and scheduled an appointment on {slot.date} at {slot.start_time}."
        else:
            title = "Appointment Scheduled"
            message = f"An administrator has scheduled an appointment on {slot.date} at {slot.start_time}."
        outbox.add_many(
            [requester_id, slot.provider_id],
            NotificationEvent(
                title=title, message=message, type=APPOINTMENT_ASSIGNED, related_id=str(slot.id)
            ),
        )

    # ------------------------------------------------------------------
    # Request withdrawal
    # ------------------------------------------------------------------

    def withdraw_request(self, request_id: int, actor: Actor) -> StudentRequestResponse:
        """Take a pending or waiting request off the waitlist"""
        request = self.requests.get_request(self.db, request_id)
        if not request:
            raise HTTPException(status_code=404, detail="Request not found")
        if not policies.can_manage_request(actor, request):
            raise HTTPException(status_code=403, detail="Unauthorized to withdraw this request")
        if request.status not in (REQUEST_PENDING, REQUEST_WAITING):
            raise HTTPException(
                status_code=400,
                detail=f"Only pending or waiting requests can be withdrawn. Current status: {request.status}",
            )

        keys = []
        if request.requested_date and request.requested_time:
            keys.append(
                BucketKey(
                    request.preferred_provider_id, request.requested_date, request.requested_time
                ).lock_key
            )

        outbox = NotificationOutbox()
        with slot_lock(*keys):
            with self._transaction(outbox):
                if not self.queue.remove(request):
                    raise HTTPException(
                        status_code=409, detail="Request was matched or cancelled in the meantime"
                    )
        logger.info(f"🗑️ Request {request.id} withdrawn by user {actor.id}")
        return StudentRequestResponse.model_validate(request)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_slot(self, slot_id: int) -> Slot:
        slot = self.slots.get_slot(self.db, slot_id)
        if not slot:
            raise HTTPException(status_code=404, detail="Slot not found")
        return slot

    def _reload_slot(self, slot: Slot) -> Slot:
        """Re-read a slot once its key lock is held; 404 if it vanished meanwhile"""
        slot_id = slot.id
        self.db.expire(slot)
        return self._get_slot(slot_id)

    def _resolve_requester(self, requester_id: Optional[int], actor: Actor) -> tuple[int, str]:
        target_id = requester_id if (actor.is_admin and requester_id) else actor.id
        if not policies.can_request_slot(actor, target_id):
            raise HTTPException(
                status_code=403, detail="Only requesters or administrators can request slots"
            )
        return target_id, self._user_name(target_id, actor, role_label="Requester")

    def _user_name(self, user_id: int, actor: Actor, role_label: str) -> str:
        if user_id == actor.id and actor.name:
            return actor.name
        user = self.users.get_user(self.db, user_id)
        if not user:
            raise HTTPException(status_code=404, detail=f"{role_label} not found")
        return user.full_name
