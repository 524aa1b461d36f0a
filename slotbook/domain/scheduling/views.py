"""
Scoped slot reads

Requesters only ever see slots bound to them, plus "virtual" calendar entries
built from their own waiting requests. Providers see their own slots; admins
see everything and may filter.
"""

from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...config import WAITLIST_SLOT_MINUTES
from ...models import REQUEST_PENDING, REQUEST_WAITING, StudentRequest
from ...shared.validators import validate_date_string
from . import policies
from .policies import Actor
from .repository import RequestRepository, SlotRepository, UserRepository
from .schemas import SlotResponse, StudentRequestResponse
from .timeutils import add_minutes, in_date_range, weekday_label


WAITLISTED = "waitlisted"
ANY_PROVIDER_LABEL = "Any Available Provider"
UNKNOWN_PROVIDER_LABEL = "Preferred Provider"


class SlotViews:
    """Read-side projection over slots and waiting requests"""

    def __init__(self, db: Session):
        self.db = db
        self.slots = SlotRepository()
        self.requests = RequestRepository()
        self.users = UserRepository()

    def list_slots(
        self,
        actor: Actor,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        provider_id: Optional[int] = None,
        requester_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> list[SlotResponse]:
        start_date = self._normalize_bound(start_date)
        end_date = self._normalize_bound(end_date)

        if actor.is_admin:
            slots = self.slots.list_slots(
                self.db, start_date, end_date, provider_id, requester_id, status
            )
            return [SlotResponse.model_validate(s) for s in slots]

        if actor.is_provider:
            slots = self.slots.list_slots(self.db, start_date, end_date, actor.id, None, status)
            return [SlotResponse.model_validate(s) for s in slots]

        slots = self.slots.list_slots(self.db, start_date, end_date, None, actor.id, status)
        entries = [SlotResponse.model_validate(s) for s in slots]

        if status in (None, WAITLISTED):
            waiting = self.requests.list_requests(
                self.db, requester_id=actor.id, statuses=[REQUEST_WAITING]
            )
            entries.extend(
                self._virtual_entry(r)
                for r in waiting
                if r.requested_time and in_date_range(r.requested_date, start_date, end_date)
            )

        entries.sort(key=lambda e: (e.date, e.start_time))
        return entries

    @staticmethod
    def _normalize_bound(value: Optional[str]) -> Optional[str]:
        try:
            return validate_date_string(value)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    def get_slot(self, slot_id: int, actor: Actor) -> SlotResponse:
        slot = self.slots.get_slot(self.db, slot_id)
        if not slot:
            raise HTTPException(status_code=404, detail="Slot not found")
        if not policies.can_read_slot(actor, slot):
            raise HTTPException(status_code=403, detail="Unauthorized to view this slot")
        return SlotResponse.model_validate(slot)

    def get_waitlisted_entry(self, request_id: int, actor: Actor) -> SlotResponse:
        """A single waiting request rendered the way the calendar shows it"""
        request = self.requests.get_request(self.db, request_id)
        if not request or request.status != REQUEST_WAITING or not request.requested_date:
            raise HTTPException(status_code=404, detail="Waitlisted slot not found")
        if not policies.can_manage_request(actor, request):
            raise HTTPException(status_code=403, detail="Unauthorized to view this waitlisted slot")
        return self._virtual_entry(request)

    def list_requests(self, actor: Actor, open_only: bool = False) -> list[StudentRequestResponse]:
        statuses = [REQUEST_PENDING, REQUEST_WAITING] if open_only else None
        requests = self.requests.list_requests(self.db, requester_id=actor.id, statuses=statuses)
        return [StudentRequestResponse.model_validate(r) for r in requests]

    def _virtual_entry(self, request: StudentRequest) -> SlotResponse:
        return SlotResponse(
            id=request.id,
            date=request.requested_date,
            weekday=weekday_label(request.requested_date),
            start_time=request.requested_time,
            end_time=add_minutes(request.requested_time, WAITLIST_SLOT_MINUTES),
            provider_id=request.preferred_provider_id,
            provider_name=self._provider_label(request.preferred_provider_id),
            requester_id=request.requester_id,
            requester_name=request.requester_name,
            status=WAITLISTED,
            notes=request.notes,
            is_waitlisted=True,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )

    def _provider_label(self, provider_id: Optional[int]) -> str:
        if provider_id is None:
            return ANY_PROVIDER_LABEL
        provider = self.users.get_user(self.db, provider_id)
        return provider.full_name if provider else UNKNOWN_PROVIDER_LABEL
