"""
Waitlist Queue

FIFO buckets of waiting StudentRequests keyed by (provider-or-ANY, date, time).
A bucket with provider_id=None holds requests with no preferred provider;
any provider's slot at that date/time can serve it.

Ordering is created_at ascending with the autoincrement id breaking ties, so
two requests stamped in the same instant keep their insertion order.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import (
    REQUEST_ASSIGNED,
    REQUEST_CANCELLED,
    REQUEST_PENDING,
    REQUEST_WAITING,
    Slot,
    StudentRequest,
)
from .repository import RequestRepository

logger = logging.getLogger(__name__)

ANY_PROVIDER = "ANY"


@dataclass(frozen=True)
class BucketKey:
    provider_id: Optional[int]
    date: str
    time: str

    @property
    def is_any(self) -> bool:
        return self.provider_id is None

    @property
    def lock_key(self) -> str:
        provider = ANY_PROVIDER if self.provider_id is None else str(self.provider_id)
        return f"{provider}|{self.date}|{self.time}"

    def any_provider(self) -> "BucketKey":
        return BucketKey(None, self.date, self.time)


def provider_day_lock_key(provider_id: int, date: str) -> str:
    """Coarser key MarkAvailable holds so overlapping intervals can't race in"""
    return f"{provider_id}|{date}|*"


class WaitlistQueue:
    """Persistent FIFO queue over the student_requests table"""

    def __init__(self, db: Session):
        self.db = db
        self.requests = RequestRepository()

    def bucket(self, key: BucketKey) -> list[StudentRequest]:
        """All waiting entries for a key, head first"""
        query = self.db.query(StudentRequest).filter(
            StudentRequest.requested_date == key.date,
            StudentRequest.requested_time == key.time,
            StudentRequest.status == REQUEST_WAITING,
        )
        if key.is_any:
            query = query.filter(StudentRequest.preferred_provider_id.is_(None))
        else:
            query = query.filter(StudentRequest.preferred_provider_id == key.provider_id)
        return query.order_by(StudentRequest.created_at.asc(), StudentRequest.id.asc()).all()

    def peek(self, key: BucketKey) -> Optional[StudentRequest]:
        entries = self.bucket(key)
        return entries[0] if entries else None

    def candidate_bucket(self, key: BucketKey) -> tuple[BucketKey, list[StudentRequest]]:
        """
        The bucket a new vacancy at key should serve: the provider's own bucket
        first, then requesters who accept any provider at that date/time.
        """
        entries = self.bucket(key)
        if entries or key.is_any:
            return key, entries
        any_key = key.any_provider()
        return any_key, self.bucket(any_key)

    def enqueue(self, request: StudentRequest, key: BucketKey) -> StudentRequest:
        """Park a pending request at the tail of a bucket"""
        updated = self.requests.transition(
            self.db,
            request,
            [REQUEST_PENDING, REQUEST_WAITING],
            status=REQUEST_WAITING,
            requested_date=key.date,
            requested_time=key.time,
            preferred_provider_id=key.provider_id,
            waiting_for_provider=True,
        )
        if not updated:
            raise HTTPException(
                status_code=409, detail=f"Request {request.id} can no longer be waitlisted"
            )
        logger.info(f"🕒 Request {request.id} waiting in bucket {key.lock_key}")
        return request

    def pop(self, entries: list[StudentRequest], slot: Slot) -> Optional[StudentRequest]:
        """
        Claim the head of a bucket snapshot for a slot.

        The head moves waiting -> assigned in the caller's transaction; if it
        was withdrawn in the meantime the caller gets a 409 and rolls back.
        """
        if not entries:
            return None
        head = entries[0]
        claimed = self.requests.transition(
            self.db,
            head,
            [REQUEST_WAITING],
            status=REQUEST_ASSIGNED,
            assigned_slot_id=slot.id,
        )
        if not claimed:
            raise HTTPException(
                status_code=409,
                detail="The waitlist changed while this slot was being assigned. Please retry.",
            )
        logger.info(f"✅ Waitlist head {head.id} claimed slot {slot.id}")
        return head

    def clear(self, entries: list[StudentRequest]) -> list[StudentRequest]:
        """Cancel every still-waiting entry of a snapshot; returns those cancelled"""
        cancelled = []
        for entry in entries:
            if self.requests.transition(
                self.db, entry, [REQUEST_WAITING], status=REQUEST_CANCELLED
            ):
                cancelled.append(entry)
        if cancelled:
            logger.info(f"🧹 Cancelled {len(cancelled)} waitlist entries")
        return cancelled

    def remove(self, request: StudentRequest) -> bool:
        """Withdraw a single pending or waiting request"""
        return self.requests.transition(
            self.db,
            request,
            [REQUEST_PENDING, REQUEST_WAITING],
            status=REQUEST_CANCELLED,
        )
