"""
Slot Notification Service
Queues booking events while a unit of work is open and delivers them only
after it commits. Delivery is fire-and-forget: a failed notification is
logged and never fails the booking operation that produced it.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..models import Notification

logger = logging.getLogger(__name__)

# Event types
APPOINTMENT_ASSIGNED = "appointment_assigned"
APPOINTMENT_CANCELLED = "appointment_cancelled"
APPOINTMENT_COMPLETED = "appointment_completed"
WAITLIST_MATCHED = "waitlist_matched"
WAITLIST_ADDED = "waitlist_added"
SLOT_UNAVAILABLE = "slot_unavailable"
SLOT_REASSIGNMENT_PENDING = "slot_reassignment_pending"
AVAILABILITY_CANCELLED = "availability_cancelled"


@dataclass(frozen=True)
class NotificationEvent:
    title: str
    message: str
    type: str
    related_id: str


class NotificationDispatcher(Protocol):
    def notify(self, user_id: int, event: NotificationEvent) -> None: ...


class DatabaseNotificationDispatcher:
    """Persists each event as an inbox Notification in its own session"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def notify(self, user_id: int, event: NotificationEvent) -> None:
        db = self.session_factory()
        try:
            db.add(
                Notification(
                    user_id=user_id,
                    title=event.title,
                    message=event.message,
                    type=event.type,
                    related_id=event.related_id,
                )
            )
            db.commit()
            logger.info(f"📤 {event.type} notification stored for user {user_id}")
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class NotificationOutbox:
    """
    Collects events during an operation and flushes them after commit.

    Recipients without an id are skipped with a warning instead of raising,
    so a slot that lost its requester never blocks the rest of the batch.
    """

    def __init__(self):
        self._pending: list[tuple[Optional[int], NotificationEvent]] = []

    def add(self, user_id: Optional[int], event: NotificationEvent) -> None:
        self._pending.append((user_id, event))

    def add_many(self, user_ids: list[Optional[int]], event: NotificationEvent) -> None:
        for user_id in user_ids:
            self.add(user_id, event)

    def __len__(self) -> int:
        return len(self._pending)

    def discard(self) -> None:
        self._pending.clear()

    def flush(self, dispatcher: NotificationDispatcher) -> dict:
        """Deliver all queued events; returns sent/failed/skipped counts"""
        result = {"sent": 0, "failed": 0, "skipped": 0}
        pending, self._pending = self._pending, []

        for user_id, event in pending:
            if user_id is None:
                result["skipped"] += 1
                logger.warning(f"⚠️ Skipping {event.type} notification with no recipient")
                continue
            try:
                dispatcher.notify(user_id, event)
                result["sent"] += 1
            except Exception as e:
                result["failed"] += 1
                logger.error(f"❌ Failed to send {event.type} notification to user {user_id}: {e}")

        return result


def get_notification_dispatcher() -> NotificationDispatcher:
    """Dependency injection for the notification dispatcher"""
    return DatabaseNotificationDispatcher()
