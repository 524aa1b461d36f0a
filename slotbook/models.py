from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base

# Slot statuses
SLOT_AVAILABLE = "available"
SLOT_BOOKED = "booked"
SLOT_CANCELLED = "cancelled"
SLOT_COMPLETED = "completed"
SLOT_REMOVED = "removed"  # Only ever reported in removal receipts; the row is deleted

# StudentRequest statuses
REQUEST_PENDING = "pending"
REQUEST_WAITING = "waiting"
REQUEST_ASSIGNED = "assigned"
REQUEST_REJECTED = "rejected"
REQUEST_CANCELLED = "cancelled"

ROLE_ADMIN = "admin"
ROLE_PROVIDER = "provider"
ROLE_REQUESTER = "requester"


def utcnow() -> datetime:
    """Naive UTC timestamp with microseconds, used for FIFO ordering"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(String(20), nullable=False, index=True)  # admin, provider, requester
    api_token_hash = Column(String(64), unique=True, index=True, nullable=True)  # sha256 hex
    created_at = Column(DateTime, default=utcnow)


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (Index("ix_slots_provider_date_start", "provider_id", "date", "start_time"),)

    id = Column(Integer, primary_key=True, index=True)
    date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    weekday = Column(String(3), nullable=False)  # MON..SUN
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)

    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    provider_name = Column(String(255), nullable=False)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    requester_name = Column(String(255), nullable=True)

    # available, booked, cancelled, completed
    status = Column(String(20), default=SLOT_AVAILABLE, nullable=False, index=True)
    notes = Column(Text, nullable=True)

    # Recurrence is a tag only; no occurrences are generated from it
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurring_days = Column(JSON, nullable=True)

    # Bumped by every compare-and-update so stale writers lose
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    provider = relationship("User", foreign_keys=[provider_id])
    requester = relationship("User", foreign_keys=[requester_id])


class StudentRequest(Base):
    __tablename__ = "student_requests"
    __table_args__ = (
        Index(
            "ix_requests_bucket",
            "preferred_provider_id",
            "requested_date",
            "requested_time",
            "status",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)  # autoincrement doubles as FIFO tie-break
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    requester_name = Column(String(255), nullable=False)

    preferred_days = Column(JSON, default=list, nullable=False)  # ["MON", "WED"]
    preferred_times = Column(JSON, default=list, nullable=False)  # ["09:00"]
    preferred_provider_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Waitlist key (provider-or-ANY, requested_date, requested_time)
    requested_date = Column(String(10), nullable=True)
    requested_time = Column(String(5), nullable=True)
    waiting_for_provider = Column(Boolean, default=False, nullable=False)

    # pending, waiting, assigned, rejected, cancelled
    status = Column(String(20), default=REQUEST_PENDING, nullable=False, index=True)
    assigned_slot_id = Column(Integer, ForeignKey("slots.id", ondelete="SET NULL"), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False)
    related_id = Column(String(64), nullable=False)  # slot or request id
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
