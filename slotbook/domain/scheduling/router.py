"""Scheduling router - FastAPI endpoints for slots, requests and the waitlist"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from ...services.notification_service import NotificationDispatcher, get_notification_dispatcher
from .matching import MatchingEngine
from .policies import Actor
from .schemas import (
    AdminAssign,
    AdminAssignResult,
    AlternativeRequest,
    AvailabilityCreate,
    AvailabilityResult,
    MatchResult,
    RemovalReceipt,
    SlotCancel,
    SlotRequestCreate,
    SlotResponse,
    StudentRequestResponse,
)
from .views import SlotViews

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slots", tags=["Slots"])


def get_matching_engine(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> MatchingEngine:
    """Dependency injection for MatchingEngine"""
    return MatchingEngine(db, dispatcher)


def get_slot_views(db: Session = Depends(get_db)) -> SlotViews:
    """Dependency injection for SlotViews"""
    return SlotViews(db)


def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(current_user)


# ============================================================================
# READS
# ============================================================================


@router.get("", response_model=list[SlotResponse])
async def list_slots(
    actor: Actor = Depends(get_current_actor),
    views: SlotViews = Depends(get_slot_views),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    provider_id: Optional[int] = Query(None),
    requester_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
):
    """List slots visible to the caller; requesters also get their waitlisted entries"""
    return views.list_slots(actor, start_date, end_date, provider_id, requester_id, status)


@router.get("/requests/mine", response_model=list[StudentRequestResponse])
async def list_my_requests(
    open_only: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    views: SlotViews = Depends(get_slot_views),
):
    return views.list_requests(actor, open_only)


@router.get("/waitlisted/{request_id}", response_model=SlotResponse)
async def get_waitlisted_slot(
    request_id: int,
    actor: Actor = Depends(get_current_actor),
    views: SlotViews = Depends(get_slot_views),
):
    """Get a waiting request shaped as a calendar slot"""
    return views.get_waitlisted_entry(request_id, actor)


@router.get("/{slot_id}", response_model=SlotResponse)
async def get_slot(
    slot_id: int,
    actor: Actor = Depends(get_current_actor),
    views: SlotViews = Depends(get_slot_views),
):
    return views.get_slot(slot_id, actor)


# ============================================================================
# AVAILABILITY & REQUESTS
# ============================================================================
# Handlers that take slot locks are plain def so they block a threadpool
# worker, never the event loop.


@router.post("/availability", response_model=AvailabilityResult, status_code=201)
def mark_available(
    data: AvailabilityCreate,
    actor: Actor = Depends(get_current_actor),
    engine: MatchingEngine = Depends(get_matching_engine),
):
    """Publish an available slot (auto-assigned if someone is waiting for it)"""
    return engine.mark_available(data, actor)


@router.post("/requests", response_model=MatchResult, status_code=201)
def request_slot(
    data: SlotRequestCreate,
    actor: Actor = Depends(get_current_actor),
    engine: MatchingEngine = Depends(get_matching_engine),
):
    """Request an appointment by exact slot or by preferred days and times"""
    return engine.request_slot(data, actor)


@router.post("/requests/alternative", response_model=MatchResult)
def request_alternative(
    data: AlternativeRequest,
    actor: Actor = Depends(get_current_actor),
    engine: MatchingEngine = Depends(get_matching_engine),
):
    """After a rejection: auto-book the earliest open slot, or go pick another"""
    return engine.request_alternative(data, actor)


@router.post("/requests/{request_id}/withdraw", response_model=StudentRequestResponse)
def withdraw_request(
    request_id: int,
    actor: Actor = Depends(get_current_actor),
    engine: MatchingEngine = Depends(get_matching_engine),
):
    return engine.withdraw_request(request_id, actor)


# ============================================================================
# SLOT LIFECYCLE
# ============================================================================


@router.post("/{slot_id}/cancel", response_model=Union[SlotResponse, RemovalReceipt])
def cancel_slot(
    slot_id: int,
    data: SlotCancel,
    actor: Actor = Depends(get_current_actor),
    engine: MatchingEngine = Depends(get_matching_engine),
):
    """Cancel a slot; it may be reassigned, released or removed"""
    return engine.cancel_slot(slot_id, data, actor)


@router.post("/{slot_id}/complete", response_model=SlotResponse)
def complete_slot(
    slot_id: int,
    actor: Actor = Depends(get_current_actor),
    engine: MatchingEngine = Depends(get_matching_engine),
):
    return engine.complete_slot(slot_id, actor)


@router.post("/admin/assign", response_model=AdminAssignResult, status_code=201)
def admin_assign(
    data: AdminAssign,
    actor: Actor = Depends(get_current_actor),
    engine: MatchingEngine = Depends(get_matching_engine),
):
    """Admin: book a requester into a slot, create one, or waitlist them"""
    return engine.admin_assign(data, actor)
