"""Authorization predicates - one pure check per engine operation"""

from dataclasses import dataclass
from typing import Optional

from ...models import ROLE_ADMIN, ROLE_PROVIDER, ROLE_REQUESTER, Slot, StudentRequest, User


@dataclass(frozen=True)
class Actor:
    id: int
    role: str
    name: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=user.id, role=user.role, name=user.full_name or "")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_provider(self) -> bool:
        return self.role == ROLE_PROVIDER

    @property
    def is_requester(self) -> bool:
        return self.role == ROLE_REQUESTER


def can_mark_available(actor: Actor, provider_id: Optional[int]) -> bool:
    if actor.is_admin:
        return True
    return actor.is_provider and (provider_id is None or provider_id == actor.id)


def can_request_slot(actor: Actor, requester_id: Optional[int]) -> bool:
    if actor.is_admin:
        return True
    return actor.is_requester and (requester_id is None or requester_id == actor.id)


def can_cancel_slot(actor: Actor, slot: Slot) -> bool:
    """Admin unconditionally, the owning provider, or the bound requester"""
    return actor.is_admin or slot.provider_id == actor.id or slot.requester_id == actor.id


def can_complete_slot(actor: Actor, slot: Slot) -> bool:
    if actor.is_admin:
        return True
    if actor.is_provider:
        return slot.provider_id == actor.id
    if actor.is_requester:
        return slot.requester_id == actor.id
    return False


def can_read_slot(actor: Actor, slot: Slot) -> bool:
    """Requesters never see another party's raw availability"""
    if actor.is_admin:
        return True
    if actor.is_provider:
        return slot.provider_id == actor.id
    return slot.requester_id == actor.id


def can_manage_request(actor: Actor, request: StudentRequest) -> bool:
    return actor.is_admin or request.requester_id == actor.id
