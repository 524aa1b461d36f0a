"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ...models import SLOT_REMOVED
from ...shared.validators import normalize_weekday, validate_date_string, validate_time_string

MatchStatus = Literal["matched", "waiting", "rejected", "alternate_offered", "pending", "no_match"]


class AvailabilityCreate(BaseModel):
    """Schema for a provider marking a slot available"""

    date: str
    start_time: str
    end_time: str
    provider_id: Optional[int] = None  # Admin marking on behalf of a provider
    notes: Optional[str] = None
    is_recurring: bool = False
    recurring_days: Optional[list[str]] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return validate_date_string(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v):
        return validate_time_string(v)

    @field_validator("recurring_days")
    @classmethod
    def validate_recurring_days(cls, v):
        if v is None:
            return v
        return [normalize_weekday(day) for day in v]

    @model_validator(mode="after")
    def check_interval(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class SlotRequestCreate(BaseModel):
    """Schema for a requester asking for an appointment"""

    preferred_days: list[str] = []
    preferred_times: list[str] = []
    preferred_provider_id: Optional[int] = None
    specific_date: Optional[str] = None
    specific_time: Optional[str] = None
    requester_id: Optional[int] = None  # Admin requesting on behalf of a requester
    notes: Optional[str] = None

    @field_validator("preferred_days")
    @classmethod
    def validate_days(cls, v):
        return [normalize_weekday(day) for day in v]

    @field_validator("preferred_times")
    @classmethod
    def validate_times(cls, v):
        return [validate_time_string(t) for t in v]

    @field_validator("specific_date")
    @classmethod
    def validate_specific_date(cls, v):
        return validate_date_string(v)

    @field_validator("specific_time")
    @classmethod
    def validate_specific_time(cls, v):
        return validate_time_string(v)

    @model_validator(mode="after")
    def check_target(self):
        has_preferences = bool(self.preferred_days) and bool(self.preferred_times)
        has_specific = bool(self.specific_date) and bool(self.specific_time)
        if not has_preferences and not has_specific:
            raise ValueError(
                "Either preferred days and times or a specific date and time are required"
            )
        return self

    @property
    def is_exact_target(self) -> bool:
        return bool(self.specific_date and self.specific_time)


class AlternativeRequest(BaseModel):
    """Schema for asking for any other slot after a rejection"""

    option: Literal["auto", "other"]
    preferred_provider_id: Optional[int] = None
    requester_id: Optional[int] = None


class SlotCancel(BaseModel):
    """Schema for cancelling a slot"""

    reason: Optional[str] = None
    reassign: Optional[bool] = None  # None counts as True when deciding reassignment


class AdminAssign(BaseModel):
    """Schema for an admin binding a requester to a slot"""

    requester_id: int
    requester_name: Optional[str] = None
    slot_id: Optional[int] = None  # Case 1: existing slot
    date: Optional[str] = None  # Cases 2 and 3
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    provider_id: Optional[int] = None  # Case 2 when set, case 3 (waitlist) when not
    notes: Optional[str] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return validate_date_string(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v):
        return validate_time_string(v)

    @model_validator(mode="after")
    def check_target(self):
        if self.slot_id is None:
            if not (self.date and self.start_time and self.end_time):
                raise ValueError(
                    "date, start_time and end_time are required when no slot_id is given"
                )
            if self.start_time >= self.end_time:
                raise ValueError("start_time must be before end_time")
        return self


class SlotResponse(BaseModel):
    """Schema for a slot, real or waitlisted"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    date: str
    weekday: str
    start_time: str
    end_time: str
    provider_id: Optional[int] = None
    provider_name: str
    requester_id: Optional[int] = None
    requester_name: Optional[str] = None
    status: str
    notes: Optional[str] = None
    is_recurring: bool = False
    recurring_days: Optional[list[str]] = None
    is_waitlisted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StudentRequestResponse(BaseModel):
    """Schema for a student request"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    requester_id: int
    requester_name: str
    preferred_days: list[str]
    preferred_times: list[str]
    preferred_provider_id: Optional[int] = None
    requested_date: Optional[str] = None
    requested_time: Optional[str] = None
    waiting_for_provider: bool
    status: str
    assigned_slot_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AssignedRequester(BaseModel):
    id: int
    name: str


class AvailabilityResult(BaseModel):
    """MarkAvailable result: the slot plus who it went to, if anyone"""

    slot: SlotResponse
    assigned_requester: Optional[AssignedRequester] = None
    message: Optional[str] = None


class MatchResult(BaseModel):
    """RequestSlot result contract"""

    request: Optional[StudentRequestResponse] = None
    match_status: MatchStatus
    slot: Optional[SlotResponse] = None
    message: Optional[str] = None


class RemovalReceipt(BaseModel):
    """Returned instead of a slot when cancellation hard-deleted it"""

    id: int
    status: Literal["removed"] = SLOT_REMOVED
    date: str
    start_time: str
    message: str


class AdminAssignResult(BaseModel):
    message: str
    slot: Optional[SlotResponse] = None
    request: Optional[StudentRequestResponse] = None
