"""Pydantic schemas for allocation results, events and API payloads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    IN_USE = "in_use"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PREEMPTED = "preempted"
    EXPIRED = "expired"
    REJECTED = "rejected"


ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.APPROVED, BookingStatus.IN_USE)
TERMINAL_STATUSES = (
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.PREEMPTED,
    BookingStatus.EXPIRED,
    BookingStatus.REJECTED,
)


class BookingCategory(str, Enum):
    UNIVERSITY_ACTIVITY = "university_activity"
    CLASS = "class"
    STAFF_MEETING = "staff_meeting"
    CHURCH_MEETING = "church_meeting"
    STUDENT_MEETING = "student_meeting"
    OTHER = "other"


class ConflictType(str, Enum):
    MAINTENANCE = "maintenance"
    FIXED_SCHEDULE = "fixed_schedule"
    EXISTING_BOOKING = "existing_booking"
    SHARED_EQUIPMENT = "shared_equipment"
    DEPENDENT_RESOURCE = "dependent_resource"
    CAPACITY = "capacity"
    RESOURCE_ISSUE = "resource_issue"
    REQUESTER_DOUBLE_BOOKING = "requester_double_booking"


HARD_CONFLICT_TYPES = (
    ConflictType.MAINTENANCE,
    ConflictType.RESOURCE_ISSUE,
    ConflictType.FIXED_SCHEDULE,
    ConflictType.DEPENDENT_RESOURCE,
)


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_USE = "in_use"
    COMPLETED = "completed"
    DENIED = "denied"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    ERROR = "error"


class EventType(str, Enum):
    BOOKING_CREATED = "BookingCreated"
    BOOKING_UPDATED = "BookingUpdated"
    BOOKING_PREEMPTED = "BookingPreempted"
    BOOKING_APPROVED = "BookingApproved"
    BOOKING_REJECTED = "BookingRejected"
    BOOKING_CANCELLED = "BookingCancelled"


class SuggestionKind(str, Enum):
    SHIFTED_EARLIER = "shifted_earlier"
    SHIFTED_LATER = "shifted_later"
    NEXT_AVAILABLE = "next_available"
    ALTERNATIVE_RESOURCE = "alternative_resource"
    MINOR_OVERLAP = "minor_overlap"


class ConflictRecord(BaseModel):
    type: ConflictType
    severity: Severity
    blocking: bool
    resource_id: str
    message: str
    suggestion: Optional[str] = None
    booking_id: Optional[str] = None
    holder_id: Optional[str] = None
    priority: Optional[int] = None
    preemptable: bool = False
    related_resource_id: Optional[str] = None
    issue_id: Optional[int] = None
    timetable_id: Optional[int] = None
    conflict_start: Optional[datetime] = None
    conflict_end: Optional[datetime] = None


class Suggestion(BaseModel):
    kind: SuggestionKind
    resource_id: str
    resource_name: Optional[str] = None
    start_time: datetime
    end_time: datetime
    similarity_score: float = 0.0
    preference_score: float = 0.0
    recent_usage: int = 0
    score: float = 0.0


class BookingView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_reference: str
    resource_id: str
    user_id: str
    start_time: datetime
    end_time: datetime
    category: BookingCategory
    purpose: Optional[str] = None
    status: BookingStatus
    priority: Optional[int] = None
    supporting_document_path: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class BookingEvent(BaseModel):
    type: EventType
    booking_id: Optional[str] = None
    booking_reference: Optional[str] = None
    user_id: str
    resource_id: str
    occurred_at: datetime
    reason: Optional[str] = None
    suggestions: list[Suggestion] = Field(default_factory=list)


class BookingResult(BaseModel):
    success: bool
    outcome: Outcome
    reason: Optional[str] = None
    rule: Optional[str] = None
    booking: Optional[BookingView] = None
    preempted_booking_ids: list[str] = Field(default_factory=list)
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    suggestions: list[Suggestion] = Field(default_factory=list)
    events: list[BookingEvent] = Field(default_factory=list)

    @field_validator("reason")
    @classmethod
    def normalize_reason(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class AvailabilityResult(BaseModel):
    available: bool
    reason: Optional[str] = None
    resource_id: str
    start_time: datetime
    end_time: datetime
    priority: Optional[int] = None
    preemptable_booking_ids: list[str] = Field(default_factory=list)
    conflicts: list[ConflictRecord] = Field(default_factory=list)


class BatchCancelResult(BaseModel):
    cancelled_count: int
    total_requested: int
    errors: list[str] = Field(default_factory=list)


class CreateBookingRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    resource_id: str = Field(min_length=1)
    requester_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    category: BookingCategory = BookingCategory.OTHER
    purpose: Optional[str] = None
    attachment_ref: Optional[str] = None


class UpdateBookingRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    category: Optional[BookingCategory] = None

    @model_validator(mode="after")
    def validate_interval_pair(self):
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError("start_time and end_time must be provided together.")
        return self


class CancelBookingRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=500)


class AvailabilityRequest(BaseModel):
    resource_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    requester_id: Optional[str] = None
    category: Optional[BookingCategory] = None
    exclude_booking_id: Optional[str] = None


class AdminActionRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=500)


class ExpireResponse(BaseModel):
    expired: int
