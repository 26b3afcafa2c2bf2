from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .lifecycle import to_naive_utc
from .models import BookingStatus


class BookingPeriod(BaseModel):
    """
    Start and end of a requested stay.

    Timezone-aware values are converted to naive UTC, the form stored in
    the database.
    """
    start_date: datetime = Field(...)
    end_date: datetime = Field(...)

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class BookingCreate(BookingPeriod):
    """
    Schema for a student's booking request.

    The room comes from the URL; request metadata (IP, user agent) is taken
    from the HTTP request.
    """
    source: Optional[str] = Field(default="web", max_length=20)


class BookingDecision(BaseModel):
    """
    Landlord decision on a pending booking.

    A reason is mandatory when rejecting; this is checked by the route so
    it can answer with HTTP 400.
    """
    action: Literal["approve", "reject"]
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingCancel(BaseModel):
    """Optional free-text reason for a cancellation."""
    reason: Optional[str] = Field(default=None, max_length=500)


class RoomSummary(BaseModel):
    id: int
    room_number: str
    capacity: int
    price_amount: Decimal
    currency: str
    is_available: bool

    model_config = ConfigDict(from_attributes=True)


class HostelSummary(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class BookingRead(BaseModel):
    """
    Schema returned when reading booking information.

    Includes the resolved room and hostel for display.
    """
    id: int
    student_id: int
    hostel_id: int
    room_id: int
    start_date: datetime
    end_date: datetime
    status: BookingStatus
    total_amount: Decimal
    currency: str
    is_active: bool
    locked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    decided_by: Optional[int] = None
    decided_at: Optional[datetime] = None
    decision_reason: Optional[str] = None
    cancelled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    source: str
    version: int
    created_at: datetime
    updated_at: Optional[datetime] = None
    room: Optional[RoomSummary] = None
    hostel: Optional[HostelSummary] = None

    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class BookingPage(BaseModel):
    bookings: List[BookingRead]
    pagination: Pagination


class AvailabilityRead(BaseModel):
    room_id: int
    available: bool


class ExpireResult(BaseModel):
    expired: int
    message: str
