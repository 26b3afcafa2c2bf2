from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class VerificationStatus(str, PyEnum):
    """
    Verification state of a hostel, owned by the hostel directory.

    Only ``approved`` hostels accept bookings.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BookingStatus(str, PyEnum):
    """
    Enumeration of possible booking statuses.

    Values
    ------
    pending
        Requested by a student, awaiting the landlord's decision.
    approved
        Accepted by the landlord; the room is locked.
    rejected
        Declined by the landlord. Terminal.
    cancelled
        Withdrawn by the student or force-cancelled by an administrator.
    expired
        Left undecided past ``expires_at``. Terminal.
    completed
        Stay finished. Terminal.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"


# Statuses that hold a room for their period
BLOCKING_STATUSES = (BookingStatus.PENDING, BookingStatus.APPROVED)
CANCELLABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.APPROVED)


class Hostel(Base):
    """
    Read-only projection of a hostel listing.

    Attributes
    ----------
    id : int
        Primary key.
    landlord_id : int
        User that owns the hostel and decides its bookings.
    name : str
        Display name.
    verification_status : VerificationStatus
        Result of administrator verification.
    """
    __tablename__ = "hostels"

    id = Column(Integer, primary_key=True, index=True)
    landlord_id = Column(Integer, index=True, nullable=False)
    name = Column(String(200), nullable=False)
    verification_status = Column(
        Enum(VerificationStatus),
        nullable=False,
        default=VerificationStatus.PENDING,
    )
    created_at = Column(DateTime, default=utcnow)

    rooms = relationship("Room", back_populates="hostel")


class Room(Base):
    """
    SQLAlchemy model representing a bookable hostel room.

    Attributes
    ----------
    id : int
        Primary key.
    hostel_id : int
        Parent hostel.
    room_number : str
        Room label, unique within its hostel.
    capacity : int
        Maximum number of occupants.
    current_occupancy : int
        Occupants currently assigned, never above capacity.
    price_amount : Decimal
        Monthly rate.
    is_available : bool
        Stored projection: occupancy below capacity and no approved booking
        holds the room. Recomputed by the availability store.
    is_active : bool
        Inactive rooms are hidden from every booking flow.
    booking_version : int
        Bumped each time a booking transaction locks the room.
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    hostel_id = Column(Integer, ForeignKey("hostels.id"), index=True, nullable=False)
    room_number = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=False, default=1)
    current_occupancy = Column(Integer, nullable=False, default=0)
    price_amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")
    is_available = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    booking_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    hostel = relationship("Hostel", back_populates="rooms")

    __table_args__ = (
        CheckConstraint("capacity >= 1 AND capacity <= 10", name="room_capacity_range"),
        CheckConstraint(
            "current_occupancy >= 0 AND current_occupancy <= capacity",
            name="room_occupancy_within_capacity",
        ),
        CheckConstraint("price_amount >= 0", name="room_price_non_negative"),
        Index("ix_rooms_hostel_room_number", "hostel_id", "room_number", unique=True),
    )

    @property
    def available_beds(self) -> int:
        return self.capacity - self.current_occupancy


class Booking(Base):
    """
    SQLAlchemy model representing a student's request to book a room.

    Attributes
    ----------
    id : int
        Primary key.
    student_id : int
        Student that requested the booking.
    hostel_id : int
        Hostel owning the room.
    room_id : int
        Requested room.
    start_date : datetime
        Start of the booking period.
    end_date : datetime
        End of the booking period, strictly after ``start_date``.
    status : BookingStatus
        Current lifecycle state.
    total_amount : Decimal
        Prorated price for the period.
    is_active : bool
        False once expired or force-cancelled by an administrator.
    locked_at : datetime
        When the booking was placed.
    expires_at : datetime
        Deadline for the landlord's decision while pending.
    version : int
        Incremented on each status transition.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, index=True, nullable=False)
    hostel_id = Column(Integer, ForeignKey("hostels.id"), index=True, nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id"), index=True, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING, index=True)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    locked_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)

    decided_by = Column(Integer, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    decision_reason = Column(String(500), nullable=True)

    cancelled_by = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    source = Column(String(20), nullable=False, default="web")
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    room = relationship("Room")
    hostel = relationship("Hostel")

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="booking_period_valid"),
        CheckConstraint("total_amount >= 0", name="booking_amount_non_negative"),
        Index("ix_bookings_room_period", "room_id", "start_date", "end_date"),
        Index("ix_bookings_student_status_active", "student_id", "status", "is_active"),
        Index("ix_bookings_hostel_status", "hostel_id", "status"),
    )

    def can_be_decided(self) -> bool:
        return self.status == BookingStatus.PENDING

    def can_be_cancelled(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def touch_version(self) -> None:
        self.version = (self.version or 0) + 1
