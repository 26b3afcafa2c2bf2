import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from . import models

DAYS_PER_MONTH = 30
CENT = Decimal("0.01")


def periods_overlap(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """
    In-memory form of the overlap rule used by :func:`find_conflicts`.

    Boundaries are inclusive: a period ending on the day another starts
    still overlaps it, so back-to-back bookings are refused.
    """
    return a_start <= b_end and a_end >= b_start


def _conflicts_query(
    db: Session,
    room_id: int,
    start_date: datetime,
    end_date: datetime,
    exclude_booking_id: Optional[int] = None,
):
    q = (
        db.query(models.Booking)
        .filter(models.Booking.room_id == room_id)
        .filter(models.Booking.is_active.is_(True))
        .filter(models.Booking.status.in_(models.BLOCKING_STATUSES))
        .filter(models.Booking.start_date <= end_date)
        .filter(models.Booking.end_date >= start_date)
    )

    if exclude_booking_id is not None:
        q = q.filter(models.Booking.id != exclude_booking_id)

    return q


def find_conflicts(
    db: Session,
    room_id: int,
    start_date: datetime,
    end_date: datetime,
    exclude_booking_id: Optional[int] = None,
) -> List[models.Booking]:
    """
    Return the active bookings on a room that collide with a candidate period.

    A booking collides when its status is pending or approved and
    ``existing.start <= candidate.end AND existing.end >= candidate.start``.

    Parameters
    ----------
    db : Session
        Database session.
    room_id : int
        Room identifier.
    start_date : datetime
        Candidate start.
    end_date : datetime
        Candidate end.
    exclude_booking_id : Optional[int]
        If provided, ignore this booking (used when re-validating it).

    Returns
    -------
    List[Booking]
        Conflicting bookings ordered by start date.
    """
    return (
        _conflicts_query(db, room_id, start_date, end_date, exclude_booking_id)
        .order_by(models.Booking.start_date.asc())
        .all()
    )


def has_conflict(
    db: Session,
    room_id: int,
    start_date: datetime,
    end_date: datetime,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    """Return True if :func:`find_conflicts` would report at least one booking."""
    q = _conflicts_query(db, room_id, start_date, end_date, exclude_booking_id)
    return db.query(q.exists()).scalar()


def calculate_nights(start_date: datetime, end_date: datetime) -> int:
    """Nights charged for a period: partial days round up, minimum one."""
    seconds = abs((end_date - start_date).total_seconds())
    return max(1, math.ceil(seconds / 86400))


def calculate_total(monthly_price, start_date: datetime, end_date: datetime) -> Decimal:
    """
    Prorate a monthly room rate over a booking period.

    The daily rate is ``monthly_price / 30`` rounded to cents, and the total
    is ``daily_rate * nights`` rounded to cents.
    """
    monthly = Decimal(str(monthly_price or 0))
    daily_rate = (monthly / DAYS_PER_MONTH).quantize(CENT, rounding=ROUND_HALF_UP)
    nights = calculate_nights(start_date, end_date)
    return (daily_rate * nights).quantize(CENT, rounding=ROUND_HALF_UP)
