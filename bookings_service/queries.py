import math
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, joinedload

from . import models
from .exceptions import BookingNotFound, HostelNotFound, NotAuthorized

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _paginate(query, page: int, limit: int) -> Dict[str, Any]:
    page = max(1, int(page or 1))
    limit = min(MAX_PAGE_SIZE, max(1, int(limit or DEFAULT_PAGE_SIZE)))

    total = query.order_by(None).count()
    bookings = (
        query.options(joinedload(models.Booking.room), joinedload(models.Booking.hostel))
        .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "bookings": bookings,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def list_student_bookings(
    db: Session,
    student_id: int,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    status: Optional[models.BookingStatus] = None,
) -> Dict[str, Any]:
    """
    List a student's active bookings, newest first.

    Parameters
    ----------
    db : Session
        Database session.
    student_id : int
        Owner of the bookings.
    page, limit : int
        1-based page number and page size.
    status : Optional[BookingStatus]
        Restrict to one status.

    Returns
    -------
    dict
        ``{"bookings": [...], "pagination": {...}}``
    """
    q = (
        db.query(models.Booking)
        .filter(models.Booking.student_id == student_id)
        .filter(models.Booking.is_active.is_(True))
    )
    if status is not None:
        q = q.filter(models.Booking.status == status)
    return _paginate(q, page, limit)


def list_hostel_bookings(
    db: Session,
    hostel_id: int,
    landlord_id: int,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    status: Optional[models.BookingStatus] = None,
) -> Dict[str, Any]:
    """
    List the booking requests of a hostel for its landlord.

    Without a status filter only pending and approved bookings are returned.

    Raises
    ------
    HostelNotFound
        If the hostel does not exist.
    NotAuthorized
        If ``landlord_id`` does not own the hostel.
    """
    hostel = db.get(models.Hostel, hostel_id)
    if hostel is None:
        raise HostelNotFound()
    if hostel.landlord_id != landlord_id:
        raise NotAuthorized("Not authorized to view bookings for this hostel")

    q = (
        db.query(models.Booking)
        .filter(models.Booking.hostel_id == hostel_id)
        .filter(models.Booking.is_active.is_(True))
    )
    if status is not None:
        q = q.filter(models.Booking.status == status)
    else:
        q = q.filter(models.Booking.status.in_(models.BLOCKING_STATUSES))
    return _paginate(q, page, limit)


def list_all_bookings(
    db: Session,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    status: Optional[models.BookingStatus] = None,
    hostel_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Administrator view over every booking, including inactive ones."""
    q = db.query(models.Booking)
    if status is not None:
        q = q.filter(models.Booking.status == status)
    if hostel_id is not None:
        q = q.filter(models.Booking.hostel_id == hostel_id)
    return _paginate(q, page, limit)


def get_booking(db: Session, booking_id: int, user_id: int, role: str) -> models.Booking:
    """
    Fetch one booking for a caller allowed to see it.

    The booking's student, the hostel's landlord and administrators may
    read it.

    Raises
    ------
    BookingNotFound
    NotAuthorized
    """
    booking = (
        db.query(models.Booking)
        .options(joinedload(models.Booking.room), joinedload(models.Booking.hostel))
        .filter(models.Booking.id == booking_id)
        .first()
    )
    if booking is None:
        raise BookingNotFound()

    is_student = booking.student_id == user_id
    is_landlord = booking.hostel is not None and booking.hostel.landlord_id == user_id

    if not (is_student or is_landlord or role == "admin"):
        raise NotAuthorized("Not authorized to view this booking")

    return booking
