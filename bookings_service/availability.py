from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models


def lock_room(db: Session, room_id: int) -> Optional[models.Room]:
    """
    Take the per-room write lock for the current transaction.

    The lock is an ``UPDATE`` that bumps ``booking_version``: PostgreSQL
    holds the row lock until commit, SQLite already holds the database
    write lock from ``BEGIN IMMEDIATE``. Any transaction that reaches the
    overlap scan for this room after us therefore sees our committed
    booking.

    Parameters
    ----------
    db : Session
        Session with an open transaction.
    room_id : int
        Room to lock.

    Returns
    -------
    Optional[Room]
        The freshly re-read room, or None when no such room exists.
    """
    result = db.execute(
        update(models.Room)
        .where(models.Room.id == room_id)
        .values(booking_version=models.Room.booking_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    return (
        db.query(models.Room)
        .filter(models.Room.id == room_id)
        .populate_existing()
        .one()
    )


def has_approved_booking(db: Session, room_id: int) -> bool:
    q = (
        db.query(models.Booking)
        .filter(models.Booking.room_id == room_id)
        .filter(models.Booking.is_active.is_(True))
        .filter(models.Booking.status == models.BookingStatus.APPROVED)
    )
    return db.query(q.exists()).scalar()


def compute_availability(db: Session, room: models.Room) -> bool:
    """
    Derive whether a room can take new bookings.

    A room is available when it still has a free bed and no approved,
    active booking holds it. The room's own ``is_active`` flag is not part of the
    projection; inactive rooms are filtered separately.
    """
    if room.current_occupancy >= room.capacity:
        return False
    return not has_approved_booking(db, room.id)


def refresh_availability(db: Session, room: models.Room) -> bool:
    """Recompute ``room.is_available`` and stage the change on the session."""
    db.flush()
    room.is_available = compute_availability(db, room)
    db.add(room)
    return room.is_available
