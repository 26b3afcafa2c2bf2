"""
Booking lifecycle engine.

The engine is the only writer of booking status and of room availability.
Each public operation runs as one transaction that first takes the room's
write lock (see :mod:`bookings_service.availability`), so concurrent
requests touching the same room are serialized and the loser re-reads the
state the winner committed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from . import models
from . import notifications
from .availability import lock_room, refresh_availability
from .exceptions import (
    BookingError,
    BookingNotFound,
    HostelNotApproved,
    HostelNotFound,
    InvalidAction,
    InvalidPeriod,
    InvalidTransition,
    NotAuthorized,
    PeriodUnavailable,
    RoomInactive,
    RoomNotFound,
    RoomUnavailable,
)
from .overlap import calculate_total, has_conflict

logger = logging.getLogger(__name__)

DECISION_ACTIONS = ("approve", "reject")


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to the naive UTC form stored in the database."""
    if value.tzinfo is None:
        return value
    return (value - value.utcoffset()).replace(tzinfo=None)


def _clean_reason(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    reason = str(reason).strip()
    return reason or None


class BookingLifecycleEngine:
    """
    Orchestrates booking creation, decisions, cancellations and expiry.

    Parameters
    ----------
    session_factory : sessionmaker
        Factory for SQLAlchemy sessions; one session is opened per attempt.
    expiry_window : timedelta
        How long a pending booking waits for a decision before it expires.
    notifier : Optional[NotificationDispatcher]
        Receives booking events after commit. Defaults to a log-only
        dispatcher.
    clock : Callable[[], datetime]
        Source of "now" as naive UTC.
    max_retries : int
        Attempts for a unit that fails with a transient database error.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        expiry_window: timedelta = timedelta(hours=24),
        notifier: Optional[notifications.NotificationDispatcher] = None,
        clock: Callable[[], datetime] = models.utcnow,
        max_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.expiry_window = expiry_window
        self.notifier = notifier or notifications.NotificationDispatcher()
        self.clock = clock
        self.max_retries = max(1, max_retries)

    # ---------- Atomic unit ----------

    def _run_atomic(self, operation: str, work: Callable[[Session], Any]) -> Any:
        """
        Run ``work`` inside one transaction, retrying transient failures.

        Domain errors roll back and propagate on the first attempt.
        ``OperationalError`` (deadlock, serialization failure, SQLite busy)
        rolls back and is retried up to ``max_retries`` attempts.
        """
        for attempt in range(1, self.max_retries + 1):
            db = self.session_factory()
            try:
                result = work(db)
                db.commit()
                return result
            except BookingError:
                db.rollback()
                raise
            except OperationalError as exc:
                db.rollback()
                if attempt >= self.max_retries:
                    logger.error("%s failed after %d attempts: %s", operation, attempt, exc)
                    raise
                logger.warning(
                    "%s hit a transient database error (attempt %d/%d), retrying: %s",
                    operation, attempt, self.max_retries, exc,
                )
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def _lock_booking(self, db: Session, booking_id: int) -> models.Booking:
        """
        Lock the booking's room, then re-read the booking under that lock.

        ``room`` and ``hostel`` are attached while the session is open so
        the returned booking stays readable after the session closes.
        """
        room_id = (
            db.query(models.Booking.room_id)
            .filter(models.Booking.id == booking_id)
            .scalar()
        )
        if room_id is None:
            raise BookingNotFound()

        room = lock_room(db, room_id)

        # a concurrent transition committed before we got the lock is visible here
        booking = (
            db.query(models.Booking)
            .filter(models.Booking.id == booking_id)
            .populate_existing()
            .with_for_update()
            .one()
        )
        booking.room = room
        booking.hostel = db.get(models.Hostel, booking.hostel_id)
        return booking

    # ---------- Create ----------

    def create_booking(
        self,
        room_id: int,
        student_id: int,
        start_date: datetime,
        end_date: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> models.Booking:
        """
        Place a pending booking on a room.

        Checks run in this order, each with its own error: period is valid,
        room exists, room is active, room is available, hostel exists and is
        approved, no overlapping pending/approved booking. Room availability
        is left untouched; only approval locks the room.

        Returns
        -------
        Booking
            The new booking with ``room`` and ``hostel`` loaded.

        Raises
        ------
        InvalidPeriod, RoomNotFound, RoomInactive, RoomUnavailable,
        HostelNotFound, HostelNotApproved, PeriodUnavailable
        """
        start_date = to_naive_utc(start_date)
        end_date = to_naive_utc(end_date)
        if start_date >= end_date:
            raise InvalidPeriod()

        metadata = metadata or {}

        def work(db: Session) -> Tuple[models.Booking, models.Hostel, models.Room]:
            room = lock_room(db, room_id)
            if room is None:
                raise RoomNotFound()
            if not room.is_active:
                raise RoomInactive()
            if not room.is_available:
                raise RoomUnavailable()

            hostel = db.get(models.Hostel, room.hostel_id)
            if hostel is None:
                raise HostelNotFound()
            if hostel.verification_status != models.VerificationStatus.APPROVED:
                raise HostelNotApproved()

            if has_conflict(db, room.id, start_date, end_date):
                raise PeriodUnavailable()

            now = self.clock()
            booking = models.Booking(
                student_id=student_id,
                hostel_id=hostel.id,
                room_id=room.id,
                start_date=start_date,
                end_date=end_date,
                status=models.BookingStatus.PENDING,
                total_amount=calculate_total(room.price_amount, start_date, end_date),
                currency=room.currency,
                is_active=True,
                locked_at=now,
                expires_at=now + self.expiry_window,
                source=metadata.get("source") or "web",
                ip_address=metadata.get("ip_address"),
                user_agent=metadata.get("user_agent"),
                version=1,
                created_at=now,
                updated_at=now,
            )
            booking.room = room
            booking.hostel = hostel
            db.add(booking)
            db.flush()
            return booking, hostel, room

        booking, hostel, room = self._run_atomic("create_booking", work)
        logger.info(
            "Booking %s created for room %s by student %s (%s - %s)",
            booking.id, room.id, student_id, start_date.isoformat(), end_date.isoformat(),
        )
        notifications.booking_submitted(self.notifier, booking, hostel, room)
        return booking

    # ---------- Decide ----------

    def decide_booking(
        self,
        booking_id: int,
        landlord_id: int,
        action: str,
        reason: Optional[str] = None,
    ) -> models.Booking:
        """
        Approve or reject a pending booking on behalf of the hostel's landlord.

        Approving sets the room unavailable in the same transaction.

        Raises
        ------
        InvalidAction, BookingNotFound, NotAuthorized, InvalidTransition,
        RoomUnavailable, PeriodUnavailable
        """
        if action not in DECISION_ACTIONS:
            raise InvalidAction()

        def work(db: Session) -> Tuple[models.Booking, models.Hostel]:
            booking = self._lock_booking(db, booking_id)

            hostel = booking.hostel
            if hostel is None or hostel.landlord_id != landlord_id:
                raise NotAuthorized("Not authorized to make decisions on this booking")

            if not booking.can_be_decided():
                raise InvalidTransition("Booking cannot be decided at this time")

            room = booking.room
            if action == "approve":
                if room is None or not room.is_active or not room.is_available:
                    raise RoomUnavailable("Room is not available for approval")
                if has_conflict(
                    db,
                    booking.room_id,
                    booking.start_date,
                    booking.end_date,
                    exclude_booking_id=booking.id,
                ):
                    raise PeriodUnavailable("Room is already booked for this period")
                booking.status = models.BookingStatus.APPROVED
            else:
                booking.status = models.BookingStatus.REJECTED

            now = self.clock()
            booking.decided_by = landlord_id
            booking.decided_at = now
            booking.decision_reason = _clean_reason(reason)
            booking.updated_at = now
            booking.touch_version()

            if action == "approve":
                refresh_availability(db, room)

            return booking, hostel

        booking, hostel = self._run_atomic("decide_booking", work)
        logger.info(
            "Booking %s %s by landlord %s", booking.id, booking.status.value, landlord_id
        )
        notifications.booking_decided(self.notifier, booking, hostel, action)
        return booking

    # ---------- Cancel ----------

    def cancel_booking(
        self,
        booking_id: int,
        student_id: int,
        reason: Optional[str] = None,
    ) -> models.Booking:
        """
        Cancel a pending or approved booking on behalf of its student.

        If the booking was approved, the room's availability is recomputed
        in the same transaction and normally becomes true again.

        Raises
        ------
        BookingNotFound, NotAuthorized, InvalidTransition
        """

        def work(db: Session) -> Tuple[models.Booking, Optional[models.Hostel]]:
            booking = self._lock_booking(db, booking_id)

            if booking.student_id != student_id:
                raise NotAuthorized("Not authorized to cancel this booking")

            if not booking.can_be_cancelled():
                raise InvalidTransition("Booking cannot be cancelled at this time")

            previous_status = booking.status
            self._mark_cancelled(booking, student_id, reason)

            if previous_status == models.BookingStatus.APPROVED:
                refresh_availability(db, booking.room)

            hostel = booking.hostel
            return booking, hostel

        booking, hostel = self._run_atomic("cancel_booking", work)
        logger.info("Booking %s cancelled by student %s", booking.id, student_id)
        notifications.booking_cancelled(self.notifier, booking, hostel)
        return booking

    def force_cancel_booking(
        self,
        booking_id: int,
        admin_id: int,
        reason: Optional[str] = None,
    ) -> models.Booking:
        """
        Administrator cancellation: no ownership check, deactivates the booking.

        Raises
        ------
        BookingNotFound, InvalidTransition
        """

        def work(db: Session) -> Tuple[models.Booking, Optional[models.Hostel]]:
            booking = self._lock_booking(db, booking_id)

            if not booking.can_be_cancelled():
                raise InvalidTransition("Booking is already in a final status")

            previous_status = booking.status
            self._mark_cancelled(booking, admin_id, reason)
            booking.is_active = False

            if previous_status == models.BookingStatus.APPROVED:
                refresh_availability(db, booking.room)

            hostel = booking.hostel
            return booking, hostel

        booking, hostel = self._run_atomic("force_cancel_booking", work)
        logger.info("Booking %s force-cancelled by admin %s", booking.id, admin_id)
        notifications.booking_cancelled(self.notifier, booking, hostel, by_admin=True)
        return booking

    def _mark_cancelled(self, booking: models.Booking, actor_id: int, reason: Optional[str]) -> None:
        now = self.clock()
        booking.status = models.BookingStatus.CANCELLED
        booking.cancelled_by = actor_id
        booking.cancelled_at = now
        booking.cancellation_reason = _clean_reason(reason)
        booking.updated_at = now
        booking.touch_version()

    # ---------- Expire ----------

    def expire_old_bookings(self, now: Optional[datetime] = None) -> int:
        """
        Expire every pending booking whose decision deadline has passed.

        Matches ``status = pending AND is_active AND expires_at < now`` and
        moves all of them to ``expired`` with ``is_active = False`` in one
        transaction. Room availability is not touched. Safe to run
        repeatedly or concurrently: candidate rows are locked with SKIP
        LOCKED where supported and the UPDATE re-checks the predicate.

        Returns
        -------
        int
            Number of bookings expired by this call.
        """
        now = to_naive_utc(now) if now is not None else self.clock()

        predicate = (
            models.Booking.status == models.BookingStatus.PENDING,
            models.Booking.is_active.is_(True),
            models.Booking.expires_at < now,
        )

        def work(db: Session):
            candidates = (
                db.query(models.Booking.id, models.Booking.student_id, models.Hostel.name)
                .join(models.Hostel, models.Hostel.id == models.Booking.hostel_id)
                .filter(*predicate)
                .with_for_update(skip_locked=True, of=models.Booking)
                .all()
            )
            if not candidates:
                return 0, []

            result = db.execute(
                update(models.Booking)
                .where(models.Booking.id.in_([c.id for c in candidates]), *predicate)
                .values(
                    status=models.BookingStatus.EXPIRED,
                    is_active=False,
                    version=models.Booking.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount, candidates

        count, expired = self._run_atomic("expire_old_bookings", work)
        if count:
            logger.info("Expired %d pending bookings", count)
        for row in expired:
            notifications.booking_expired(self.notifier, row.student_id, row.name)
        return count
