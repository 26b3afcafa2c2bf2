"""
Errors raised by the booking lifecycle engine.

Every error carries a ``kind`` (machine-readable) and a human message. The
HTTP layer maps each family to a status code; the engine itself knows
nothing about HTTP.
"""


class BookingError(Exception):
    """Base class for every booking-domain failure."""

    kind = "booking_error"
    default_message = "Booking operation failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------- Not found ----------


class NotFoundError(BookingError):
    kind = "not_found"
    default_message = "Resource not found"


class RoomNotFound(NotFoundError):
    kind = "room_not_found"
    default_message = "Room not found"


class HostelNotFound(NotFoundError):
    kind = "hostel_not_found"
    default_message = "Hostel not found"


class BookingNotFound(NotFoundError):
    kind = "booking_not_found"
    default_message = "Booking not found"


# ---------- Authorization ----------


class NotAuthorized(BookingError):
    kind = "not_authorized"
    default_message = "Not authorized to perform this action"


# ---------- State machine ----------


class InvalidTransition(BookingError):
    kind = "invalid_transition"
    default_message = "Booking cannot be changed from its current status"


# ---------- Conflicts ----------


class ConflictError(BookingError):
    kind = "conflict"
    default_message = "Booking conflicts with existing bookings"


class PeriodUnavailable(ConflictError):
    kind = "period_unavailable"
    default_message = "Room is already booked for the selected period"


# ---------- Policy ----------


class PolicyViolation(BookingError):
    kind = "policy_violation"
    default_message = "Booking is not allowed"


class RoomInactive(PolicyViolation):
    kind = "room_inactive"
    default_message = "Room is not active"


class RoomUnavailable(PolicyViolation):
    kind = "room_unavailable"
    default_message = "Room is not available for booking"


class HostelNotApproved(PolicyViolation):
    kind = "hostel_not_approved"
    default_message = "Hostel is not approved for bookings"


# ---------- Validation ----------


class ValidationError(BookingError):
    kind = "validation_error"
    default_message = "Invalid booking request"


class InvalidPeriod(ValidationError):
    kind = "invalid_period"
    default_message = "end_date must be after start_date"


class InvalidAction(ValidationError):
    kind = "invalid_action"
    default_message = 'Action must be "approve" or "reject"'
