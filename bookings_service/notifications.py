import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from jose import jwt

from . import config
from .circuit_breaker import CircuitBreaker, notifications_circuit_breaker

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_USERNAME = "bookings_service"
SERVICE_ACCOUNT_USER_ID = 0
SERVICE_ACCOUNT_ROLE = "service_account"


def make_service_account_token() -> str:
    payload = {
        "sub": SERVICE_ACCOUNT_USERNAME,
        "role": SERVICE_ACCOUNT_ROLE,
        "user_id": SERVICE_ACCOUNT_USER_ID,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


class NotificationDispatcher:
    """
    Deliver booking events to the external Notifications service.

    Delivery is best effort: it runs after the booking transaction has
    committed, so a failed or refused call is logged and dropped.

    Parameters
    ----------
    base_url : Optional[str]
        Root URL of the Notifications service. When None, notifications are
        only logged.
    timeout : float
        Per-request timeout in seconds.
    breaker : CircuitBreaker
        Guards the outbound call.
    client : Optional[httpx.Client]
        Injected HTTP client (tests pass one with a mock transport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 5.0,
        breaker: CircuitBreaker = notifications_circuit_breaker,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.breaker = breaker
        self.client = client

    def notify(self, user_id: int, title: str, message: str, type: str = "booking") -> bool:
        """
        Send one notification.

        Returns
        -------
        bool
            True if the Notifications service accepted it.
        """
        if not user_id:
            return False

        if self.base_url is None:
            logger.info("Notification for user %s: %s - %s", user_id, title, message)
            return False

        if not self.breaker.allow_request():
            logger.warning(
                "Skipping notification '%s' for user %s: circuit %s is open",
                title, user_id, self.breaker.name,
            )
            return False

        body = {"user_id": user_id, "title": title, "message": message, "type": type}
        headers = {"Authorization": f"Bearer {make_service_account_token()}"}
        url = f"{self.base_url}/api/v1/notifications"

        try:
            if self.client is not None:
                resp = self.client.post(url, json=body, headers=headers, timeout=self.timeout)
            else:
                resp = httpx.post(url, json=body, headers=headers, timeout=self.timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self.breaker.record_failure()
            logger.warning("Failed to contact notifications service: %s", exc)
            return False

        if resp.status_code >= 400:
            self.breaker.record_failure()
            logger.warning(
                "Notifications service returned %s for '%s'", resp.status_code, title
            )
            return False

        self.breaker.record_success()
        return True


# ---------- Booking event messages ----------


def _booking_label(hostel, room) -> str:
    hostel_name = getattr(hostel, "name", None) or "the hostel"
    room_number = getattr(room, "room_number", None)
    room_label = f"Room {room_number}" if room_number else "the selected room"
    return f"{hostel_name} ({room_label})"


def _hostel_name(hostel) -> str:
    return getattr(hostel, "name", None) or "the hostel"


def booking_submitted(notifier: NotificationDispatcher, booking, hostel, room) -> None:
    label = _booking_label(hostel, room)
    notifier.notify(
        booking.student_id,
        "Booking request submitted",
        f"Your booking request for {label} was submitted and is awaiting approval.",
    )
    if hostel is not None:
        notifier.notify(
            hostel.landlord_id,
            "New booking request",
            f"A student submitted a booking request for {label}.",
        )


def booking_decided(notifier: NotificationDispatcher, booking, hostel, action: str) -> None:
    status_label = "approved" if action == "approve" else "rejected"
    notifier.notify(
        booking.student_id,
        f"Booking {status_label}",
        f"Your booking request for {_hostel_name(hostel)} was {status_label}.",
    )


def booking_cancelled(notifier: NotificationDispatcher, booking, hostel, by_admin: bool = False) -> None:
    hostel_name = _hostel_name(hostel)
    if by_admin:
        notifier.notify(
            booking.student_id,
            "Booking cancelled",
            f"Your booking for {hostel_name} was cancelled by an administrator.",
        )
        return

    notifier.notify(
        booking.student_id,
        "Booking cancelled",
        f"Your booking request for {hostel_name} has been cancelled.",
    )
    if hostel is not None:
        notifier.notify(
            hostel.landlord_id,
            "Booking cancelled by student",
            f"A booking request for {hostel_name} was cancelled by the student.",
        )


def booking_expired(notifier: NotificationDispatcher, student_id: int, hostel_name: Optional[str]) -> None:
    notifier.notify(
        student_id,
        "Booking expired",
        f"Your booking request for {hostel_name or 'the hostel'} has expired. "
        "Please submit a new request if needed.",
    )
