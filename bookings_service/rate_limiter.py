# bookings_service/rate_limiter.py
import threading
import time
from typing import Any, Dict, List

from fastapi import Depends, HTTPException, status

from . import config
from .auth import get_current_user_claims

_user_request_log: Dict[int, List[float]] = {}
_log_lock = threading.Lock()


def reset_rate_limits() -> None:
    with _log_lock:
        _user_request_log.clear()


def _drop_idle_users(window_start: float) -> None:
    # callers hold _log_lock
    idle = [uid for uid, stamps in _user_request_log.items() if not stamps or stamps[-1] < window_start]
    for uid in idle:
        _user_request_log.pop(uid, None)


def booking_rate_limiter(claims: Dict[str, Any] = Depends(get_current_user_claims)):
    """
    Rate limit booking requests per authenticated student.

    Sliding window of ``BOOKING_RATE_LIMIT_MAX`` requests per
    ``BOOKING_RATE_LIMIT_WINDOW_SECONDS`` (10 per hour by default).
    """
    if config.is_testing():
        return

    user_id = claims["user_id"]
    now = time.time()
    window_start = now - config.BOOKING_RATE_LIMIT_WINDOW_SECONDS

    with _log_lock:
        _drop_idle_users(window_start)
        timestamps = [ts for ts in _user_request_log.get(user_id, []) if ts >= window_start]

        if len(timestamps) >= config.BOOKING_RATE_LIMIT_MAX:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many booking attempts. Please try again later.",
            )

        timestamps.append(now)
        _user_request_log[user_id] = timestamps
