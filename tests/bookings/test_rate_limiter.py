from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from bookings_service import config, rate_limiter


@pytest.fixture
def limiter_clock(monkeypatch):
    clock = SimpleNamespace(now=1000.0)
    monkeypatch.setattr(rate_limiter, "time", SimpleNamespace(time=lambda: clock.now))
    monkeypatch.setattr(config, "is_testing", lambda: False)
    monkeypatch.setattr(config, "BOOKING_RATE_LIMIT_MAX", 2)
    monkeypatch.setattr(config, "BOOKING_RATE_LIMIT_WINDOW_SECONDS", 60)
    rate_limiter.reset_rate_limits()
    yield clock
    rate_limiter.reset_rate_limits()


def claims(user_id):
    return {"username": f"student{user_id}", "user_id": user_id, "role": "student"}


def test_limit_is_enforced_within_window(limiter_clock):
    rate_limiter.booking_rate_limiter(claims(1))
    rate_limiter.booking_rate_limiter(claims(1))

    with pytest.raises(HTTPException) as exc_info:
        rate_limiter.booking_rate_limiter(claims(1))
    assert exc_info.value.status_code == 429

    limiter_clock.now += 61
    rate_limiter.booking_rate_limiter(claims(1))


def test_idle_students_are_forgotten(limiter_clock):
    rate_limiter.booking_rate_limiter(claims(1))
    rate_limiter.booking_rate_limiter(claims(2))
    assert set(rate_limiter._user_request_log) == {1, 2}

    limiter_clock.now += 61
    rate_limiter.booking_rate_limiter(claims(3))

    assert set(rate_limiter._user_request_log) == {3}
