from datetime import datetime, timedelta

from line_profiler import profile

from bookings_service.database import SessionLocal
from bookings_service.exceptions import PeriodUnavailable, RoomUnavailable
from bookings_service.lifecycle import BookingLifecycleEngine
from profiling_app_cpu import LANDLORD_ID, reset_db, seed_rooms

lifecycle = BookingLifecycleEngine(SessionLocal)


@profile
def scenario_lifecycle_line():
    # keep this small enough that output is readable
    room_ids = seed_rooms(3)
    start = datetime(2031, 1, 1)
    for i in range(30):
        room_id = room_ids[i % len(room_ids)]
        period_start = start + timedelta(days=(i // 3) * 5)
        try:
            booking = lifecycle.create_booking(room_id, i + 1, period_start, period_start + timedelta(days=7))
        except (PeriodUnavailable, RoomUnavailable):
            continue
        if i % 4 == 0:
            lifecycle.decide_booking(booking.id, LANDLORD_ID, "approve")
        elif i % 4 == 1:
            lifecycle.cancel_booking(booking.id, i + 1)
    lifecycle.expire_old_bookings(now=datetime(2040, 1, 1))


if __name__ == "__main__":
    reset_db()
    scenario_lifecycle_line()
