import cProfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi.testclient import TestClient
from jose import jwt

from bookings_service import config, models
from bookings_service.database import Base, SessionLocal, engine
from bookings_service.main import app

client = TestClient(app)

LANDLORD_ID = 100


def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def make_token(user_id: int, role: str) -> str:
    payload = {
        "sub": f"{role}{user_id}",
        "role": role,
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def seed_rooms(count: int):
    db = SessionLocal()
    try:
        hostel = models.Hostel(
            landlord_id=LANDLORD_ID,
            name="Profiling Hostel",
            verification_status=models.VerificationStatus.APPROVED,
        )
        db.add(hostel)
        db.flush()
        rooms = [
            models.Room(
                hostel_id=hostel.id,
                room_number=f"P{i}",
                capacity=2,
                price_amount=Decimal("4500.00"),
            )
            for i in range(count)
        ]
        db.add_all(rooms)
        db.commit()
        return [room.id for room in rooms]
    finally:
        db.close()


def scenario_bookings():
    """
    Students compete for a handful of rooms; the landlord approves the winners.
    """
    room_ids = seed_rooms(10)
    landlord_headers = {"Authorization": f"Bearer {make_token(LANDLORD_ID, 'landlord')}"}

    for student_id in range(1, 101):
        headers = {"Authorization": f"Bearer {make_token(student_id, 'student')}"}
        room_id = room_ids[student_id % len(room_ids)]
        month = 1 + (student_id % 12)
        r = client.post(
            f"/api/v1/rooms/{room_id}/book",
            json={
                "start_date": f"2031-{month:02d}-01T00:00:00",
                "end_date": f"2031-{month:02d}-20T00:00:00",
            },
            headers=headers,
        )

        # overlapping requests are expected to lose
        if r.status_code not in (201, 400):
            raise RuntimeError(f"Unexpected status on booking: {r.status_code}")

        if r.status_code == 201 and student_id % 3 == 0:
            decision = client.patch(
                f"/api/v1/bookings/{r.json()['id']}/decision",
                json={"action": "approve"},
                headers=landlord_headers,
            )
            if decision.status_code not in (200, 400):
                raise RuntimeError(f"Unexpected status on decision: {decision.status_code}")

    for room_id in room_ids:
        client.get(
            "/api/v1/bookings/availability",
            params={
                "room_id": room_id,
                "start_date": "2031-06-01T00:00:00",
                "end_date": "2031-06-10T00:00:00",
            },
            headers=landlord_headers,
        )


def main():
    reset_db()
    scenario_bookings()


if __name__ == "__main__":
    # run cProfile and sort by cumulative time
    cProfile.run("main()", sort="cumtime")
