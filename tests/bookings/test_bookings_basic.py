from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from bookings_service import config, models
from bookings_service.main import app, ensure_period_valid, get_lifecycle_engine

client = TestClient(app)

LANDLORD_ID = 100
STUDENT_A = 1
STUDENT_B = 2
ADMIN_ID = 999


def make_token(user_id: int, username: str, role: str) -> str:
    payload = {
        "sub": username,
        "role": role,
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def auth(user_id: int, role: str):
    token = make_token(user_id=user_id, username=f"{role}{user_id}", role=role)
    return {"Authorization": f"Bearer {token}"}


def book(room_id: int, user_id: int, start: str, end: str):
    body = {"start_date": start, "end_date": end}
    return client.post(f"/api/v1/rooms/{room_id}/book", json=body, headers=auth(user_id, "student"))


def test_root_health_check():
    res = client.get("/")
    assert res.status_code == 200
    assert res.json() == {"service": "bookings", "status": "running"}


def test_student_can_create_booking(make_room):
    room = make_room()

    res = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-31T00:00:00")

    assert res.status_code == 201, res.text
    data = res.json()
    assert data["status"] == "pending"
    assert data["student_id"] == STUDENT_A
    assert data["room_id"] == room.id
    assert data["hostel"]["name"] == "Sunrise Hostel"
    assert data["room"]["room_number"] == room.room_number
    assert data["source"] == "web"
    assert data["version"] == 1
    assert float(data["total_amount"]) == 3000.0


def test_create_booking_requires_token(make_room):
    room = make_room()
    body = {"start_date": "2031-01-01T00:00:00", "end_date": "2031-01-31T00:00:00"}

    res = client.post(f"/api/v1/rooms/{room.id}/book", json=body)

    assert res.status_code in (401, 403)


def test_landlord_cannot_create_booking(make_room):
    room = make_room()
    body = {"start_date": "2031-01-01T00:00:00", "end_date": "2031-01-31T00:00:00"}

    res = client.post(f"/api/v1/rooms/{room.id}/book", json=body, headers=auth(LANDLORD_ID, "landlord"))

    assert res.status_code == 403
    assert res.json()["detail"] == "Not enough permissions"


def test_invalid_token_is_rejected(make_room):
    room = make_room()
    headers = {"Authorization": "Bearer not-a-token"}
    body = {"start_date": "2031-01-01T00:00:00", "end_date": "2031-01-31T00:00:00"}

    res = client.post(f"/api/v1/rooms/{room.id}/book", json=body, headers=headers)

    assert res.status_code == 401


def test_create_booking_validates_period(make_room):
    room = make_room()

    res = book(room.id, STUDENT_A, "2031-01-10T00:00:00", "2031-01-01T00:00:00")
    assert res.status_code == 400
    assert res.json()["detail"] == "end_date must be after start_date"

    res = book(room.id, STUDENT_A, "2020-01-01T00:00:00", "2020-01-10T00:00:00")
    assert res.status_code == 400
    assert res.json()["detail"] == "Start date must be in the future"


def test_ensure_period_valid_allows_past_when_not_required():
    ensure_period_valid(datetime(2020, 1, 1), datetime(2020, 1, 2), require_future=False)


def test_cannot_create_overlapping_booking(make_room):
    room = make_room()

    res1 = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00")
    assert res1.status_code == 201

    res2 = book(room.id, STUDENT_B, "2031-01-10T00:00:00", "2031-01-20T00:00:00")
    assert res2.status_code == 400
    body = res2.json()
    assert body["error"] == "period_unavailable"
    assert body["service"] == "bookings"
    assert body["path"] == f"/api/v1/rooms/{room.id}/book"


def test_booking_missing_room_is_404():
    res = book(4242, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00")

    assert res.status_code == 404
    assert res.json()["error"] == "room_not_found"


def test_booking_in_unapproved_hostel_is_400(make_hostel, make_room):
    hostel = make_hostel(verification_status=models.VerificationStatus.PENDING)
    room = make_room(hostel=hostel)

    res = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00")

    assert res.status_code == 400
    assert res.json()["error"] == "hostel_not_approved"


def test_list_my_bookings_filters_by_student(make_room):
    room_a = make_room()
    room_b = make_room()
    assert book(room_a.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00").status_code == 201
    assert book(room_b.id, STUDENT_B, "2031-01-01T00:00:00", "2031-01-10T00:00:00").status_code == 201

    res = client.get("/api/v1/bookings/my", headers=auth(STUDENT_A, "student"))

    assert res.status_code == 200
    data = res.json()
    assert data["pagination"]["total"] == 1
    assert [b["student_id"] for b in data["bookings"]] == [STUDENT_A]


def test_list_my_bookings_pagination(make_room):
    for _ in range(3):
        room = make_room()
        assert book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00").status_code == 201

    res = client.get("/api/v1/bookings/my?page=2&limit=2", headers=auth(STUDENT_A, "student"))

    data = res.json()
    assert data["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(data["bookings"]) == 1


def test_student_can_cancel_own_booking(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00").json()

    res = client.patch(
        f"/api/v1/bookings/{created['id']}/cancel",
        json={"reason": "Plans changed"},
        headers=auth(STUDENT_A, "student"),
    )

    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "cancelled"
    assert data["cancellation_reason"] == "Plans changed"

    # the period is free again
    assert book(room.id, STUDENT_B, "2031-01-01T00:00:00", "2031-01-10T00:00:00").status_code == 201


def test_student_cannot_cancel_someone_elses_booking(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00").json()

    res = client.patch(f"/api/v1/bookings/{created['id']}/cancel", headers=auth(STUDENT_B, "student"))

    assert res.status_code == 403
    assert res.json()["error"] == "not_authorized"


def test_landlord_approves_and_room_locks(make_room, fetch):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-31T00:00:00").json()

    res = client.patch(
        f"/api/v1/bookings/{created['id']}/decision",
        json={"action": "approve"},
        headers=auth(LANDLORD_ID, "landlord"),
    )

    assert res.status_code == 200
    assert res.json()["status"] == "approved"
    assert res.json()["room"]["is_available"] is False
    assert fetch(models.Room, room.id).is_available is False

    again = client.patch(
        f"/api/v1/bookings/{created['id']}/decision",
        json={"action": "reject", "reason": "Too late"},
        headers=auth(LANDLORD_ID, "landlord"),
    )
    assert again.status_code == 400
    assert again.json()["error"] == "invalid_transition"


def test_rejection_requires_reason(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-31T00:00:00").json()

    res = client.patch(
        f"/api/v1/bookings/{created['id']}/decision",
        json={"action": "reject", "reason": "   "},
        headers=auth(LANDLORD_ID, "landlord"),
    )

    assert res.status_code == 400
    assert res.json()["detail"] == "Rejection reason is required"


def test_unknown_decision_action_is_422(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-31T00:00:00").json()

    res = client.patch(
        f"/api/v1/bookings/{created['id']}/decision",
        json={"action": "maybe"},
        headers=auth(LANDLORD_ID, "landlord"),
    )

    assert res.status_code == 422


def test_other_landlord_cannot_decide(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-31T00:00:00").json()

    res = client.patch(
        f"/api/v1/bookings/{created['id']}/decision",
        json={"action": "approve"},
        headers=auth(200, "landlord"),
    )

    assert res.status_code == 403


def test_landlord_lists_hostel_bookings(make_hostel, make_room):
    hostel = make_hostel()
    room = make_room(hostel=hostel)
    book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00")

    res = client.get(f"/api/v1/hostels/{hostel.id}/bookings", headers=auth(LANDLORD_ID, "landlord"))
    assert res.status_code == 200
    assert res.json()["pagination"]["total"] == 1

    other = client.get(f"/api/v1/hostels/{hostel.id}/bookings", headers=auth(200, "landlord"))
    assert other.status_code == 403

    missing = client.get("/api/v1/hostels/4242/bookings", headers=auth(LANDLORD_ID, "landlord"))
    assert missing.status_code == 404


def test_admin_lists_all_bookings(make_room):
    room_a = make_room()
    room_b = make_room()
    book(room_a.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00")
    book(room_b.id, STUDENT_B, "2031-01-01T00:00:00", "2031-01-10T00:00:00")

    res = client.get("/api/v1/admin/bookings", headers=auth(ADMIN_ID, "admin"))
    assert res.status_code == 200
    assert res.json()["pagination"]["total"] == 2

    filtered = client.get(
        f"/api/v1/admin/bookings?hostel_id={room_a.hostel_id}&status=pending",
        headers=auth(ADMIN_ID, "admin"),
    )
    assert filtered.json()["pagination"]["total"] == 1

    forbidden = client.get("/api/v1/admin/bookings", headers=auth(STUDENT_A, "student"))
    assert forbidden.status_code == 403


def test_admin_force_cancel(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00").json()

    res = client.patch(
        f"/api/v1/admin/bookings/{created['id']}/force-cancel",
        json={"reason": "Duplicate account"},
        headers=auth(ADMIN_ID, "admin"),
    )

    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "cancelled"
    assert data["is_active"] is False
    assert data["cancelled_by"] == ADMIN_ID

    # inactive bookings drop out of the student's list
    mine = client.get("/api/v1/bookings/my", headers=auth(STUDENT_A, "student"))
    assert mine.json()["pagination"]["total"] == 0


def test_get_booking_access(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00").json()
    url = f"/api/v1/bookings/{created['id']}"

    assert client.get(url, headers=auth(STUDENT_A, "student")).status_code == 200
    assert client.get(url, headers=auth(LANDLORD_ID, "landlord")).status_code == 200
    assert client.get(url, headers=auth(ADMIN_ID, "admin")).status_code == 200
    assert client.get(url, headers=auth(STUDENT_B, "student")).status_code == 403
    assert client.get("/api/v1/bookings/4242", headers=auth(ADMIN_ID, "admin")).status_code == 404


def test_availability_endpoint(make_room):
    room = make_room()
    book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-10T00:00:00")
    headers = auth(STUDENT_B, "student")

    busy = client.get(
        "/api/v1/bookings/availability",
        params={"room_id": room.id, "start_date": "2031-01-10T00:00:00", "end_date": "2031-01-20T00:00:00"},
        headers=headers,
    )
    free = client.get(
        "/api/v1/bookings/availability",
        params={"room_id": room.id, "start_date": "2031-01-11T00:00:00", "end_date": "2031-01-20T00:00:00"},
        headers=headers,
    )

    assert busy.json() == {"room_id": room.id, "available": False}
    assert free.json() == {"room_id": room.id, "available": True}


@pytest.mark.parametrize("role,expected", [("admin", 200), ("service_account", 200), ("student", 403)])
def test_expire_endpoint_roles(role, expected):
    res = client.post("/api/v1/bookings/expire", headers=auth(ADMIN_ID, role))

    assert res.status_code == expected
    if expected == 200:
        assert res.json() == {"expired": 0, "message": "Expired 0 bookings"}


def availability(room_id: int, start: str, end: str):
    return client.get(
        "/api/v1/bookings/availability",
        params={"room_id": room_id, "start_date": start, "end_date": end},
        headers=auth(STUDENT_B, "student"),
    )


def test_availability_of_room_locked_by_approval(make_room):
    room = make_room()
    created = book(room.id, STUDENT_A, "2031-01-01T00:00:00", "2031-01-31T00:00:00").json()
    client.patch(
        f"/api/v1/bookings/{created['id']}/decision",
        json={"action": "approve"},
        headers=auth(LANDLORD_ID, "landlord"),
    )

    # March does not overlap, but the room is held by the approved booking
    res = availability(room.id, "2031-03-01T00:00:00", "2031-03-31T00:00:00")
    assert res.status_code == 200
    assert res.json() == {"room_id": room.id, "available": False}

    attempt = book(room.id, STUDENT_B, "2031-03-01T00:00:00", "2031-03-31T00:00:00")
    assert attempt.json()["error"] == "room_unavailable"


def test_availability_of_inactive_room(make_room):
    room = make_room(is_active=False)

    res = availability(room.id, "2031-03-01T00:00:00", "2031-03-31T00:00:00")

    assert res.json() == {"room_id": room.id, "available": False}


def test_availability_of_missing_room_is_404():
    res = availability(4242, "2031-03-01T00:00:00", "2031-03-31T00:00:00")

    assert res.status_code == 404
    assert res.json()["error"] == "room_not_found"


def test_availability_answer_is_cached(make_room, memory_cache):
    room = make_room()

    assert availability(room.id, "2031-03-01T00:00:00", "2031-03-31T00:00:00").json()["available"] is True

    assert any(key.startswith(f"rooms:availability:{room.id}:") for key in memory_cache.store)


def test_expire_endpoint_clears_cached_availability(make_room, lifecycle, clock, memory_cache):
    room = make_room()
    lifecycle.create_booking(room.id, STUDENT_A, datetime(2031, 1, 1), datetime(2031, 1, 5))

    before = availability(room.id, "2031-01-01T00:00:00", "2031-01-05T00:00:00")
    assert before.json()["available"] is False

    clock.advance(hours=25)
    app.dependency_overrides[get_lifecycle_engine] = lambda: lifecycle
    try:
        res = client.post("/api/v1/bookings/expire", headers=auth(ADMIN_ID, "admin"))
    finally:
        app.dependency_overrides.pop(get_lifecycle_engine, None)
    assert res.json()["expired"] == 1

    after = availability(room.id, "2031-01-01T00:00:00", "2031-01-05T00:00:00")
    assert after.json()["available"] is True
