import math
from datetime import timedelta

import pytest
from bson import ObjectId
from fastapi import HTTPException

import bookings
from conftest import future, iso, utcnow


def book(client, headers, car_id, start, end):
    return client.post(
        "/api/bookings",
        headers=headers,
        json={"car_id": car_id, "start_date": iso(start), "end_date": iso(end)},
    )


def test_create_booking_is_confirmed_and_priced_by_started_days(client, make_user, make_car):
    _, headers, _ = make_user()
    car_id = make_car(price_per_day=40)
    start = future(days=2)
    end = start + timedelta(days=2, hours=3)
    res = book(client, headers, car_id, start, end)
    assert res.status_code == 201
    booking = res.json()["booking"]
    assert booking["status"] == "confirmed"
    expected_days = math.ceil((end - start).total_seconds() / 86400)
    assert expected_days == 3
    assert booking["total_price"] == expected_days * 40
    assert booking["car"]["id"] == car_id


def test_requires_authentication(client, make_car):
    car_id = make_car()
    res = client.post("/api/bookings", json={"car_id": car_id, "start_date": iso(future(1)), "end_date": iso(future(2))})
    assert res.status_code == 401


@pytest.mark.parametrize(
    "start_offset,end_offset",
    [
        (2, 1),   # end before start
        (2, 2),   # empty window
        (-1, 2),  # start in the past
    ],
)
def test_rejects_bad_windows(client, make_user, make_car, start_offset, end_offset):
    _, headers, _ = make_user()
    car_id = make_car()
    res = book(client, headers, car_id, future(start_offset), future(end_offset))
    assert res.status_code == 400


def test_rejects_missing_and_unparseable_dates(client, make_user, make_car):
    _, headers, _ = make_user()
    car_id = make_car()
    res = client.post("/api/bookings", headers=headers, json={"car_id": car_id, "start_date": "tomorrow", "end_date": iso(future(3))})
    assert res.status_code == 400
    res = client.post("/api/bookings", headers=headers, json={"car_id": car_id})
    assert res.status_code == 400


def test_unknown_car_is_404(client, make_user):
    _, headers, _ = make_user()
    res = book(client, headers, str(ObjectId()), future(1), future(2))
    assert res.status_code == 404


def test_overlapping_booking_is_rejected(client, make_user, make_car):
    _, a_headers, _ = make_user()
    _, b_headers, _ = make_user()
    car_id = make_car()
    day = future(days=10).replace(hour=0, minute=0, second=0)
    a_start, a_end = day + timedelta(hours=10), day + timedelta(days=2, hours=10)
    assert book(client, a_headers, car_id, a_start, a_end).status_code == 201

    res = book(client, b_headers, car_id, day + timedelta(days=1), day + timedelta(days=3))
    assert res.status_code == 400
    assert res.json()["message"] == "Car is not available for the selected dates."


def test_touching_boundaries_conflict(client, make_user, make_car):
    _, headers, _ = make_user()
    car_id = make_car()
    start = future(days=5)
    end = start + timedelta(days=1)
    assert book(client, headers, car_id, start, end).status_code == 201
    assert book(client, headers, car_id, end, end + timedelta(days=1)).status_code == 400


def test_canceled_booking_frees_the_window(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    car_id = make_car()
    start = future(days=5)
    end = start + timedelta(days=1)
    make_booking(user["id"], car_id, start, end, status="canceled")
    assert book(client, headers, car_id, start, end).status_code == 201


def test_other_cars_do_not_conflict(client, make_user, make_car):
    _, headers, _ = make_user()
    start, end = future(3), future(4)
    assert book(client, headers, make_car(), start, end).status_code == 201
    assert book(client, headers, make_car(), start, end).status_code == 201


def test_busy_booking_lock_yields_409(client, make_user, make_car, mongo_db, monkeypatch):
    _, headers, _ = make_user()
    car_id = make_car()
    monkeypatch.setattr(bookings, "LOCK_ATTEMPTS", 2)
    monkeypatch.setattr(bookings, "LOCK_RETRY_DELAY", 0)
    mongo_db["car"].update_one(
        {"_id": ObjectId(car_id)},
        {"$set": {"booking_lock": {"token": "other", "expires_at": utcnow() + timedelta(minutes=1)}}},
    )
    res = book(client, headers, car_id, future(2), future(3))
    assert res.status_code == 409
    assert mongo_db["booking"].count_documents({}) == 0


def test_expired_lock_is_taken_over_and_released(client, make_user, make_car, mongo_db):
    _, headers, _ = make_user()
    car_id = make_car()
    mongo_db["car"].update_one(
        {"_id": ObjectId(car_id)},
        {"$set": {"booking_lock": {"token": "stale", "expires_at": utcnow() - timedelta(minutes=1)}}},
    )
    assert book(client, headers, car_id, future(2), future(3)).status_code == 201
    assert "booking_lock" not in mongo_db["car"].find_one({"_id": ObjectId(car_id)})


def test_lock_serializes_check_and_insert(mongo_db, make_car, monkeypatch):
    """A second request arriving while the first holds the lock cannot slip in."""
    car_id = make_car()
    monkeypatch.setattr(bookings, "LOCK_ATTEMPTS", 1)
    user = {"id": str(ObjectId())}
    with bookings.car_booking_lock(mongo_db, ObjectId(car_id)):
        with pytest.raises(HTTPException) as exc:
            bookings.create_booking(mongo_db, user, car_id, future(2), future(3))
        assert exc.value.status_code == 409
    bookings.create_booking(mongo_db, user, car_id, future(2), future(3))
    with pytest.raises(HTTPException) as exc:
        bookings.create_booking(mongo_db, user, car_id, future(2), future(3))
    assert exc.value.status_code == 400


def test_listing_completes_expired_bookings_persistently(client, make_user, make_car, make_booking, mongo_db):
    user, headers, _ = make_user()
    car_id = make_car()
    past_start = utcnow() - timedelta(days=3)
    booking_id = make_booking(user["id"], car_id, past_start, past_start + timedelta(days=1))

    res = client.get("/api/bookings", headers=headers)
    assert res.status_code == 200
    assert res.json()[0]["status"] == "completed"
    assert mongo_db["booking"].find_one({"_id": ObjectId(booking_id)})["status"] == "completed"
    assert client.get("/api/bookings", headers=headers).json()[0]["status"] == "completed"


def test_listing_only_touches_own_bookings(client, make_user, make_car, make_booking, mongo_db):
    user, headers, _ = make_user()
    other, _, _ = make_user()
    car_id = make_car()
    past = utcnow() - timedelta(days=3)
    other_id = make_booking(other["id"], car_id, past, past + timedelta(days=1))
    client.get("/api/bookings", headers=headers)
    assert mongo_db["booking"].find_one({"_id": ObjectId(other_id)})["status"] == "confirmed"


def test_admin_listing(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    _, admin_headers, _ = make_user(role="admin")
    make_booking(user["id"], make_car(), future(1), future(2))
    assert client.get("/api/bookings/all", headers=headers).status_code == 403
    res = client.get("/api/bookings/all", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()[0]["user"]["id"] == user["id"]


def test_owner_can_cancel_once(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    booking_id = make_booking(user["id"], make_car(), future(1), future(2))
    res = client.put(f"/api/bookings/{booking_id}/status", headers=headers, json={"status": "canceled"})
    assert res.status_code == 200
    assert res.json()["booking"]["status"] == "canceled"
    again = client.put(f"/api/bookings/{booking_id}/status", headers=headers, json={"status": "canceled"})
    assert again.status_code == 400


@pytest.mark.parametrize("status", ["confirmed", "completed", "pending"])
def test_owner_cannot_set_other_statuses(client, make_user, make_car, make_booking, status):
    user, headers, _ = make_user()
    booking_id = make_booking(user["id"], make_car(), future(1), future(2))
    res = client.put(f"/api/bookings/{booking_id}/status", headers=headers, json={"status": status})
    assert res.status_code == 403


def test_stranger_cannot_cancel(client, make_user, make_car, make_booking):
    owner, _, _ = make_user()
    _, stranger_headers, _ = make_user()
    booking_id = make_booking(owner["id"], make_car(), future(1), future(2))
    res = client.put(f"/api/bookings/{booking_id}/status", headers=stranger_headers, json={"status": "canceled"})
    assert res.status_code == 403


def test_invalid_status_value(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    booking_id = make_booking(user["id"], make_car(), future(1), future(2))
    res = client.put(f"/api/bookings/{booking_id}/status", headers=headers, json={"status": "archived"})
    assert res.status_code == 400


def test_admin_can_reconfirm_unless_it_overlaps(client, make_user, make_car, make_booking):
    user, _, _ = make_user()
    _, admin_headers, _ = make_user(role="admin")
    car_id = make_car()
    canceled = make_booking(user["id"], car_id, future(1), future(3), status="canceled")
    res = client.put(f"/api/bookings/{canceled}/status", headers=admin_headers, json={"status": "confirmed"})
    assert res.status_code == 200
    assert res.json()["booking"]["status"] == "confirmed"

    other = make_booking(user["id"], car_id, future(2), future(4), status="canceled")
    res = client.put(f"/api/bookings/{other}/status", headers=admin_headers, json={"status": "confirmed"})
    assert res.status_code == 400


def test_admin_may_set_arbitrary_status(client, make_user, make_car, make_booking):
    user, _, _ = make_user()
    _, admin_headers, _ = make_user(role="admin")
    booking_id = make_booking(user["id"], make_car(), future(1), future(2), status="completed")
    res = client.put(f"/api/bookings/{booking_id}/status", headers=admin_headers, json={"status": "pending"})
    assert res.status_code == 200
    assert res.json()["booking"]["status"] == "pending"


def test_delete_booking_permissions(client, make_user, make_car, make_booking, mongo_db):
    owner, owner_headers, _ = make_user()
    _, stranger_headers, _ = make_user()
    _, admin_headers, _ = make_user(role="admin")
    car_id = make_car()
    first = make_booking(owner["id"], car_id, future(1), future(2))
    second = make_booking(owner["id"], car_id, future(5), future(6))

    assert client.delete(f"/api/bookings/{first}", headers=stranger_headers).status_code == 403
    assert client.delete(f"/api/bookings/{first}", headers=owner_headers).status_code == 200
    assert client.delete(f"/api/bookings/{second}", headers=admin_headers).status_code == 200
    assert mongo_db["booking"].count_documents({}) == 0
    assert client.delete(f"/api/bookings/{first}", headers=owner_headers).status_code == 404
