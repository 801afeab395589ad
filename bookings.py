"""
Booking engine

Reservations for a car between a start and an end instant. Bookings are created
already confirmed, and confirmed bookings whose end has passed are flipped to
completed lazily when bookings are listed or reviewed.
"""

import logging
import math
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException

from auth import is_admin
from config import Config
from database import create_document, now, serialize_doc, to_object_id, to_utc_naive
from schemas import BOOKING_STATUSES, Booking

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
LOCK_RETRY_DELAY = 0.05
LOCK_ATTEMPTS = 20


def rental_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def calculate_total_price(start: datetime, end: datetime, price_per_day: float) -> float:
    return round(rental_days(start, end) * float(price_per_day), 2)


@contextmanager
def car_booking_lock(db, car_oid: ObjectId):
    """Hold a short lease on a car while its calendar is checked and written.

    The lease lives on the car document and is taken with a conditional write,
    so two processes racing for the same car serialize here. An expired lease
    (crashed holder) is taken over.
    """
    token = str(ObjectId())
    acquired = None
    for _ in range(LOCK_ATTEMPTS):
        stamp = now()
        acquired = db["car"].find_one_and_update(
            {
                "_id": car_oid,
                "$or": [
                    {"booking_lock": None},
                    {"booking_lock.expires_at": {"$lt": stamp}},
                ],
            },
            {"$set": {"booking_lock": {
                "token": token,
                "expires_at": stamp + timedelta(seconds=Config.BOOKING_LOCK_SECONDS),
            }}},
        )
        if acquired:
            break
        time.sleep(LOCK_RETRY_DELAY)
    if not acquired:
        logger.warning(f"Booking lock busy for car {car_oid}")
        raise HTTPException(status_code=409, detail="Car is being booked by another request. Please retry.")
    try:
        yield acquired
    finally:
        db["car"].update_one({"_id": car_oid, "booking_lock.token": token}, {"$unset": {"booking_lock": ""}})


def find_conflict(db, car_id: str, start: datetime, end: datetime, exclude_id: Optional[ObjectId] = None):
    # Closed-interval test: bookings that merely touch at a boundary conflict too
    query: Dict[str, Any] = {
        "car_id": car_id,
        "status": "confirmed",
        "start_date": {"$lte": end},
        "end_date": {"$gte": start},
    }
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return db["booking"].find_one(query)


def _get_car(db, car_id: str) -> Dict[str, Any]:
    car = db["car"].find_one({"_id": to_object_id(car_id, "car id")})
    if not car:
        raise HTTPException(status_code=404, detail="Car not found")
    return car


def _get_booking(db, booking_id: str) -> Dict[str, Any]:
    booking = db["booking"].find_one({"_id": to_object_id(booking_id, "booking id")})
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def create_booking(db, user: Dict[str, Any], car_id: str, start_date: datetime, end_date: datetime) -> Dict[str, Any]:
    start = to_utc_naive(start_date)
    end = to_utc_naive(end_date)
    if start >= end:
        raise HTTPException(status_code=400, detail="Invalid date range. Start date must be before end date.")
    if start <= now():
        raise HTTPException(status_code=400, detail="Start date must be in the future")

    car = _get_car(db, car_id)
    with car_booking_lock(db, car["_id"]):
        if find_conflict(db, car_id, start, end):
            raise HTTPException(status_code=400, detail="Car is not available for the selected dates.")

        booking = Booking(
            user_id=str(user["id"]),
            car_id=car_id,
            start_date=start,
            end_date=end,
            total_price=calculate_total_price(start, end, car["price_per_day"]),
            status="confirmed",
        )
        booking_id = create_document(db, "booking", booking)

    logger.info(f"Booking {booking_id} confirmed for car {car_id} by user {user['id']}")
    return serialize_booking(db["booking"].find_one({"_id": ObjectId(booking_id)}), car)


def complete_expired_bookings(db, user_id: Optional[str] = None) -> int:
    stamp = now()
    query: Dict[str, Any] = {"status": "confirmed", "end_date": {"$lt": stamp}}
    if user_id is not None:
        query["user_id"] = str(user_id)
    result = db["booking"].update_many(query, {"$set": {"status": "completed", "updated_at": stamp}})
    if result.modified_count:
        logger.info(f"Marked {result.modified_count} expired booking(s) as completed")
    return result.modified_count


def _car_summary(car: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not car:
        return None
    return {
        "id": str(car["_id"]),
        "make": car.get("make"),
        "model": car.get("model"),
        "year": car.get("year"),
        "price_per_day": car.get("price_per_day"),
        "image": car.get("image"),
    }


def serialize_booking(doc: Dict[str, Any], car: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = serialize_doc(doc)
    if car is not None:
        out["car"] = _car_summary(car)
    return out


def _with_cars(db, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    car_ids = {d["car_id"] for d in docs if ObjectId.is_valid(d.get("car_id", ""))}
    cars = {str(c["_id"]): c for c in db["car"].find({"_id": {"$in": [ObjectId(c) for c in car_ids]}})}
    out = []
    for d in docs:
        item = serialize_booking(d)
        item["car"] = _car_summary(cars.get(d.get("car_id")))
        out.append(item)
    return out


def list_bookings(db, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    complete_expired_bookings(db, user_id=user["id"])
    docs = list(db["booking"].find({"user_id": str(user["id"])}).sort([("created_at", -1)]))
    return _with_cars(db, docs)


def list_all_bookings(db, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Access denied. Admins only.")
    complete_expired_bookings(db)
    docs = list(db["booking"].find({}).sort([("created_at", -1)]))
    items = _with_cars(db, docs)
    user_ids = [ObjectId(d["user_id"]) for d in docs if ObjectId.is_valid(d.get("user_id", ""))]
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": user_ids}})}
    for item in items:
        u = users.get(item.get("user_id"))
        item["user"] = {"id": str(u["_id"]), "username": u.get("username"), "email": u.get("email")} if u else None
    return items


def update_booking_status(db, booking_id: str, user: Dict[str, Any], status: str) -> Dict[str, Any]:
    if status not in BOOKING_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid booking status")
    booking = _get_booking(db, booking_id)

    owner = booking.get("user_id") == str(user["id"])
    if not is_admin(user) and not (owner and status == "canceled"):
        raise HTTPException(status_code=403, detail="You are not allowed to change this booking")
    if status == "canceled" and booking.get("status") == "canceled":
        raise HTTPException(status_code=400, detail="Booking is already canceled")

    update = {"$set": {"status": status, "updated_at": now()}}
    if status == "confirmed" and booking.get("status") != "confirmed":
        # Re-confirming must not create an overlap with another confirmed booking
        car_oid = to_object_id(booking["car_id"], "car id")
        with car_booking_lock(db, car_oid):
            if find_conflict(db, booking["car_id"], booking["start_date"], booking["end_date"], exclude_id=booking["_id"]):
                raise HTTPException(status_code=400, detail="Car is not available for the selected dates.")
            db["booking"].update_one({"_id": booking["_id"]}, update)
    else:
        db["booking"].update_one({"_id": booking["_id"]}, update)

    logger.info(f"Booking {booking_id} status {booking.get('status')} -> {status} by {user['id']}")
    return serialize_booking(db["booking"].find_one({"_id": booking["_id"]}))


def delete_booking(db, booking_id: str, user: Dict[str, Any]) -> None:
    booking = _get_booking(db, booking_id)
    if not is_admin(user) and booking.get("user_id") != str(user["id"]):
        raise HTTPException(status_code=403, detail="You are not allowed to delete this booking")
    db["booking"].delete_one({"_id": booking["_id"]})
    logger.info(f"Booking {booking_id} deleted by {user['id']}")
