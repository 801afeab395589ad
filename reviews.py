import logging
import math
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from bookings import complete_expired_bookings
from database import create_document, serialize_doc, to_object_id
from schemas import Review

logger = logging.getLogger(__name__)

SORT_ORDERS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "highest": [("rating", -1), ("created_at", -1)],
    "lowest": [("rating", 1), ("created_at", -1)],
}


def round_rating(value: float) -> float:
    # Half-up to one decimal, so 4.25 reads as 4.3
    return math.floor(value * 10 + 0.5) / 10


def update_car_rating(db, car_id: str) -> Dict[str, Any]:
    ratings = [r["rating"] for r in db["review"].find({"car_id": str(car_id)}, {"rating": 1})]
    if ratings:
        total = sum(ratings)
        fields = {
            "average_rating": round_rating(total / len(ratings)),
            "review_count": len(ratings),
            "total_rating_points": total,
        }
    else:
        fields = {"average_rating": 0, "review_count": 0, "total_rating_points": 0}
    if ObjectId.is_valid(str(car_id)):
        db["car"].update_one({"_id": ObjectId(str(car_id))}, {"$set": fields})
    logger.info(f"Recomputed rating for car {car_id}: {fields}")
    return fields


def _paginate(page: int, limit: int, total: int) -> Dict[str, Any]:
    return {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "total_reviews": total,
        "has_more": page * limit < total,
    }


def _check_paging(page: int, limit: int):
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")


def _lookup(db, collection: str, ids, fields: Dict[str, int]) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not oids:
        return {}
    return {str(d["_id"]): serialize_doc(d) for d in db[collection].find({"_id": {"$in": oids}}, fields)}


def _expand(db, docs: List[Dict[str, Any]], user_fields=None, car_fields=None, booking_fields=None) -> List[Dict[str, Any]]:
    users = _lookup(db, "user", [d["user_id"] for d in docs], user_fields) if user_fields else {}
    cars = _lookup(db, "car", [d["car_id"] for d in docs], car_fields) if car_fields else {}
    bookings = _lookup(db, "booking", [d["booking_id"] for d in docs], booking_fields) if booking_fields else {}
    out = []
    for d in docs:
        item = serialize_doc(d)
        if user_fields:
            item["user"] = users.get(d["user_id"])
        if car_fields:
            item["car"] = cars.get(d["car_id"])
        if booking_fields:
            item["booking"] = bookings.get(d["booking_id"])
        out.append(item)
    return out


def create_review(db, user: Dict[str, Any], booking_id: str, rating: int, comment: Optional[str]) -> Dict[str, Any]:
    if rating < 1 or rating > 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")
    if comment and len(comment) > 1000:
        raise HTTPException(status_code=400, detail="Comment must be less than 1000 characters")

    booking_oid = to_object_id(booking_id, "booking id")
    complete_expired_bookings(db, user_id=user["id"])
    booking = db["booking"].find_one({"_id": booking_oid})
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.get("user_id") != str(user["id"]):
        raise HTTPException(status_code=403, detail="You can only review your own bookings")
    if booking.get("status") != "completed":
        raise HTTPException(status_code=400, detail="You can only review completed bookings")
    if db["review"].find_one({"booking_id": str(booking_oid)}):
        raise HTTPException(status_code=400, detail="You have already reviewed this booking")

    review = Review(
        user_id=str(user["id"]),
        car_id=booking["car_id"],
        booking_id=str(booking_oid),
        rating=rating,
        comment=comment or "",
    )
    try:
        review_id = create_document(db, "review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="You have already reviewed this booking")
    update_car_rating(db, booking["car_id"])

    doc = db["review"].find_one({"_id": ObjectId(review_id)})
    return _expand(db, [doc], user_fields={"username": 1, "email": 1}, car_fields={"make": 1, "model": 1, "year": 1})[0]


def get_car_reviews(db, car_id: str, page: int = 1, limit: int = 10, sort: str = "newest") -> Dict[str, Any]:
    _check_paging(page, limit)
    car = db["car"].find_one({"_id": to_object_id(car_id, "car id")})
    if not car:
        raise HTTPException(status_code=404, detail="Car not found")

    query = {"car_id": car_id}
    docs = list(
        db["review"].find(query).sort(SORT_ORDERS.get(sort, SORT_ORDERS["newest"])).skip((page - 1) * limit).limit(limit)
    )
    total = db["review"].count_documents(query)

    distribution: Dict[int, int] = {}
    for r in db["review"].find(query, {"rating": 1}):
        distribution[r["rating"]] = distribution.get(r["rating"], 0) + 1

    return {
        "reviews": _expand(db, docs, user_fields={"username": 1, "profile_image": 1}),
        "pagination": _paginate(page, limit, total),
        "car_rating": {
            "average_rating": car.get("average_rating", 0),
            "review_count": car.get("review_count", 0),
            "rating_distribution": [
                {"rating": k, "count": distribution[k]} for k in sorted(distribution, reverse=True)
            ],
        },
    }


def get_user_reviews(db, user: Dict[str, Any], page: int = 1, limit: int = 10) -> Dict[str, Any]:
    _check_paging(page, limit)
    query = {"user_id": str(user["id"])}
    docs = list(db["review"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit))
    total = db["review"].count_documents(query)
    return {
        "reviews": _expand(
            db,
            docs,
            car_fields={"make": 1, "model": 1, "year": 1, "image": 1, "average_rating": 1},
            booking_fields={"start_date": 1, "end_date": 1, "total_price": 1, "status": 1},
        ),
        "pagination": _paginate(page, limit, total),
    }


def can_review_booking(db, user: Dict[str, Any], booking_id: str) -> Dict[str, Any]:
    booking_oid = to_object_id(booking_id, "booking id")
    complete_expired_bookings(db, user_id=user["id"])
    booking = db["booking"].find_one({"_id": booking_oid})
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.get("user_id") != str(user["id"]):
        raise HTTPException(status_code=403, detail="Access denied")
    has_reviewed = db["review"].find_one({"booking_id": str(booking_oid)}) is not None
    return {
        "can_review": booking.get("status") == "completed" and not has_reviewed,
        "has_reviewed": has_reviewed,
        "booking_status": booking.get("status"),
    }


def get_all_reviews(
    db,
    page: int = 1,
    limit: int = 20,
    rating: Optional[int] = None,
    car_id: Optional[str] = None,
    user_id: Optional[str] = None,
    sort: str = "newest",
) -> Dict[str, Any]:
    _check_paging(page, limit)
    query: Dict[str, Any] = {}
    if rating is not None:
        query["rating"] = rating
    if car_id:
        query["car_id"] = car_id
    if user_id:
        query["user_id"] = user_id

    docs = list(
        db["review"].find(query).sort(SORT_ORDERS.get(sort, SORT_ORDERS["newest"])).skip((page - 1) * limit).limit(limit)
    )
    total = db["review"].count_documents(query)

    ratings = [r["rating"] for r in db["review"].find(query, {"rating": 1})]
    counts: Dict[str, int] = {}
    for r in ratings:
        counts[str(r)] = counts.get(str(r), 0) + 1

    return {
        "reviews": _expand(
            db,
            docs,
            user_fields={"username": 1, "email": 1, "profile_image": 1},
            car_fields={"make": 1, "model": 1, "year": 1, "image": 1},
            booking_fields={"start_date": 1, "end_date": 1, "total_price": 1},
        ),
        "pagination": _paginate(page, limit, total),
        "stats": {
            "average_rating": round_rating(sum(ratings) / len(ratings)) if ratings else 0,
            "total_reviews": len(ratings),
            "rating_distribution": counts,
        },
    }


def get_booking_reviews(db, booking_id: str) -> List[Dict[str, Any]]:
    booking_oid = to_object_id(booking_id, "booking id")
    docs = list(db["review"].find({"booking_id": str(booking_oid)}))
    return _expand(db, docs, user_fields={"username": 1, "email": 1}, car_fields={"make": 1, "model": 1, "year": 1})


def delete_review(db, review_id: str) -> None:
    review = db["review"].find_one({"_id": to_object_id(review_id, "review id")})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    db["review"].delete_one({"_id": review["_id"]})
    update_car_rating(db, review["car_id"])
    logger.info(f"Review {review_id} deleted")
