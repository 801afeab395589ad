from datetime import timedelta

from bson import ObjectId

from conftest import future, utcnow
from reviews import round_rating, update_car_rating


def past_window(days_ago=5):
    start = utcnow() - timedelta(days=days_ago)
    return start, start + timedelta(days=1)


def completed_booking(make_booking, user_id, car_id):
    start, end = past_window()
    return make_booking(user_id, car_id, start, end, status="completed")


def post_review(client, headers, booking_id, rating=5, comment="Great car"):
    return client.post("/api/reviews", headers=headers, json={"booking_id": booking_id, "rating": rating, "comment": comment})


def test_review_updates_car_aggregate(client, make_user, make_car, make_booking, mongo_db):
    user, headers, _ = make_user()
    car_id = make_car()
    res = post_review(client, headers, completed_booking(make_booking, user["id"], car_id), rating=4)
    assert res.status_code == 201
    assert res.json()["review"]["car"]["make"] == "Toyota"

    car = mongo_db["car"].find_one({"_id": ObjectId(car_id)})
    assert car["average_rating"] == 4
    assert car["review_count"] == 1
    assert car["total_rating_points"] == 4


def test_expired_confirmed_booking_is_reviewable(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    start, end = past_window()
    booking_id = make_booking(user["id"], make_car(), start, end, status="confirmed")
    assert post_review(client, headers, booking_id).status_code == 201


def test_only_completed_bookings(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    booking_id = make_booking(user["id"], make_car(), future(1), future(2))
    res = post_review(client, headers, booking_id)
    assert res.status_code == 400
    assert res.json()["message"] == "You can only review completed bookings"


def test_only_own_bookings(client, make_user, make_car, make_booking):
    owner, _, _ = make_user()
    _, other_headers, _ = make_user()
    booking_id = completed_booking(make_booking, owner["id"], make_car())
    assert post_review(client, other_headers, booking_id).status_code == 403


def test_unknown_booking(client, make_user):
    _, headers, _ = make_user()
    assert post_review(client, headers, str(ObjectId())).status_code == 404


def test_one_review_per_booking(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    booking_id = completed_booking(make_booking, user["id"], make_car())
    assert post_review(client, headers, booking_id, rating=5).status_code == 201
    res = post_review(client, headers, booking_id, rating=1, comment="changed my mind")
    assert res.status_code == 400
    assert res.json()["message"] == "You have already reviewed this booking"


def test_rating_and_comment_bounds(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    booking_id = completed_booking(make_booking, user["id"], make_car())
    assert post_review(client, headers, booking_id, rating=0).status_code == 400
    assert post_review(client, headers, booking_id, rating=6).status_code == 400
    assert post_review(client, headers, booking_id, comment="x" * 1001).status_code == 400


def test_average_is_rounded_to_one_decimal(mongo_db, make_car):
    car_id = make_car()
    for rating in (5, 4, 4):
        mongo_db["review"].insert_one({"car_id": car_id, "rating": rating, "booking_id": str(ObjectId())})
    fields = update_car_rating(mongo_db, car_id)
    assert fields == {"average_rating": 4.3, "review_count": 3, "total_rating_points": 13}


def test_round_rating_half_up():
    assert round_rating(4.25) == 4.3
    assert round_rating(3.0) == 3.0
    assert round_rating(13 / 3) == 4.3


def test_admin_delete_recomputes_and_resets_to_zero(client, make_user, make_car, make_booking, mongo_db):
    user, headers, _ = make_user()
    _, admin_headers, _ = make_user(role="admin")
    car_id = make_car()
    first = completed_booking(make_booking, user["id"], car_id)
    second = completed_booking(make_booking, user["id"], car_id)
    r1 = post_review(client, headers, first, rating=5).json()["review"]["id"]
    r2 = post_review(client, headers, second, rating=2).json()["review"]["id"]

    car = mongo_db["car"].find_one({"_id": ObjectId(car_id)})
    assert car["average_rating"] == 3.5

    assert client.delete(f"/api/reviews/admin/{r1}", headers=admin_headers).status_code == 200
    car = mongo_db["car"].find_one({"_id": ObjectId(car_id)})
    assert (car["average_rating"], car["review_count"], car["total_rating_points"]) == (2, 1, 2)

    assert client.delete(f"/api/reviews/admin/{r2}", headers=admin_headers).status_code == 200
    car = mongo_db["car"].find_one({"_id": ObjectId(car_id)})
    assert (car["average_rating"], car["review_count"], car["total_rating_points"]) == (0, 0, 0)


def test_delete_requires_admin(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    review_id = post_review(client, headers, completed_booking(make_booking, user["id"], make_car())).json()["review"]["id"]
    assert client.delete(f"/api/reviews/admin/{review_id}", headers=headers).status_code == 403


def test_can_review_flags(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    _, other_headers, _ = make_user()
    booking_id = completed_booking(make_booking, user["id"], make_car())

    res = client.get(f"/api/reviews/can-review/{booking_id}", headers=headers)
    assert res.json() == {"can_review": True, "has_reviewed": False, "booking_status": "completed"}

    post_review(client, headers, booking_id)
    res = client.get(f"/api/reviews/can-review/{booking_id}", headers=headers)
    assert res.json()["has_reviewed"] is True
    assert res.json()["can_review"] is False

    assert client.get(f"/api/reviews/can-review/{booking_id}", headers=other_headers).status_code == 403


def test_car_reviews_listing(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    car_id = make_car()
    for rating in (5, 3, 5):
        post_review(client, headers, completed_booking(make_booking, user["id"], car_id), rating=rating)

    res = client.get(f"/api/reviews/car/{car_id}", params={"sort": "lowest", "limit": 2})
    assert res.status_code == 200
    body = res.json()
    assert [r["rating"] for r in body["reviews"]] == [3, 5]
    assert body["pagination"]["total_reviews"] == 3
    assert body["pagination"]["has_more"] is True
    assert body["car_rating"]["rating_distribution"] == [{"rating": 5, "count": 2}, {"rating": 3, "count": 1}]
    assert body["reviews"][0]["user"]["username"] == user["username"]

    assert client.get(f"/api/reviews/car/{ObjectId()}").status_code == 404


def test_my_reviews_and_admin_listing(client, make_user, make_car, make_booking):
    user, headers, _ = make_user()
    _, admin_headers, _ = make_user(role="admin")
    car_id = make_car()
    post_review(client, headers, completed_booking(make_booking, user["id"], car_id), rating=4)

    mine = client.get("/api/reviews/my-reviews", headers=headers).json()
    assert len(mine["reviews"]) == 1
    assert mine["reviews"][0]["booking"]["status"] == "completed"

    everything = client.get("/api/reviews/admin/all", headers=admin_headers, params={"rating": 4}).json()
    assert everything["stats"]["total_reviews"] == 1
    assert everything["stats"]["rating_distribution"] == {"4": 1}
    assert client.get("/api/reviews/admin/all", headers=headers).status_code == 403
