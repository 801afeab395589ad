import os
from datetime import datetime, timedelta, timezone

os.environ.pop("DATABASE_URL", None)
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("ADMIN_EMAIL", None)
for name in ("S3_BUCKET_NAME", "CAR_API_TOKEN", "CAR_API_KEY", "CAR_API_SECRET"):
    os.environ.pop(name, None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, hash_password
from database import ensure_indexes, get_db
from main import app
from realtime import InMemoryHub, get_hub


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture
def mongo_db():
    db = mongomock.MongoClient()["rentaride_test"]
    ensure_indexes(db)
    return db


@pytest.fixture
def hub():
    return InMemoryHub(typing_timeout=0.05)


@pytest.fixture
def client(mongo_db, hub):
    app.dependency_overrides[get_db] = lambda: mongo_db
    app.dependency_overrides[get_hub] = lambda: hub
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(mongo_db):
    """Insert a user directly and return (user, auth headers, token)."""
    counter = {"n": 0}

    def _make(role="user", username=None, password="secret123"):
        counter["n"] += 1
        name = username or f"{role}{counter['n']}"
        doc = {
            "username": name,
            "email": f"{name}@example.com",
            "password_hash": hash_password(password),
            "role": role,
            "profile_image": None,
            "is_online": False,
            "last_seen": None,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        doc["_id"] = mongo_db["user"].insert_one(doc).inserted_id
        token = create_access_token(doc)
        user = {"id": str(doc["_id"]), "username": name, "email": doc["email"], "role": role}
        return user, {"Authorization": f"Bearer {token}"}, token

    return _make


@pytest.fixture
def make_car(mongo_db):
    def _make(price_per_day=50.0, make="Toyota", model="Corolla", year=2022):
        doc = {
            "make": make,
            "model": model,
            "year": year,
            "price_per_day": price_per_day,
            "availability_status": True,
            "image": "",
            "average_rating": 0,
            "review_count": 0,
            "total_rating_points": 0,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        return str(mongo_db["car"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def make_booking(mongo_db):
    """Insert a booking directly, bypassing the future-start rule."""

    def _make(user_id, car_id, start, end, status="confirmed", total_price=100.0):
        doc = {
            "user_id": user_id,
            "car_id": car_id,
            "start_date": start,
            "end_date": end,
            "total_price": total_price,
            "status": status,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        return str(mongo_db["booking"].insert_one(doc).inserted_id)

    return _make


def iso(dt):
    return dt.replace(tzinfo=timezone.utc).isoformat()


def future(days=1, hours=0):
    return utcnow().replace(microsecond=0) + timedelta(days=days, hours=hours)
