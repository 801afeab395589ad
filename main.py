import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import bookings
import chat as chat_engine
import database
import reviews
from auth import create_access_token, get_current_user, hash_password, require_admin, verify_password
from config import Config
from database import create_document, ensure_indexes, get_db, get_documents, now, serialize_doc, to_object_id
from realtime import ChatHub, get_hub, websocket_session
from storage import ImageStore, car_image_key, get_image_store, profile_image_key, read_image
from vehicles import CarApiClient, fetch, get_vehicle_api
from schemas import (
    BookingIn,
    BookingStatusUpdate,
    CarIn,
    CarOut,
    CarUpdate,
    ImageDeleteRequest,
    ChangePasswordRequest,
    ChatCreateRequest,
    LoginRequest,
    MessageIn,
    ProfileUpdateRequest,
    RegisterRequest,
    ReviewIn,
    User,
)

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Rent-a-Ride API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error responses ----------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=400, content={"message": "Duplicate record"})


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Server error.", "error": str(exc)})


# ---------- Startup ----------

def ensure_admin_account(db):
    if not Config.ADMIN_EMAIL or not Config.ADMIN_PASSWORD:
        return
    email = Config.ADMIN_EMAIL.lower()
    if db["user"].find_one({"email": email}):
        return
    admin = User(
        username=Config.ADMIN_USERNAME,
        email=email,
        password_hash=hash_password(Config.ADMIN_PASSWORD),
        role="admin",
    )
    create_document(db, "user", admin)
    logger.info(f"Created bootstrap admin {email}")


@app.on_event("startup")
def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL not set; data routes will answer 500")
        return
    ensure_indexes(database.db)
    ensure_admin_account(database.db)


# ---------- Helpers ----------

def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out.pop("password_hash", None)
    return out


def serialize_car(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = {k: v for k, v in doc.items() if k != "booking_lock"}
    return CarOut(**serialize_doc(doc)).model_dump()


def _check_year(year: Optional[int]):
    if year is None:
        return
    latest = datetime.now(timezone.utc).year + 1
    if year < 1990 or year > latest:
        raise HTTPException(status_code=400, detail=f"Year must be between 1990 and {latest}")


def _get_user_doc(db, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# Health + DB test
@app.get("/")
def read_root():
    return {"message": "Rent-a-Ride Backend Running"}


@app.get("/health")
def health():
    return {"status": "OK", "message": "Backend is running!", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/test")
def test_database():
    db = database.db
    response = {
        "backend": "Running",
        "database": "Not Available" if db is None else "Connected & Working",
        "database_url": "Set" if Config.DATABASE_URL else "Not Set",
        "database_name": db.name if db is not None else None,
        "collections": [],
    }
    if db is not None:
        try:
            response["collections"] = db.list_collection_names()
        except Exception as e:
            response["database"] = f"Connected but Error: {str(e)[:80]}"
    return response


# Auth endpoints
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    email = str(payload.email).lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email is already registered")

    user = User(username=payload.username, email=email, password_hash=hash_password(payload.password))
    user_id = create_document(db, "user", user)
    logger.info(f"Registered user {user_id}")
    return {"message": "User registered successfully", "user": public_user(db["user"].find_one({"_id": ObjectId(user_id)}))}


@app.post("/api/auth/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": str(payload.email).lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    return {"message": "Login successful", "token": create_access_token(user), "user": public_user(user)}


# User endpoints
@app.get("/api/users/profile")
def get_profile(user=Depends(get_current_user), db=Depends(get_db)):
    return public_user(_get_user_doc(db, user["id"]))


@app.put("/api/users/profile")
def update_profile(payload: ProfileUpdateRequest, user=Depends(get_current_user), db=Depends(get_db)):
    doc = _get_user_doc(db, user["id"])
    update: Dict[str, Any] = {}
    if payload.username:
        update["username"] = payload.username
    if payload.email:
        email = str(payload.email).lower()
        if email != doc.get("email") and db["user"].find_one({"email": email}):
            raise HTTPException(status_code=400, detail="Email is already registered")
        update["email"] = email
    if payload.profile_image is not None:
        update["profile_image"] = payload.profile_image
    if update:
        update["updated_at"] = now()
        db["user"].update_one({"_id": doc["_id"]}, {"$set": update})
    return {"message": "Profile updated successfully", "user": public_user(db["user"].find_one({"_id": doc["_id"]}))}


@app.put("/api/users/change-password")
def change_password(payload: ChangePasswordRequest, user=Depends(get_current_user), db=Depends(get_db)):
    doc = _get_user_doc(db, user["id"])
    if not verify_password(payload.current_password, doc.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect.")
    db["user"].update_one(
        {"_id": doc["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": now()}},
    )
    return {"message": "Password updated successfully"}


@app.get("/api/users")
def list_users(admin=Depends(require_admin), db=Depends(get_db)):
    return [public_user(u) for u in get_documents(db, "user", sort=[("created_at", -1)])]


@app.patch("/api/users/{user_id}/reset-password")
def reset_user_password(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    doc = _get_user_doc(db, user_id)
    db["user"].update_one(
        {"_id": doc["_id"]},
        {"$set": {"password_hash": hash_password(Config.DEFAULT_RESET_PASSWORD), "updated_at": now()}},
    )
    logger.info(f"Admin {admin['id']} reset password of user {user_id}")
    return {"message": "User password has been reset to the default password"}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    doc = _get_user_doc(db, user_id)
    if doc.get("role") == "admin" and db["user"].count_documents({"role": "admin"}) <= 1:
        raise HTTPException(status_code=403, detail="Cannot delete the only admin")
    db["user"].delete_one({"_id": doc["_id"]})
    logger.info(f"Admin {admin['id']} deleted user {user_id}")
    return {"message": "User deleted successfully"}


# Cars endpoints
@app.get("/api/cars")
def list_cars(
    q: Optional[str] = None,
    make: Optional[str] = None,
    available: Optional[bool] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: Optional[str] = Query("newest", description="newest|price_asc|price_desc|rating"),
    limit: int = Query(100, ge=1, le=500),
    db=Depends(get_db),
):
    filt: Dict[str, Any] = {}
    if q:
        filt["$or"] = [
            {"make": {"$regex": q, "$options": "i"}},
            {"model": {"$regex": q, "$options": "i"}},
        ]
    if make:
        filt["make"] = make
    if available is not None:
        filt["availability_status"] = available
    if min_price is not None or max_price is not None:
        price_cond: Dict[str, Any] = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        filt["price_per_day"] = price_cond

    if sort == "price_asc":
        sort_spec = ("price_per_day", 1)
    elif sort == "price_desc":
        sort_spec = ("price_per_day", -1)
    elif sort == "rating":
        sort_spec = ("average_rating", -1)
    else:
        sort_spec = ("created_at", -1)

    docs = get_documents(db, "car", filt, limit=limit, sort=[sort_spec])
    return [serialize_car(d) for d in docs]


@app.get("/api/cars/{car_id}")
def get_car(car_id: str, db=Depends(get_db)):
    doc = db["car"].find_one({"_id": to_object_id(car_id, "car id")})
    if not doc:
        raise HTTPException(status_code=404, detail="Car not found")
    return serialize_car(doc)


@app.post("/api/cars", status_code=201)
def add_car(payload: CarIn, admin=Depends(require_admin), db=Depends(get_db)):
    _check_year(payload.year)
    data = payload.model_dump()
    data.update({"average_rating": 0, "review_count": 0, "total_rating_points": 0})
    car_id = create_document(db, "car", data)
    logger.info(f"Car {car_id} added: {payload.make} {payload.model}")
    return {"message": "Car added successfully", "car": serialize_car(db["car"].find_one({"_id": ObjectId(car_id)}))}


@app.put("/api/cars/{car_id}")
def update_car(car_id: str, payload: CarUpdate, admin=Depends(require_admin), db=Depends(get_db)):
    oid = to_object_id(car_id, "car id")
    if not db["car"].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="Car not found")
    _check_year(payload.year)
    update = payload.model_dump(exclude_none=True)
    if update:
        update["updated_at"] = now()
        db["car"].update_one({"_id": oid}, {"$set": update})
    return {"message": "Car updated successfully", "car": serialize_car(db["car"].find_one({"_id": oid}))}


@app.delete("/api/cars/{car_id}")
def delete_car(car_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    result = db["car"].delete_one({"_id": to_object_id(car_id, "car id")})
    if not result.deleted_count:
        raise HTTPException(status_code=404, detail="Car not found")
    logger.info(f"Car {car_id} deleted")
    return {"message": "Car deleted successfully"}


# Image endpoints
@app.post("/api/images/upload")
def upload_car_image(
    year: int = Form(...),
    make: str = Form(..., min_length=1),
    model: str = Form(..., min_length=1),
    image: UploadFile = File(...),
    user=Depends(get_current_user),
    store: ImageStore = Depends(get_image_store),
):
    body = read_image(image)
    image_url = store.upload(car_image_key(year, make, model, image.filename), body, image.content_type)
    return {"image_url": image_url, "message": "Image uploaded successfully"}


@app.delete("/api/images/delete")
def delete_car_image(payload: ImageDeleteRequest, admin=Depends(require_admin), store: ImageStore = Depends(get_image_store)):
    key = store.key_from_url(payload.image_url)
    if not key:
        raise HTTPException(status_code=400, detail="Invalid image URL")
    store.delete(key)
    return {"message": "Image deleted successfully"}


@app.post("/api/profile-images/upload")
def upload_profile_image(
    profile_picture: UploadFile = File(...),
    user=Depends(get_current_user),
    db=Depends(get_db),
    store: ImageStore = Depends(get_image_store),
):
    doc = _get_user_doc(db, user["id"])
    body = read_image(profile_picture)
    old_key = store.key_from_url(doc.get("profile_image"))
    if old_key:
        try:
            store.delete(old_key)
        except HTTPException:
            logger.warning(f"Could not remove previous profile picture of user {user['id']}")

    image_url = store.upload(profile_image_key(doc["username"], profile_picture.filename), body, profile_picture.content_type)
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"profile_image": image_url, "updated_at": now()}})
    return {
        "image_url": image_url,
        "message": "Profile picture uploaded successfully",
        "user": public_user(db["user"].find_one({"_id": doc["_id"]})),
    }


@app.delete("/api/profile-images/delete")
def delete_profile_image(user=Depends(get_current_user), db=Depends(get_db), store: ImageStore = Depends(get_image_store)):
    doc = _get_user_doc(db, user["id"])
    key = store.key_from_url(doc.get("profile_image"))
    if not key:
        raise HTTPException(status_code=400, detail="No profile picture to delete")
    store.delete(key)
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"profile_image": "", "updated_at": now()}})
    return {"message": "Profile picture deleted successfully", "user": public_user(db["user"].find_one({"_id": doc["_id"]}))}


# Vehicle data endpoints
@app.get("/api/carapi/makes")
def vehicle_makes(
    page: int = Query(1, ge=1),
    limit: int = Query(1000, ge=1),
    user=Depends(get_current_user),
    api: CarApiClient = Depends(get_vehicle_api),
):
    return fetch("car makes", api.makes, page=page, limit=limit)


@app.get("/api/carapi/models")
def vehicle_models(make: Optional[str] = None, user=Depends(get_current_user), api: CarApiClient = Depends(get_vehicle_api)):
    if not make:
        raise HTTPException(status_code=400, detail="Make query parameter is required.")
    return fetch("car models", api.models, make)


@app.get("/api/carapi/years")
def vehicle_years(
    make: Optional[str] = None,
    model: Optional[str] = None,
    user=Depends(get_current_user),
    api: CarApiClient = Depends(get_vehicle_api),
):
    if not make or not model:
        raise HTTPException(status_code=400, detail="Both make and model query parameters are required.")
    return fetch("car years", api.years, make, model)


# Stats endpoints
@app.get("/api/stats/{collection}/count")
def count_documents(collection: str, admin=Depends(require_admin), db=Depends(get_db)):
    names = {"users": "user", "cars": "car", "bookings": "booking"}
    if collection not in names:
        raise HTTPException(status_code=404, detail="Unknown collection")
    return {"count": db[names[collection]].count_documents({})}


# Booking endpoints
@app.post("/api/bookings", status_code=201)
def create_booking(payload: BookingIn, user=Depends(get_current_user), db=Depends(get_db)):
    booking = bookings.create_booking(db, user, payload.car_id, payload.start_date, payload.end_date)
    return {"message": "Booking created successfully", "booking": booking}


@app.get("/api/bookings")
def list_bookings(user=Depends(get_current_user), db=Depends(get_db)):
    return bookings.list_bookings(db, user)


@app.get("/api/bookings/all")
def list_all_bookings(user=Depends(get_current_user), db=Depends(get_db)):
    return bookings.list_all_bookings(db, user)


@app.put("/api/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, payload: BookingStatusUpdate, user=Depends(get_current_user), db=Depends(get_db)):
    booking = bookings.update_booking_status(db, booking_id, user, payload.status)
    return {"message": "Booking status updated", "booking": booking}


@app.delete("/api/bookings/{booking_id}")
def delete_booking(booking_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    bookings.delete_booking(db, booking_id, user)
    return {"message": "Booking deleted successfully"}


# Reviews
@app.post("/api/reviews", status_code=201)
def add_review(payload: ReviewIn, user=Depends(get_current_user), db=Depends(get_db)):
    review = reviews.create_review(db, user, payload.booking_id, payload.rating, payload.comment)
    return {"message": "Review created successfully", "review": review}


@app.get("/api/reviews/my-reviews")
def my_reviews(page: int = 1, limit: int = 10, user=Depends(get_current_user), db=Depends(get_db)):
    return reviews.get_user_reviews(db, user, page=page, limit=limit)


@app.get("/api/reviews/car/{car_id}")
def car_reviews(car_id: str, page: int = 1, limit: int = 10, sort: str = "newest", db=Depends(get_db)):
    return reviews.get_car_reviews(db, car_id, page=page, limit=limit, sort=sort)


@app.get("/api/reviews/can-review/{booking_id}")
def can_review(booking_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return reviews.can_review_booking(db, user, booking_id)


@app.get("/api/reviews/admin/all")
def all_reviews(
    page: int = 1,
    limit: int = 20,
    rating: Optional[int] = None,
    car_id: Optional[str] = None,
    user_id: Optional[str] = None,
    sort: str = "newest",
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    return reviews.get_all_reviews(db, page=page, limit=limit, rating=rating, car_id=car_id, user_id=user_id, sort=sort)


@app.delete("/api/reviews/admin/{review_id}")
def remove_review(review_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    reviews.delete_review(db, review_id)
    return {"message": "Review deleted successfully"}


@app.get("/api/reviews/booking/{booking_id}")
def booking_reviews(booking_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    return reviews.get_booking_reviews(db, booking_id)


# Chat
@app.post("/api/chat/create")
def create_chat(payload: ChatCreateRequest, user=Depends(get_current_user), db=Depends(get_db)):
    chat = chat_engine.create_or_get_chat(db, user, payload.type, payload.participant_ids, payload.booking_id, payload.title)
    return {"chat": chat}


@app.get("/api/chat/user-chats")
def user_chats(type: Optional[str] = None, user=Depends(get_current_user), db=Depends(get_db)):
    return {"chats": chat_engine.get_user_chats(db, user, type)}


@app.get("/api/chat/online-users")
def online_users(user=Depends(get_current_user), db=Depends(get_db)):
    return {"users": chat_engine.get_online_users(db)}


@app.get("/api/chat/{chat_id}/messages")
def chat_messages(chat_id: str, page: int = 1, limit: int = 50, user=Depends(get_current_user), db=Depends(get_db)):
    return chat_engine.get_chat_messages(db, user, chat_id, page=page, limit=limit)


@app.post("/api/chat/{chat_id}/messages", status_code=201)
async def post_message(
    chat_id: str,
    payload: MessageIn,
    user=Depends(get_current_user),
    db=Depends(get_db),
    hub: ChatHub = Depends(get_hub),
):
    message = await chat_engine.send_message(
        db,
        hub,
        user,
        chat_id,
        payload.content,
        message_type=payload.message_type,
        reply_to=payload.reply_to,
        file_url=payload.file_url,
        file_name=payload.file_name,
        file_size=payload.file_size,
    )
    return {"message": message}


@app.delete("/api/chat/messages/{message_id}")
async def remove_message(message_id: str, user=Depends(get_current_user), db=Depends(get_db), hub: ChatHub = Depends(get_hub)):
    await chat_engine.delete_message(db, hub, user, message_id)
    return {"message": "Message deleted successfully"}


@app.websocket("/ws")
async def chat_socket(websocket: WebSocket, db=Depends(get_db), hub: ChatHub = Depends(get_hub)):
    await websocket_session(websocket, db, hub)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
