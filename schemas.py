"""
Database Schemas for the Rent-a-Ride platform

Each Pydantic model below represents a MongoDB collection. The collection
name is the lowercase of the class name (e.g., Car -> "car").

References between documents are stored as string ids (e.g. booking.car_id).
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, computed_field

Role = Literal["user", "admin"]
BookingStatus = Literal["pending", "confirmed", "canceled", "completed"]
ChatType = Literal["general", "support", "booking"]
MessageType = Literal["text", "image", "file"]

BOOKING_STATUSES = ("pending", "confirmed", "canceled", "completed")
CHAT_TYPES = ("general", "support", "booking")


class User(BaseModel):
    username: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Login email, stored lowercased")
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Role = "user"
    profile_image: Optional[str] = Field(None, description="Profile image URL")
    is_online: bool = False
    last_seen: Optional[datetime] = None


class Car(BaseModel):
    make: str = Field(..., description="Manufacturer, e.g. Toyota")
    model: str = Field(..., description="Model name")
    year: int = Field(..., description="Model year")
    price_per_day: float = Field(..., gt=0, description="Rental price per day")
    availability_status: bool = Field(True, description="Whether the car can be rented")
    image: Optional[str] = Field("", description="Image URL")
    # Derived from reviews, never written by the car routes
    average_rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    total_rating_points: int = Field(0, ge=0)


class Booking(BaseModel):
    user_id: str
    car_id: str
    start_date: datetime
    end_date: datetime
    total_price: float = Field(..., ge=0)
    status: BookingStatus = "confirmed"


class Review(BaseModel):
    user_id: str
    car_id: str
    booking_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field("", max_length=1000)
    is_verified_rental: bool = True


class Chat(BaseModel):
    chat_id: str = Field(..., description="general-chat, support-<userId> or booking-<bookingId>")
    type: ChatType
    participants: List[str] = Field(default_factory=list, description="User ids")
    booking_id: Optional[str] = None
    title: str
    is_active: bool = True
    last_activity: datetime


class ReadReceipt(BaseModel):
    user_id: str
    read_at: datetime


class Message(BaseModel):
    chat_id: str = Field(..., description="Document id of the chat")
    sender_id: str
    content: str = Field(..., max_length=1000)
    message_type: MessageType = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    read_by: List[ReadReceipt] = Field(default_factory=list)
    reply_to: Optional[str] = None
    is_deleted: bool = False


# ---------- Request bodies ----------

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[EmailStr] = None
    profile_image: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class CarIn(BaseModel):
    make: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    year: int
    price_per_day: float = Field(..., gt=0)
    availability_status: bool = True
    image: Optional[str] = ""


class CarUpdate(BaseModel):
    make: Optional[str] = Field(None, min_length=1)
    model: Optional[str] = Field(None, min_length=1)
    year: Optional[int] = None
    price_per_day: Optional[float] = Field(None, gt=0)
    availability_status: Optional[bool] = None
    image: Optional[str] = None


class CarOut(Car):
    id: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @computed_field
    @property
    def rating(self) -> float:
        return self.average_rating


class BookingIn(BaseModel):
    car_id: str = Field(..., min_length=1)
    start_date: datetime
    end_date: datetime


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class ReviewIn(BaseModel):
    booking_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field("", max_length=1000)


class ChatCreateRequest(BaseModel):
    type: str
    participant_ids: List[str] = Field(default_factory=list)
    booking_id: Optional[str] = None
    title: Optional[str] = None


class MessageIn(BaseModel):
    content: str = Field(..., max_length=1000)
    message_type: MessageType = "text"
    reply_to: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)


class ImageDeleteRequest(BaseModel):
    image_url: str
