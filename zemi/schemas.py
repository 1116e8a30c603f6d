from typing import List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field
from datetime import datetime

# Each class name lowercased corresponds to collection name
# (IdentityVerification -> identity_verification)

BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]
VerificationStatus = Literal["pending", "approved", "rejected"]
DocumentType = Literal["id_card", "passport", "driver_license"]


class User(BaseModel):
    id: Optional[str] = None
    email: EmailStr
    password: Optional[str] = None  # hashed
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Profile(BaseModel):
    id: Optional[str] = None
    user_id: str
    full_name: str
    phone: Optional[str] = None
    photo_url: Optional[str] = None
    rating: Optional[float] = None  # running average of received ratings
    total_trips: int = 0
    verified: bool = False
    is_admin: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Trip(BaseModel):
    id: Optional[str] = None
    driver_id: str
    departure: str
    destination: str
    departure_time: datetime
    available_seats: int
    price_per_seat: float
    vehicle_model: str
    vehicle_color: Optional[str] = None
    vehicle_plate: Optional[str] = None
    status: str = "active"  # active | completed
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Booking(BaseModel):
    id: Optional[str] = None
    trip_id: str
    passenger_id: str
    seats_booked: int
    total_price: float
    status: BookingStatus = "pending"
    payment_status: str = "pending"  # no payment provider yet
    payment_method: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Message(BaseModel):
    id: Optional[str] = None
    booking_id: str
    sender_id: str
    content: str
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Rating(BaseModel):
    id: Optional[str] = None
    booking_id: str
    rater_id: str
    rated_user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: Optional[datetime] = None


class IdentityVerification(BaseModel):
    id: Optional[str] = None
    user_id: str
    document_type: DocumentType
    document_url: str
    selfie_url: Optional[str] = None
    status: VerificationStatus = "pending"
    rejection_reason: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Request payloads

class TripCreate(BaseModel):
    departure: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    departure_time: datetime
    available_seats: int = Field(3, ge=1, le=8)
    price_per_seat: float = Field(..., gt=0)
    vehicle_model: str = Field(..., min_length=1)
    vehicle_color: Optional[str] = None
    vehicle_plate: Optional[str] = None
    description: Optional[str] = None


class BookingCreate(BaseModel):
    trip_id: str
    seats: int = Field(1, ge=1)


class MessageCreate(BaseModel):
    content: str


class RatingCreate(BaseModel):
    booking_id: str
    rated_user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class ProfileUpdate(BaseModel):
    full_name: str
    phone: Optional[str] = None
    photo_url: Optional[str] = None


class RejectPayload(BaseModel):
    reason: str = ""


class Notification(BaseModel):
    id: str
    type: Literal["booking", "message"]
    title: str
    description: str
    created_at: datetime
    read: bool = False
    link: Optional[str] = None


class NotificationSnapshot(BaseModel):
    notifications: List[Notification] = []
    unread_count: int = 0
