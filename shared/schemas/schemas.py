"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the marketplace.
"""

import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.models.models import (
    AccountStatus,
    BookingStatus,
    TourCategory,
    TourStatus,
    UserRole,
)

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── User ──────────────────────────────────────────────────────

class UserSummary(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    image_url: Optional[str] = None


class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    name: str
    role: str
    account_status: str
    phone: Optional[str]
    address: Optional[str]
    bio: Optional[str]
    image_url: Optional[str]
    languages: List[str] = []
    expertise: List[str] = []
    daily_rate: Optional[Decimal] = None
    travel_preferences: List[str] = []
    created_at: datetime


class UserRegisterRequest(BaseSchema):
    """Credentials live with the auth service; this only creates the account row."""
    name: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    role: UserRole = UserRole.TOURIST
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9]{7,15}$")
    address: Optional[str] = Field(None, max_length=500)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: UserRole) -> UserRole:
        if v == UserRole.ADMIN:
            raise ValueError("Admin accounts cannot be self-registered")
        return v


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9]{7,15}$")
    address: Optional[str] = Field(None, max_length=500)
    bio: Optional[str] = Field(None, max_length=2000)
    image_url: Optional[str] = None
    languages: Optional[List[str]] = None
    expertise: Optional[List[str]] = None
    daily_rate: Optional[Decimal] = Field(None, ge=0)
    travel_preferences: Optional[List[str]] = None


class UserStatusUpdateRequest(BaseSchema):
    account_status: AccountStatus


# ── Tour ──────────────────────────────────────────────────────

class AvailableDate(BaseSchema):
    date: date
    times: List[str] = Field(..., min_length=1)

    @field_validator("times")
    @classmethod
    def validate_times(cls, v: List[str]) -> List[str]:
        for t in v:
            if not re.match(TIME_PATTERN, t):
                raise ValueError(f"Invalid time '{t}', expected HH:MM")
        return v


class ItineraryItem(BaseSchema):
    time: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None


class TourCreateRequest(BaseSchema):
    title: str = Field(..., min_length=3, max_length=255)
    description: str = Field(..., min_length=10)
    long_description: Optional[str] = None
    category: TourCategory
    location: str = Field(..., max_length=255)
    meeting_point: Optional[str] = Field(None, max_length=500)
    tour_fee: Decimal = Field(..., gt=0)
    max_duration: Decimal = Field(..., gt=0, le=720)
    max_group_size: int = Field(10, ge=1, le=500)
    images: List[str] = []
    highlights: List[str] = []
    included: List[str] = []
    not_included: List[str] = []
    important_info: Optional[str] = None
    cancellation_policy: Optional[str] = None
    itinerary: List[ItineraryItem] = []
    available_dates: List[AvailableDate] = []


class TourUpdateRequest(BaseSchema):
    title: Optional[str] = Field(None, min_length=3, max_length=255)
    description: Optional[str] = Field(None, min_length=10)
    long_description: Optional[str] = None
    category: Optional[TourCategory] = None
    location: Optional[str] = Field(None, max_length=255)
    meeting_point: Optional[str] = Field(None, max_length=500)
    tour_fee: Optional[Decimal] = Field(None, gt=0)
    max_duration: Optional[Decimal] = Field(None, gt=0, le=720)
    max_group_size: Optional[int] = Field(None, ge=1, le=500)
    images: Optional[List[str]] = None
    highlights: Optional[List[str]] = None
    included: Optional[List[str]] = None
    not_included: Optional[List[str]] = None
    important_info: Optional[str] = None
    cancellation_policy: Optional[str] = None
    itinerary: Optional[List[ItineraryItem]] = None
    available_dates: Optional[List[AvailableDate]] = None
    status: Optional[TourStatus] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[TourStatus]) -> Optional[TourStatus]:
        if v == TourStatus.DELETED:
            raise ValueError("Use DELETE /tours/{id} to remove a tour")
        return v


class TourSummary(BaseSchema):
    id: uuid.UUID
    slug: str
    title: str
    location: str
    tour_fee: Decimal
    images: List[str] = []
    rating: Decimal


class TourResponse(BaseSchema):
    id: uuid.UUID
    guide_id: uuid.UUID
    slug: str
    title: str
    description: str
    long_description: Optional[str]
    category: str
    location: str
    meeting_point: Optional[str]
    tour_fee: Decimal
    max_duration: Decimal
    max_group_size: int
    images: List[str] = []
    highlights: List[str] = []
    included: List[str] = []
    not_included: List[str] = []
    important_info: Optional[str]
    cancellation_policy: Optional[str]
    itinerary: List[Dict[str, Any]] = []
    available_dates: List[Dict[str, Any]] = []
    rating: Decimal
    review_count: int
    booking_count: int
    status: str
    created_at: datetime
    # Joined
    guide: Optional[UserSummary] = None


class TourListResponse(BaseSchema):
    items: List[TourResponse]
    total: int
    page: int
    page_size: int
    pages: int


# ── Payment ───────────────────────────────────────────────────

class PaymentResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    transaction_id: str
    amount: Decimal
    status: str
    paid_at: Optional[datetime]
    created_at: datetime


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    tour_id: uuid.UUID
    booking_date: date
    booking_time: str = Field(..., pattern=TIME_PATTERN)
    number_of_guests: int = Field(..., ge=1, le=500)

    @field_validator("booking_date")
    @classmethod
    def validate_booking_date(cls, v: date) -> date:
        if v < datetime.now(timezone.utc).date():
            raise ValueError("Booking date must not be in the past")
        return v


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    tourist_id: uuid.UUID
    tour_id: uuid.UUID
    guide_id: uuid.UUID
    booking_date: date
    booking_time: str
    number_of_guests: int
    total_amount: Decimal
    status: str
    cancellation_reason: Optional[str]
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    # Joined
    tourist: Optional[UserSummary] = None
    guide: Optional[UserSummary] = None
    tour: Optional[TourSummary] = None
    payment: Optional[PaymentResponse] = None


class PaymentInitiateResponse(BaseSchema):
    payment_url: str
    booking: BookingResponse


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class ReviewUpdateRequest(BaseSchema):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    tourist_id: uuid.UUID
    tour_id: uuid.UUID
    guide_id: uuid.UUID
    rating: int
    comment: Optional[str]
    helpful: int
    created_at: datetime
    tourist: Optional[UserSummary] = None


# ── Wishlist ──────────────────────────────────────────────────

class WishlistAddRequest(BaseSchema):
    tour_id: uuid.UUID


class WishlistItemResponse(BaseSchema):
    id: uuid.UUID
    tour_id: uuid.UUID
    created_at: datetime
    tour: Optional[TourSummary] = None


class WishlistStatusResponse(BaseSchema):
    tour_id: uuid.UUID
    in_wishlist: bool


# ── Messaging ─────────────────────────────────────────────────

class ChatMessageCreateRequest(BaseSchema):
    receiver_id: uuid.UUID
    message: str = Field(..., min_length=1, max_length=2000)


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    receiver_id: uuid.UUID
    body: str
    created_at: datetime


class ConversationResponse(BaseSchema):
    id: uuid.UUID
    last_message_at: Optional[datetime]
    created_at: datetime
    companion: Optional[UserSummary] = None


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True
