"""
shared/models/models.py
All SQLAlchemy ORM models for the tour booking marketplace.
UUID primary keys throughout; JSON columns become JSONB on PostgreSQL.

No ORM relationships are declared: the repository layer fetches and
assembles related rows explicitly, so nothing is lazily loaded.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    TOURIST = "TOURIST"
    GUIDE = "GUIDE"
    ADMIN = "ADMIN"


class AccountStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    BLOCKED = "BLOCKED"
    DELETED = "DELETED"


class TourStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DELETED = "DELETED"


class TourCategory(str, PyEnum):
    FOOD = "FOOD"
    HISTORICAL = "HISTORICAL"
    ART = "ART"
    NATURE = "NATURE"
    ADVENTURE = "ADVENTURE"
    CULTURAL = "CULTURAL"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"           # Terminal; kept for legacy rows, never produced


class PaymentStatus(str, PyEnum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ── Mixins ────────────────────────────────────────────────────

class UUIDPrimaryKeyMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    Marketplace account. Role-specific fields are nullable and only
    meaningful for their role (expertise/daily_rate for guides,
    travel_preferences for tourists). Accounts are never hard-deleted.
    """
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.TOURIST
    )
    account_status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE
    )
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    languages: Mapped[List[str]] = mapped_column(JSONType, default=list)

    # Guide
    expertise: Mapped[List[str]] = mapped_column(JSONType, default=list)
    daily_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Tourist
    travel_preferences: Mapped[List[str]] = mapped_column(JSONType, default=list)

    __table_args__ = (
        Index("ix_users_role", "role"),
        Index("ix_users_account_status", "account_status"),
    )

    @property
    def is_active(self) -> bool:
        return self.account_status == AccountStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Tour(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A bookable guided activity owned by one guide."""
    __tablename__ = "tours"

    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    long_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[TourCategory] = mapped_column(Enum(TourCategory), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    meeting_point: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    tour_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    max_duration: Mapped[Decimal] = mapped_column(Numeric(4, 1), nullable=False)  # hours
    max_group_size: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    images: Mapped[List[str]] = mapped_column(JSONType, default=list)
    highlights: Mapped[List[str]] = mapped_column(JSONType, default=list)
    included: Mapped[List[str]] = mapped_column(JSONType, default=list)
    not_included: Mapped[List[str]] = mapped_column(JSONType, default=list)
    important_info: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_policy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    itinerary: Mapped[List[dict]] = mapped_column(JSONType, default=list)
    # e.g. [{"date": "2026-11-02", "times": ["09:00", "14:00"]}, ...]
    available_dates: Mapped[List[dict]] = mapped_column(JSONType, default=list)

    # Aggregates (denormalized for listing queries)
    rating: Mapped[Decimal] = mapped_column(Numeric(2, 1), default=Decimal("0.0"), nullable=False)
    review_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    booking_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[TourStatus] = mapped_column(
        Enum(TourStatus), nullable=False, default=TourStatus.ACTIVE
    )

    __table_args__ = (
        Index("ix_tours_guide_id", "guide_id"),
        Index("ix_tours_status", "status"),
        Index("ix_tours_category", "category"),
    )


class Booking(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    A tourist's reservation against a tour.
    Status transitions: PENDING → CONFIRMED → COMPLETED, with CANCELLED
    reachable from PENDING and CONFIRMED. Never deleted.
    """
    __tablename__ = "bookings"

    tourist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    tour_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tours.id"), nullable=False
    )
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )

    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    booking_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "HH:MM"
    number_of_guests: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_bookings_tourist_id", "tourist_id"),
        Index("ix_bookings_guide_id", "guide_id"),
        Index("ix_bookings_tour_id", "tour_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_booking_date", "booking_date"),
    )


class BookingAuditLog(UUIDPrimaryKeyMixin, Base):
    """Immutable log of booking status transitions and payment outcomes."""
    __tablename__ = "booking_audit_logs"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_booking_audit_logs_booking_id", "booking_id"),)


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    Payment for one booking. The unique booking_id is the only link between
    the two records, so a booking can never point at someone else's payment.
    """
    __tablename__ = "payments"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.UNPAID
    )
    gateway_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_payments_status", "status"),)


class RetiredTransaction(UUIDPrimaryKeyMixin, Base):
    """
    Transaction id a payment carried before it was re-armed, with the outcome
    the gateway reported for it. Late callbacks for the id resolve here.
    """
    __tablename__ = "retired_transactions"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id"), nullable=False
    )
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), nullable=False)
    retired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class Review(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Post-tour review. One per booking (enforced by unique constraint)."""
    __tablename__ = "reviews"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    tourist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    tour_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tours.id"), nullable=False
    )
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    helpful: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_tour_id", "tour_id"),
        Index("ix_reviews_guide_id", "guide_id"),
        Index("ix_reviews_tourist_id", "tourist_id"),
    )


class WishlistItem(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A tour saved by a user."""
    __tablename__ = "wishlist_items"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    tour_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tours.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "tour_id", name="uq_wishlist_user_tour"),
    )


class Conversation(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    Conversation between two users, stored with the smaller id first so
    (a, b) and (b, a) resolve to the same row.
    """
    __tablename__ = "conversations"

    user_a_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    user_b_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("user_a_id", "user_b_id", name="uq_conversation_pair"),
        Index("ix_conversations_user_b_id", "user_b_id"),
    )


class Message(UUIDPrimaryKeyMixin, Base):
    """Append-only message inside a conversation."""
    __tablename__ = "messages"

    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    receiver_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)
