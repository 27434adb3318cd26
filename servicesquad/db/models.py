from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Uuid,
    Enum as SQLAEnum,
    text,
)
from sqlalchemy.orm import (
    declarative_base,
    Mapped,
    mapped_column,
    relationship,
)
from enum import Enum as PyEnum
from datetime import date, datetime
import uuid
from typing import Any, Dict, List, Optional, Protocol

from utils.utils import utcnow

Base = declarative_base()

# ---- Protocol ----
class HasId(Protocol):
    id: Mapped[Any]

# ---- Enums ----
class BookingStatus(str, PyEnum):
    pending = "pending"
    accepted = "accepted"
    confirmed = "confirmed"
    on_the_way = "on-the-way"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"
    rejected = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BookingStatus.completed, BookingStatus.cancelled, BookingStatus.rejected})
NON_TERMINAL_STATUSES = tuple(s for s in BookingStatus if s not in TERMINAL_STATUSES)

_ACTIVE_SLOT_PREDICATE = text(
    "status IN ({})".format(", ".join(f"'{s.value}'" for s in NON_TERMINAL_STATUSES))
)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ---- Models ----
class Provider(Base):
    __tablename__ = "provider"

    id: Mapped[str] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(default="")
    completed_jobs: Mapped[int] = mapped_column(default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ProviderAvailability(Base):
    __tablename__ = "provider_availability"

    provider_id: Mapped[str] = mapped_column(primary_key=True)
    weekly_schedule: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    custom_days_off: Mapped[List[str]] = mapped_column(JSON, default=list)
    booking_buffer: Mapped[int] = mapped_column(default=30)
    advance_booking_days: Mapped[int] = mapped_column(default=30)
    is_accepting_bookings: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Booking(Base):
    __tablename__ = "booking"
    __table_args__ = (
        Index("ix_booking_provider_date", "provider_id", "scheduled_date"),
        # no two live bookings may hold the same provider slot
        Index(
            "uq_booking_provider_slot_active",
            "provider_id",
            "scheduled_date",
            "scheduled_slot",
            unique=True,
            postgresql_where=_ACTIVE_SLOT_PREDICATE,
            sqlite_where=_ACTIVE_SLOT_PREDICATE,
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[str] = mapped_column(index=True)
    customer_name: Mapped[str] = mapped_column(default="")
    provider_id: Mapped[str] = mapped_column()
    provider_name: Mapped[str] = mapped_column(default="")
    service_id: Mapped[str] = mapped_column()
    service_name: Mapped[str] = mapped_column(default="")
    status: Mapped[BookingStatus] = mapped_column(
        SQLAEnum(
            BookingStatus,
            name="booking_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        default=BookingStatus.pending,
        nullable=False
    )
    scheduled_date: Mapped[date] = mapped_column(Date)
    scheduled_slot: Mapped[str] = mapped_column()

    street: Mapped[str] = mapped_column(default="")
    apartment: Mapped[Optional[str]] = mapped_column(nullable=True)
    city: Mapped[str] = mapped_column(default="")
    state: Mapped[str] = mapped_column(default="")
    pincode: Mapped[str] = mapped_column(default="")
    landmark: Mapped[Optional[str]] = mapped_column(nullable=True)
    lat: Mapped[Optional[float]] = mapped_column(nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(nullable=True)

    price: Mapped[float] = mapped_column(default=0.0)
    notes: Mapped[Optional[str]] = mapped_column(nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    notifications: Mapped[List["Notification"]] = relationship(back_populates="booking")


class Notification(Base):
    __tablename__ = "notification"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(index=True)
    booking_id: Mapped[Optional[int]] = mapped_column(ForeignKey("booking.id", ondelete="SET NULL"), nullable=True)
    kind: Mapped[str] = mapped_column()
    title: Mapped[str] = mapped_column()
    body: Mapped[str] = mapped_column()
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    is_read: Mapped[bool] = mapped_column(default=False)
    message_send_id: Mapped[uuid.UUID] = mapped_column(Uuid, default=uuid.uuid4, unique=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    booking: Mapped[Optional["Booking"]] = relationship(back_populates="notifications")
