import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite has no timezone support, so values are stored as naive UTC there
    and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            raise ValueError('naive datetime given for a UTC column')
        value = value.astimezone(timezone.utc)
        if dialect.name == 'sqlite':
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class SeatStatus(str, enum.Enum):
    AVAILABLE = 'AVAILABLE'
    LOCKED = 'LOCKED'
    SOLD = 'SOLD'


class OrderStatus(str, enum.Enum):
    PENDING = 'PENDING'
    PAID = 'PAID'
    CANCELLED = 'CANCELLED'


class BookingType(str, enum.Enum):
    GA = 'GA'
    SEATED = 'SEATED'


class Base(DeclarativeBase, AsyncAttrs):
    pass


class Event(Base):
    __tablename__ = 'events'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String(200), unique=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, default=None)
    category: Mapped[str] = mapped_column(String(100))
    venue_name: Mapped[str] = mapped_column(String(255))
    venue_city: Mapped[str] = mapped_column(String(255))
    cover_image_url: Mapped[str | None] = mapped_column(String(500), default=None)
    currency: Mapped[str] = mapped_column(String(3), default='USD')
    price_cents: Mapped[int]
    capacity: Mapped[int]
    # GA units claimed by PENDING orders plus GA tickets already sold
    ga_reserved: Mapped[int] = mapped_column(default=0)
    published: Mapped[bool] = mapped_column(default=False)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime)
    organizer_id: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (Index('ix_events_published_start_at', 'published', 'start_at'),)


class Seat(Base):
    __tablename__ = 'seats'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        ForeignKey('events.id', ondelete='CASCADE'), index=True
    )
    label: Mapped[str] = mapped_column(String(16))
    section: Mapped[str | None] = mapped_column(String(100), default=None)
    price_cents: Mapped[int | None] = mapped_column(default=None)
    status: Mapped[SeatStatus] = mapped_column(
        Enum(SeatStatus, native_enum=False, length=16),
        default=SeatStatus.AVAILABLE,
    )

    __table_args__ = (UniqueConstraint('event_id', 'label', name='uq_seats_event_label'),)


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    event_id: Mapped[str] = mapped_column(ForeignKey('events.id'), index=True)
    booking_type: Mapped[BookingType] = mapped_column(
        Enum(BookingType, native_enum=False, length=16)
    )
    quantity: Mapped[int]
    amount_total_cents: Mapped[int]
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False, length=16),
        default=OrderStatus.PENDING,
    )
    payment_session_id: Mapped[str | None] = mapped_column(String(255), default=None)
    payment_reference: Mapped[str | None] = mapped_column(String(255), default=None)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)

    __table_args__ = (Index('ix_orders_status_expires_at', 'status', 'expires_at'),)


class OrderSeat(Base):
    """Seats requested by a SEATED order, recorded at reservation time."""

    __tablename__ = 'order_seats'

    order_id: Mapped[str] = mapped_column(
        ForeignKey('orders.id', ondelete='CASCADE'), primary_key=True
    )
    seat_id: Mapped[str] = mapped_column(
        ForeignKey('seats.id', ondelete='CASCADE'), primary_key=True
    )


class SeatLock(Base):
    __tablename__ = 'seat_locks'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    seat_id: Mapped[str] = mapped_column(
        ForeignKey('seats.id', ondelete='CASCADE'), unique=True
    )
    order_id: Mapped[str] = mapped_column(
        ForeignKey('orders.id', ondelete='CASCADE'), index=True
    )
    user_id: Mapped[str] = mapped_column(String(64))
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Ticket(Base):
    __tablename__ = 'tickets'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey('orders.id'), index=True)
    event_id: Mapped[str] = mapped_column(ForeignKey('events.id'), index=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    # NULL for general admission; a seat carries at most one ticket
    seat_id: Mapped[str | None] = mapped_column(
        ForeignKey('seats.id'), unique=True, default=None
    )
    serial_no: Mapped[str] = mapped_column(String(128), unique=True)
    code: Mapped[str] = mapped_column(String(255), unique=True)
    qr_data_url: Mapped[str] = mapped_column(Text)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    validated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    validated_by: Mapped[str | None] = mapped_column(String(64), default=None)
