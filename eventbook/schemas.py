from datetime import datetime

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from eventbook.models import BookingType, OrderStatus, SeatStatus


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Events


class EventBase(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    category: str = Field(min_length=1)
    start_at: AwareDatetime
    end_at: AwareDatetime
    venue_name: str = Field(min_length=1)
    venue_city: str = Field(min_length=1)
    cover_image_url: str | None = None
    currency: str = Field(default='USD', min_length=3, max_length=3)
    price_cents: int = Field(ge=0)
    capacity: int = Field(ge=1)
    published: bool = False


class EventRequestCreate(EventBase):
    slug: str = Field(min_length=1, pattern=r'^[a-z0-9-]+$')

    @model_validator(mode='after')
    def check_schedule(self):
        if self.end_at < self.start_at:
            raise ValueError('end_at must not be before start_at')
        return self


class EventRequestUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    category: str | None = Field(default=None, min_length=1)
    start_at: AwareDatetime | None = None
    end_at: AwareDatetime | None = None
    venue_name: str | None = Field(default=None, min_length=1)
    venue_city: str | None = Field(default=None, min_length=1)
    cover_image_url: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    price_cents: int | None = Field(default=None, ge=0)
    capacity: int | None = Field(default=None, ge=1)
    published: bool | None = None


class EventResponse(EventBase, ORMModel):
    id: str
    slug: str
    organizer_id: str
    created_at: datetime


class SeatResponse(ORMModel):
    id: str
    label: str
    section: str | None
    price_cents: int | None
    status: SeatStatus


class EventDetailResponse(EventResponse):
    seats: list[SeatResponse]
    available_ga: int
    has_seating: bool


class ListEvents(BaseModel):
    events: list[EventResponse]


class SectionLayout(BaseModel):
    name: str = Field(min_length=1)
    rows: int = Field(ge=1, le=26)
    cols: int = Field(ge=1)
    price_adj_cents: int = 0
    start_row: int = Field(default=1, ge=1, le=26)
    start_col: int = Field(default=1, ge=1)

    @model_validator(mode='after')
    def check_rows(self):
        if self.start_row + self.rows - 1 > 26:
            raise ValueError('rows run past Z')
        return self


class SectionsRequest(BaseModel):
    sections: list[SectionLayout]


class SectionsResponse(BaseModel):
    seats_created: int


# Checkout and orders


class CheckoutRequest(BaseModel):
    event_id: str
    type: BookingType
    quantity: int | None = Field(default=None, ge=1)
    seat_ids: list[str] | None = None

    @model_validator(mode='after')
    def check_selection(self):
        if self.type == BookingType.GA:
            if self.quantity is None:
                raise ValueError('quantity is required for GA tickets')
        else:
            if not self.seat_ids:
                raise ValueError('seat selection is required for seated tickets')
            if len(set(self.seat_ids)) != len(self.seat_ids):
                raise ValueError('seat_ids must be unique')
        return self


class CheckoutResponse(BaseModel):
    order_id: str
    session_id: str
    url: str


class OrderResponse(ORMModel):
    id: str
    user_id: str
    event_id: str
    booking_type: BookingType
    quantity: int
    amount_total_cents: int
    currency: str
    status: OrderStatus
    payment_session_id: str | None
    expires_at: datetime
    created_at: datetime
    paid_at: datetime | None
    cancelled_at: datetime | None


class OrderTicket(ORMModel):
    id: str
    serial_no: str
    seat_id: str | None


class AdminOrderResponse(OrderResponse):
    payment_reference: str | None
    tickets: list[OrderTicket]


class ListOrders(BaseModel):
    orders: list[AdminOrderResponse]


# Tickets


class TicketSummary(BaseModel):
    event_title: str
    venue_name: str
    seat_label: str | None = None
    seat_section: str | None = None
    scanned_at: datetime | None = None


class ValidationRequest(BaseModel):
    code: str = Field(min_length=1)


class ValidationResponse(BaseModel):
    ok: bool
    code: str
    message: str
    ticket: TicketSummary | None = None


class WalletTicket(BaseModel):
    id: str
    order_id: str
    event_id: str
    serial_no: str
    code: str
    qr_data_url: str
    issued_at: datetime
    validated_at: datetime | None
    event_title: str
    event_start_at: datetime
    event_end_at: datetime
    venue_name: str
    venue_city: str
    cover_image_url: str | None
    seat_label: str | None
    seat_section: str | None


class Wallet(BaseModel):
    tickets: list[WalletTicket]


class WebhookResponse(BaseModel):
    received: bool = True
    anomaly: str | None = None
