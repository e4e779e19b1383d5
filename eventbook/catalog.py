"""Event listing and organizer administration."""

from collections.abc import Callable
from datetime import datetime

from loguru import logger
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventbook.errors import (
    CapacityBelowReservedError,
    EventNotFoundError,
    ForbiddenError,
    InvalidScheduleError,
    SeatMapLockedError,
    SlugTakenError,
)
from eventbook.models import (
    Event,
    Order,
    OrderStatus,
    Seat,
    SeatStatus,
    Ticket,
    new_id,
    utcnow,
)
from eventbook.schemas import (
    EventRequestCreate,
    EventRequestUpdate,
    SectionLayout,
)


def seat_label(row: int, col: int) -> str:
    """Row 1 is ``A``; ``seat_label(2, 7) == 'B7'``."""
    return f'{chr(64 + row)}{col}'


def section_seats(event: Event, layout: SectionLayout) -> list[Seat]:
    price_cents = None
    if layout.price_adj_cents:
        price_cents = event.price_cents + layout.price_adj_cents
    return [
        Seat(
            id=new_id(),
            event_id=event.id,
            label=seat_label(row, col),
            section=layout.name,
            price_cents=price_cents,
            status=SeatStatus.AVAILABLE,
        )
        for row in range(layout.start_row, layout.start_row + layout.rows)
        for col in range(layout.start_col, layout.start_col + layout.cols)
    ]


class Catalog:
    def __init__(
        self, session: AsyncSession, now: Callable[[], datetime] = utcnow
    ) -> None:
        self._session = session
        self._now = now

    async def list_published_events(self) -> list[Event]:
        async with self._session.begin():
            events = await self._session.scalars(
                select(Event)
                .where(
                    Event.published == True,  # noqa: E712
                    Event.end_at >= self._now(),
                )
                .order_by(Event.start_at)
            )
            return list(events.all())

    async def get_event_detail(self, event_id: str) -> dict:
        async with self._session.begin():
            event = await self._session.get(Event, event_id, populate_existing=True)
            if event is None or not event.published:
                raise EventNotFoundError(event_id)

            seats = await self._session.scalars(
                select(Seat)
                .where(Seat.event_id == event.id, Seat.status == SeatStatus.AVAILABLE)
                .order_by(Seat.section, Seat.label)
            )
            seat_count = await self._session.scalar(
                select(func.count()).select_from(Seat).where(Seat.event_id == event.id)
            )

        return {
            **_event_fields(event),
            'seats': list(seats.all()),
            'available_ga': max(event.capacity - event.ga_reserved, 0),
            'has_seating': bool(seat_count),
        }

    async def create_event(self, organizer_id: str, event_in: EventRequestCreate) -> Event:
        async with self._session.begin():
            taken = await self._session.scalar(
                select(Event.id).where(Event.slug == event_in.slug)
            )
            if taken:
                raise SlugTakenError(event_in.slug)

            event = Event(
                id=new_id(),
                organizer_id=organizer_id,
                ga_reserved=0,
                created_at=self._now(),
                **event_in.model_dump(),
            )
            self._session.add(event)

        logger.info(f'Event {event.id} ({event.slug}) created by {organizer_id}')
        return event

    async def update_event(
        self, organizer_id: str, event_id: str, event_in: EventRequestUpdate
    ) -> Event:
        changes = {
            field: value
            for field, value in event_in.model_dump(exclude_unset=True).items()
            if value is not None
        }
        capacity = changes.pop('capacity', None)

        async with self._session.begin():
            event = await self._session.get(Event, event_id, populate_existing=True)
            if event is None:
                raise EventNotFoundError(event_id)
            if event.organizer_id != organizer_id:
                raise ForbiddenError('Only the organizer can change the event')

            for field, value in changes.items():
                setattr(event, field, value)
            if event.end_at < event.start_at:
                raise InvalidScheduleError()

            if capacity is not None:
                # GA holds race with this update; the counter is checked in SQL
                stm = (
                    update(Event)
                    .where(and_(Event.id == event.id, Event.ga_reserved <= capacity))
                    .values(capacity=capacity)
                    .execution_options(synchronize_session=False)
                )
                resized = await self._session.execute(stm)
                if resized.rowcount != 1:
                    await self._session.refresh(event)
                    raise CapacityBelowReservedError(event.ga_reserved)

            await self._session.flush()
            await self._session.refresh(event)

        updated = [*changes, 'capacity'] if capacity is not None else list(changes)
        logger.info(f'Event {event.id} updated: {", ".join(updated) or "no changes"}')
        return event

    async def replace_seat_map(
        self, organizer_id: str, event_id: str, sections: list[SectionLayout]
    ) -> int:
        async with self._session.begin():
            event = await self._session.get(Event, event_id, populate_existing=True)
            if event is None:
                raise EventNotFoundError(event_id)
            if event.organizer_id != organizer_id:
                raise ForbiddenError('Only the organizer can change the seat map')

            in_use = await self._session.scalar(
                select(func.count())
                .select_from(Seat)
                .where(Seat.event_id == event.id, Seat.status != SeatStatus.AVAILABLE)
            )
            if in_use:
                raise SeatMapLockedError()

            await self._session.execute(delete(Seat).where(Seat.event_id == event.id))
            seats = [seat for layout in sections for seat in section_seats(event, layout)]
            self._session.add_all(seats)

        logger.info(f'Seat map of event {event.id} replaced with {len(seats)} seat(s)')
        return len(seats)

    async def list_orders(
        self, event_id: str | None = None, status: OrderStatus | None = None
    ) -> list[dict]:
        stm = select(Order).order_by(Order.created_at.desc())
        if event_id is not None:
            stm = stm.where(Order.event_id == event_id)
        if status is not None:
            stm = stm.where(Order.status == status)

        async with self._session.begin():
            orders = (await self._session.scalars(stm)).all()
            tickets = (
                await self._session.scalars(
                    select(Ticket)
                    .where(Ticket.order_id.in_([order.id for order in orders]))
                    .order_by(Ticket.serial_no)
                )
            ).all()

        by_order: dict[str, list[Ticket]] = {}
        for ticket in tickets:
            by_order.setdefault(ticket.order_id, []).append(ticket)

        return [
            {**_order_fields(order), 'tickets': by_order.get(order.id, [])}
            for order in orders
        ]


def _event_fields(event: Event) -> dict:
    return {column.key: getattr(event, column.key) for column in Event.__table__.columns}


def _order_fields(order: Order) -> dict:
    return {column.key: getattr(order, column.key) for column in Order.__table__.columns}
