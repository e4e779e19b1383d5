from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventbook.errors import OrderNotFoundError
from eventbook.models import Event, Order, Seat, Ticket


async def get_wallet(session: AsyncSession, owner_id: str) -> list[dict]:
    """Tickets of one buyer, newest first, with event and seat summaries."""
    stm = (
        select(Ticket, Event, Seat)
        .join(Event, Event.id == Ticket.event_id)
        .outerjoin(Seat, Seat.id == Ticket.seat_id)
        .where(Ticket.owner_id == owner_id)
        .order_by(Ticket.issued_at.desc(), Ticket.serial_no)
    )

    async with session.begin():
        rows = (await session.execute(stm)).all()

    return [
        {
            'id': ticket.id,
            'order_id': ticket.order_id,
            'event_id': ticket.event_id,
            'serial_no': ticket.serial_no,
            'code': ticket.code,
            'qr_data_url': ticket.qr_data_url,
            'issued_at': ticket.issued_at,
            'validated_at': ticket.validated_at,
            'event_title': event.title,
            'event_start_at': event.start_at,
            'event_end_at': event.end_at,
            'venue_name': event.venue_name,
            'venue_city': event.venue_city,
            'cover_image_url': event.cover_image_url,
            'seat_label': seat.label if seat else None,
            'seat_section': seat.section if seat else None,
        }
        for ticket, event, seat in rows
    ]


async def get_order(session: AsyncSession, owner_id: str, order_id: str) -> Order:
    async with session.begin():
        order = await session.get(Order, order_id, populate_existing=True)

    # other buyers' orders are indistinguishable from missing ones
    if order is None or order.user_id != owner_id:
        raise OrderNotFoundError(order_id)
    return order
