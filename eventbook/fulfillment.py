from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from loguru import logger
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventbook.errors import (
    FulfillmentOrderMismatch,
    FulfillmentOrderNotFound,
    FulfillmentOrderNotPending,
    SeatLockMissingError,
)
from eventbook.inventory import release_order, seats_of_order, sell_seats
from eventbook.models import BookingType, Order, OrderStatus, Ticket, new_id, utcnow
from eventbook.payments import CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, VerifiedEvent
from eventbook.qr import render_qr_data_url


@dataclass(frozen=True)
class FulfillmentResult:
    order_id: str
    issued: int
    duplicate: bool = False


def ticket_code(event_id: str, serial_no: str, issued_at: datetime) -> str:
    return f'{event_id}-{serial_no}-{int(issued_at.timestamp() * 1000)}'


class FulfillmentProcessor:
    """Converts a verified payment completion into issued tickets.

    Webhook delivery is at-least-once; the PENDING -> PAID claim is a
    conditional update, so only one delivery ever issues tickets.
    """

    def __init__(
        self,
        session: AsyncSession,
        now: Callable[[], datetime] = utcnow,
        render_qr: Callable[[str], str] = render_qr_data_url,
    ) -> None:
        self._session = session
        self._now = now
        self._render_qr = render_qr

    async def fulfill(self, event: VerifiedEvent) -> FulfillmentResult | None:
        if event.type != CHECKOUT_COMPLETED:
            return None

        completion = event.completion()
        now = self._now()

        async with self._session.begin():
            order = await self._session.get(
                Order, completion.order_id, populate_existing=True
            )
            if order is None:
                raise FulfillmentOrderNotFound(completion.order_id)
            if order.event_id != completion.event_id:
                raise FulfillmentOrderMismatch(order.id, 'eventId')
            if order.booking_type != completion.booking_type:
                raise FulfillmentOrderMismatch(order.id, 'type')

            stm = (
                update(Order)
                .where(and_(Order.id == order.id, Order.status == OrderStatus.PENDING))
                .values(
                    status=OrderStatus.PAID,
                    payment_reference=completion.payment_reference,
                    paid_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            claimed = await self._session.execute(stm)

            if claimed.rowcount != 1:
                await self._session.refresh(order)
                if order.status == OrderStatus.PAID:
                    logger.info(f'Duplicate completion for order {order.id} ignored')
                    return FulfillmentResult(order_id=order.id, issued=0, duplicate=True)
                raise FulfillmentOrderNotPending(order.id, order.status.value)

            already_issued = await self._session.scalar(
                select(func.count()).select_from(Ticket).where(Ticket.order_id == order.id)
            )
            if already_issued:
                logger.info(f'Order {order.id} already has {already_issued} ticket(s)')
                return FulfillmentResult(order_id=order.id, issued=0, duplicate=True)

            tickets = await self._issue(order, now)
            self._session.add_all(tickets)

            if order.booking_type == BookingType.SEATED:
                await sell_seats(self._session, order)

            await self._session.refresh(order)

        logger.info(f'Order {order.id} PAID, issued {len(tickets)} ticket(s)')
        return FulfillmentResult(order_id=order.id, issued=len(tickets))

    async def expire(self, event: VerifiedEvent) -> bool:
        """Release the hold of a checkout the buyer never completed."""
        if event.type != CHECKOUT_EXPIRED:
            return False

        completion = event.completion()

        async with self._session.begin():
            order = await self._session.get(Order, completion.order_id)
            if order is None:
                raise FulfillmentOrderNotFound(completion.order_id)
            released = await release_order(self._session, order, self._now())

        if released:
            logger.info(f'Order {order.id} released after checkout expiry')
        return released

    async def _issue(self, order: Order, issued_at: datetime) -> list[Ticket]:
        if order.booking_type == BookingType.GA:
            units = [(f'{order.id}-GA-{n}', None) for n in range(1, order.quantity + 1)]
        else:
            seats = await seats_of_order(self._session, order)
            if len(seats) != order.quantity:
                raise SeatLockMissingError(order.id)
            units = [(f'{order.id}-{seat.label}', seat.id) for seat in seats]

        tickets = []
        for serial_no, seat_id in units:
            code = ticket_code(order.event_id, serial_no, issued_at)
            tickets.append(
                Ticket(
                    id=new_id(),
                    order_id=order.id,
                    event_id=order.event_id,
                    owner_id=order.user_id,
                    seat_id=seat_id,
                    serial_no=serial_no,
                    code=code,
                    qr_data_url=self._render_qr(code),
                    issued_at=issued_at,
                )
            )
        return tickets
