from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from eventbook.errors import (
    EventNotFoundError,
    EventNotPublishedError,
    InventoryExhaustedError,
    OrderNotFoundError,
    OrderNotPendingError,
    PaymentGatewayError,
    SeatsUnavailableError,
)
from eventbook.inventory import (
    hold_general_admission,
    lock_seats,
    release_expired_orders,
    release_order,
)
from eventbook.models import (
    BookingType,
    Event,
    Order,
    OrderSeat,
    OrderStatus,
    Seat,
    SeatLock,
    new_id,
    utcnow,
)
from eventbook.payments import CheckoutSession, PaymentGateway, checkout_lines
from eventbook.schemas import CheckoutRequest
from eventbook.settings import Settings


def seat_price(seat: Seat, event: Event) -> int:
    return seat.price_cents if seat.price_cents is not None else event.price_cents


@dataclass(frozen=True)
class Reservation:
    order: Order
    checkout: CheckoutSession


class ReservationManager:
    """Turns a buyer's request into a priced, time-boxed hold plus a checkout."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: Settings,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._settings = settings
        self._now = now

    async def reserve(self, user_id: str, request: CheckoutRequest) -> Reservation:
        now = self._now()

        async with self._session.begin():
            event = await self._session.get(
                Event, request.event_id, populate_existing=True
            )
            if event is None:
                raise EventNotFoundError(request.event_id)
            if not event.published:
                raise EventNotPublishedError(event.id)
            await release_expired_orders(self._session, now, event_id=event.id)
            event_id = event.id

        checkout_expires_at = now + timedelta(minutes=self._settings.HOLD_MINUTES)
        expires_at = checkout_expires_at + timedelta(
            minutes=self._settings.CHECKOUT_GRACE_MINUTES
        )
        seats: list[Seat] = []

        try:
            async with self._session.begin():
                if request.type == BookingType.GA:
                    quantity = request.quantity
                    await hold_general_admission(self._session, event, quantity)
                    amount = event.price_cents * quantity
                else:
                    seats = await lock_seats(self._session, event, request.seat_ids)
                    quantity = len(seats)
                    amount = sum(seat_price(seat, event) for seat in seats)

                order = Order(
                    id=new_id(),
                    user_id=user_id,
                    event_id=event.id,
                    booking_type=request.type,
                    quantity=quantity,
                    amount_total_cents=amount,
                    currency=event.currency,
                    status=OrderStatus.PENDING,
                    expires_at=expires_at,
                    created_at=now,
                )
                self._session.add(order)
                await self._session.flush()

                self._session.add_all(
                    [OrderSeat(order_id=order.id, seat_id=seat.id) for seat in seats]
                )
                self._session.add_all(
                    [
                        SeatLock(
                            seat_id=seat.id,
                            order_id=order.id,
                            user_id=user_id,
                            expires_at=expires_at,
                            created_at=now,
                        )
                        for seat in seats
                    ]
                )
        except (InventoryExhaustedError, SeatsUnavailableError) as exc:
            logger.info(f'Reservation for event {event_id} by {user_id} rejected: {exc}')
            raise

        logger.info(
            f'Order {order.id} PENDING: {quantity} x {request.type.value} '
            f'for event {event.id}, {amount} {event.currency}'
        )

        base_url = self._settings.PUBLIC_BASE_URL.rstrip('/')
        try:
            checkout = await self._gateway.create_checkout_session(
                order,
                event,
                checkout_lines(event, request.type, quantity, seats),
                success_url=f'{base_url}/wallet?success=true',
                cancel_url=f'{base_url}/events/{event.id}?cancelled=true',
                expires_at=checkout_expires_at,
            )
        except PaymentGatewayError:
            async with self._session.begin():
                await release_order(self._session, order, self._now())
            logger.warning(f'Order {order.id} released after checkout failure')
            raise

        async with self._session.begin():
            order.payment_session_id = checkout.id

        logger.info(f'Checkout session {checkout.id} opened for order {order.id}')
        return Reservation(order=order, checkout=checkout)

    async def cancel(self, user_id: str, order_id: str) -> Order:
        async with self._session.begin():
            order = await self._session.get(Order, order_id, populate_existing=True)
            if order is None or order.user_id != user_id:
                raise OrderNotFoundError(order_id)

            if not await release_order(self._session, order, self._now()):
                await self._session.refresh(order)
                raise OrderNotPendingError(order.id, order.status.value)

        logger.info(f'Order {order.id} cancelled by buyer')
        return order
