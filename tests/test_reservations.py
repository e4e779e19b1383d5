import asyncio
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select
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
from eventbook.models import (
    BookingType,
    Event,
    Order,
    OrderSeat,
    OrderStatus,
    Seat,
    SeatLock,
    SeatStatus,
    utcnow,
)
from eventbook.reservations import Reservation, ReservationManager
from eventbook.schemas import CheckoutRequest
from eventbook.settings import Settings


def ga_request(event_id: str, quantity: int) -> CheckoutRequest:
    return CheckoutRequest(event_id=event_id, type=BookingType.GA, quantity=quantity)


def seated_request(event_id: str, seat_ids: list[str]) -> CheckoutRequest:
    return CheckoutRequest(event_id=event_id, type=BookingType.SEATED, seat_ids=seat_ids)


async def order_count(session: AsyncSession) -> int:
    async with session.begin():
        return await session.scalar(select(func.count()).select_from(Order))


async def test_general_admission_beyond_capacity_is_rejected(
    async_session: AsyncSession, make_event, gateway, settings
):
    event = await make_event(capacity=20, ga_reserved=18, price_cents=1500)
    event_id = event.id
    manager = ReservationManager(async_session, gateway, settings)

    with pytest.raises(InventoryExhaustedError):
        await manager.reserve('buyer-1', ga_request(event_id, 3))

    assert await order_count(async_session) == 0
    assert gateway.requests == []

    reservation = await manager.reserve('buyer-1', ga_request(event_id, 2))

    order = reservation.order
    assert order.status == OrderStatus.PENDING
    assert order.quantity == 2
    assert order.amount_total_cents == 2 * 1500
    assert order.payment_session_id == reservation.checkout.id
    assert await order_count(async_session) == 1

    async with async_session.begin():
        reserved = await async_session.scalar(
            select(Event.ga_reserved).where(Event.id == event_id)
        )
    assert reserved == 20


async def test_general_admission_checkout_request(
    async_session: AsyncSession, make_event, gateway, settings
):
    event = await make_event(title='Harbour Lights', price_cents=2500)
    manager = ReservationManager(async_session, gateway, settings)

    reservation = await manager.reserve('buyer-1', ga_request(event.id, 4))

    [request] = gateway.requests
    [line] = request['lines']
    assert line.name == 'Harbour Lights - General Admission'
    assert line.unit_amount_cents == 2500
    assert line.quantity == 4
    assert request['metadata'] == {
        'orderId': reservation.order.id,
        'eventId': event.id,
        'type': 'GA',
    }
    assert request['success_url'] == 'https://tickets.test/wallet?success=true'
    assert request['cancel_url'] == f'https://tickets.test/events/{event.id}?cancelled=true'


async def test_seated_reservation_prices_and_locks_each_seat(
    async_session: AsyncSession, make_event, make_seats, gateway, settings
):
    now = utcnow()
    event = await make_event(price_cents=3000)
    [regular] = await make_seats(event, ['A1'])
    [premium] = await make_seats(event, ['A2'], section='Front', price_cents=4500)
    manager = ReservationManager(async_session, gateway, settings, now=lambda: now)

    reservation = await manager.reserve(
        'buyer-1', seated_request(event.id, [premium.id, regular.id])
    )

    order = reservation.order
    assert order.booking_type == BookingType.SEATED
    assert order.quantity == 2
    assert order.amount_total_cents == 3000 + 4500
    assert order.expires_at == now + timedelta(
        minutes=settings.HOLD_MINUTES + settings.CHECKOUT_GRACE_MINUTES
    )
    assert gateway.requests[0]['expires_at'] == now + timedelta(
        minutes=settings.HOLD_MINUTES
    )

    async with async_session.begin():
        statuses = (
            await async_session.scalars(
                select(Seat.status).where(Seat.id.in_([regular.id, premium.id]))
            )
        ).all()
        locks = (
            await async_session.execute(select(SeatLock.seat_id, SeatLock.order_id))
        ).all()
        requested = (
            await async_session.scalars(
                select(OrderSeat.seat_id).where(OrderSeat.order_id == order.id)
            )
        ).all()

    assert set(statuses) == {SeatStatus.LOCKED}
    assert set(locks) == {(regular.id, order.id), (premium.id, order.id)}
    assert set(requested) == {regular.id, premium.id}

    descriptions = {line.name: line.description for line in gateway.requests[0]['lines']}
    assert descriptions == {
        'Harbour Lights - Seat A1': 'Seat A1 in Floor section for Harbour Lights',
        'Harbour Lights - Seat A2': 'Seat A2 in Front section for Harbour Lights',
    }


async def test_concurrent_reservations_for_one_seat(
    session_factory, make_event, make_seats, gateway, settings
):
    event = await make_event()
    [a1] = await make_seats(event, ['A1'])
    [a2] = await make_seats(event, ['A2'])

    async with session_factory() as first, session_factory() as second:
        results = await asyncio.gather(
            ReservationManager(first, gateway, settings).reserve(
                'buyer-1', seated_request(event.id, [a1.id])
            ),
            ReservationManager(second, gateway, settings).reserve(
                'buyer-2', seated_request(event.id, [a1.id, a2.id])
            ),
            return_exceptions=True,
        )

    failures = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], SeatsUnavailableError)

    async with session_factory() as session:
        async with session.begin():
            locks = (await session.scalars(select(SeatLock.seat_id))).all()
            orders = await session.scalar(select(func.count()).select_from(Order))

    assert orders == 1
    assert a1.id in locks
    assert len(locks) == successes[0].order.quantity


async def test_concurrent_general_admission_never_oversells(
    session_factory, make_event, gateway, settings
):
    event = await make_event(capacity=5)
    event_id = event.id
    buyers = 4

    async def buy(n: int):
        async with session_factory() as session:
            manager = ReservationManager(session, gateway, settings)
            return await manager.reserve(f'buyer-{n}', ga_request(event_id, 3))

    results = await asyncio.gather(
        *(buy(n) for n in range(buyers)), return_exceptions=True
    )

    successes = [r for r in results if isinstance(r, Reservation)]
    failures = [r for r in results if isinstance(r, InventoryExhaustedError)]
    assert len(successes) == 1
    assert len(failures) == buyers - 1

    async with session_factory() as session:
        async with session.begin():
            capacity, reserved = (
                await session.execute(
                    select(Event.capacity, Event.ga_reserved).where(Event.id == event_id)
                )
            ).one()
            orders = await session.scalar(select(func.count()).select_from(Order))

    assert reserved == 3
    assert reserved <= capacity
    assert orders == 1


@pytest.mark.parametrize('hold_minutes', [10, 30])
def test_hold_shorter_than_a_checkout_session_is_rejected(hold_minutes):
    with pytest.raises(ValidationError):
        Settings(HOLD_MINUTES=hold_minutes)


async def test_reservation_requires_a_published_event(
    async_session: AsyncSession, make_event, gateway, settings
):
    draft = await make_event(published=False)
    draft_id = draft.id
    manager = ReservationManager(async_session, gateway, settings)

    with pytest.raises(EventNotPublishedError):
        await manager.reserve('buyer-1', ga_request(draft_id, 1))

    with pytest.raises(EventNotFoundError):
        await manager.reserve('buyer-1', ga_request('missing-event', 1))


async def test_gateway_failure_releases_the_hold(
    async_session: AsyncSession, make_event, make_seats, gateway, settings
):
    event = await make_event(capacity=10)
    event_id = event.id
    [seat] = await make_seats(event, ['C3'])
    seat_id = seat.id
    gateway.fail = True
    manager = ReservationManager(async_session, gateway, settings)

    with pytest.raises(PaymentGatewayError):
        await manager.reserve('buyer-1', ga_request(event_id, 2))
    with pytest.raises(PaymentGatewayError):
        await manager.reserve('buyer-1', seated_request(event_id, [seat_id]))

    async with async_session.begin():
        statuses = (await async_session.scalars(select(Order.status))).all()
        reserved = await async_session.scalar(
            select(Event.ga_reserved).where(Event.id == event_id)
        )
        seat_status = await async_session.scalar(
            select(Seat.status).where(Seat.id == seat_id)
        )
        locks = await async_session.scalar(select(func.count()).select_from(SeatLock))

    assert statuses == [OrderStatus.CANCELLED, OrderStatus.CANCELLED]
    assert reserved == 0
    assert seat_status == SeatStatus.AVAILABLE
    assert locks == 0


async def test_expired_holds_are_released_before_reserving(
    async_session: AsyncSession, make_event, make_seats, gateway, settings
):
    event = await make_event(capacity=2)
    [seat] = await make_seats(event, ['A1'])
    long_ago = utcnow() - timedelta(
        minutes=settings.HOLD_MINUTES + settings.CHECKOUT_GRACE_MINUTES + 5
    )

    abandoned = ReservationManager(async_session, gateway, settings, now=lambda: long_ago)
    stale_seat = await abandoned.reserve('buyer-1', seated_request(event.id, [seat.id]))
    stale_ga = await abandoned.reserve('buyer-1', ga_request(event.id, 2))

    manager = ReservationManager(async_session, gateway, settings)
    fresh_seat = await manager.reserve('buyer-2', seated_request(event.id, [seat.id]))
    fresh_ga = await manager.reserve('buyer-2', ga_request(event.id, 2))

    async with async_session.begin():
        statuses = dict(
            (await async_session.execute(select(Order.id, Order.status))).all()
        )

    assert statuses == {
        stale_seat.order.id: OrderStatus.CANCELLED,
        stale_ga.order.id: OrderStatus.CANCELLED,
        fresh_seat.order.id: OrderStatus.PENDING,
        fresh_ga.order.id: OrderStatus.PENDING,
    }


async def test_buyer_cancels_pending_order(
    async_session: AsyncSession, make_event, make_seats, gateway, settings
):
    event = await make_event()
    [seat] = await make_seats(event, ['A1'])
    manager = ReservationManager(async_session, gateway, settings)
    seat_id = seat.id
    reservation = await manager.reserve('buyer-1', seated_request(event.id, [seat.id]))
    order_id = reservation.order.id

    with pytest.raises(OrderNotFoundError):
        await manager.cancel('someone-else', order_id)

    cancelled = await manager.cancel('buyer-1', order_id)

    assert cancelled.status == OrderStatus.CANCELLED
    async with async_session.begin():
        seat_status = await async_session.scalar(
            select(Seat.status).where(Seat.id == seat_id)
        )
    assert seat_status == SeatStatus.AVAILABLE

    with pytest.raises(OrderNotPendingError):
        await manager.cancel('buyer-1', order_id)
