"""Seat and general-admission inventory transitions.

Seats move AVAILABLE -> LOCKED -> SOLD, or back to AVAILABLE when a hold is
released. GA capacity is claimed on ``Event.ga_reserved``. Every transition is a
single conditional UPDATE whose affected-row count decides the outcome, so
concurrent requests are arbitrated by the database.

These helpers run inside the caller's transaction; raising aborts it.
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime

from loguru import logger
from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventbook.errors import (
    InventoryExhaustedError,
    SeatLockMissingError,
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


async def lock_seats(
    session: AsyncSession, event: Event, seat_ids: Sequence[str]
) -> list[Seat]:
    requested = list(dict.fromkeys(seat_ids))

    stm = (
        update(Seat)
        .where(
            and_(
                Seat.event_id == event.id,
                Seat.id.in_(requested),
                Seat.status == SeatStatus.AVAILABLE,
            )
        )
        .values(status=SeatStatus.LOCKED)
        .execution_options(synchronize_session=False)
    )
    locked = await session.execute(stm)

    if locked.rowcount != len(requested):
        raise SeatsUnavailableError(requested)

    seats = await session.scalars(
        select(Seat)
        .where(Seat.id.in_(requested))
        .order_by(Seat.section, Seat.label)
        .execution_options(populate_existing=True)
    )
    return list(seats.all())


async def hold_general_admission(
    session: AsyncSession, event: Event, quantity: int
) -> None:
    stm = (
        update(Event)
        .where(
            and_(
                Event.id == event.id,
                Event.ga_reserved + quantity <= Event.capacity,
            )
        )
        .values(ga_reserved=Event.ga_reserved + quantity)
        .execution_options(synchronize_session=False)
    )
    held = await session.execute(stm)

    if held.rowcount != 1:
        raise InventoryExhaustedError(quantity)


def _locked_by(order: Order):
    return select(SeatLock.seat_id).where(SeatLock.order_id == order.id)


async def seats_of_order(session: AsyncSession, order: Order) -> list[Seat]:
    seats = await session.scalars(
        select(Seat)
        .join(OrderSeat, OrderSeat.seat_id == Seat.id)
        .where(OrderSeat.order_id == order.id)
        .order_by(Seat.section, Seat.label)
        .execution_options(populate_existing=True)
    )
    return list(seats.all())


async def sell_seats(session: AsyncSession, order: Order) -> None:
    """Flip the order's locked seats to SOLD and drop its locks."""
    stm = (
        update(Seat)
        .where(
            and_(
                Seat.id.in_(_locked_by(order)),
                Seat.status == SeatStatus.LOCKED,
            )
        )
        .values(status=SeatStatus.SOLD)
        .execution_options(synchronize_session=False)
    )
    sold = await session.execute(stm)

    if sold.rowcount != order.quantity:
        raise SeatLockMissingError(order.id)

    await session.execute(delete(SeatLock).where(SeatLock.order_id == order.id))


async def release_order(session: AsyncSession, order: Order, now: datetime) -> bool:
    """Cancel a PENDING order and give its inventory back.

    Returns False when the order already left PENDING (paid or released by a
    concurrent caller); nothing is touched in that case.
    """
    stm = (
        update(Order)
        .where(and_(Order.id == order.id, Order.status == OrderStatus.PENDING))
        .values(status=OrderStatus.CANCELLED, cancelled_at=now)
        .execution_options(synchronize_session=False)
    )
    cancelled = await session.execute(stm)

    if cancelled.rowcount != 1:
        return False

    if order.booking_type == BookingType.SEATED:
        await session.execute(
            update(Seat)
            .where(
                and_(
                    Seat.id.in_(_locked_by(order)),
                    Seat.status == SeatStatus.LOCKED,
                )
            )
            .values(status=SeatStatus.AVAILABLE)
            .execution_options(synchronize_session=False)
        )
        await session.execute(delete(SeatLock).where(SeatLock.order_id == order.id))
    else:
        await session.execute(
            update(Event)
            .where(Event.id == order.event_id)
            .values(ga_reserved=Event.ga_reserved - order.quantity)
            .execution_options(synchronize_session=False)
        )

    await session.refresh(order)
    return True


async def release_expired_orders(
    session: AsyncSession, now: datetime, event_id: str | None = None
) -> int:
    stm = select(Order).where(
        and_(Order.status == OrderStatus.PENDING, Order.expires_at <= now)
    )
    if event_id is not None:
        stm = stm.where(Order.event_id == event_id)

    expired = (await session.scalars(stm)).all()

    released = 0
    for order in expired:
        if await release_order(session, order, now):
            released += 1

    if released:
        logger.info(f'Released {released} expired hold(s)')
    return released


async def run_expiry_sweeper(
    session_factory: async_sessionmaker[AsyncSession],
    interval: float,
    now: Callable[[], datetime] = utcnow,
) -> None:
    while True:
        try:
            async with session_factory() as session:
                async with session.begin():
                    await release_expired_orders(session, now())
        except SQLAlchemyError:
            logger.exception('Expiry sweep failed')
        await asyncio.sleep(interval)
