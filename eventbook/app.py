import asyncio
import contextlib
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Request, Response
from loguru import logger

from eventbook.auth import AdminDep, CurrentUserDep, ValidatorDep
from eventbook.catalog import Catalog
from eventbook.database import AsyncSession, AsyncSessionLocal, engine, get_session
from eventbook.errors import (
    IntegrityAnomaly,
    WebhookNotConfiguredError,
    register_exception_handlers,
)
from eventbook.fulfillment import FulfillmentProcessor
from eventbook.inventory import run_expiry_sweeper
from eventbook.logger import configure_logging
from eventbook.models import Base, OrderStatus
from eventbook.payments import (
    CHECKOUT_COMPLETED,
    CHECKOUT_EXPIRED,
    PaymentGateway,
    StripeGateway,
    verify_webhook,
)
from eventbook.reservations import ReservationManager
from eventbook.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    EventDetailResponse,
    EventRequestCreate,
    EventRequestUpdate,
    EventResponse,
    ListEvents,
    ListOrders,
    OrderResponse,
    SectionsRequest,
    SectionsResponse,
    ValidationRequest,
    ValidationResponse,
    Wallet,
    WebhookResponse,
)
from eventbook.settings import Settings, get_settings
from eventbook.validation import TicketValidator, ValidationCode
from eventbook.wallet import get_order, get_wallet


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sweeper = None
    if settings.EXPIRY_SWEEP_SECONDS > 0:
        sweeper = asyncio.create_task(
            run_expiry_sweeper(AsyncSessionLocal, settings.EXPIRY_SWEEP_SECONDS)
        )
    logger.info(f'{settings.PROJECT_NAME} started')

    yield

    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await engine.dispose()


app = FastAPI(title='Eventbook', lifespan=lifespan)
register_exception_handlers(app)


SessionDep = Annotated[AsyncSession, Depends(get_session)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_payment_gateway(settings: SettingsDep) -> PaymentGateway:
    return StripeGateway(settings.STRIPE_SECRET_KEY.get_secret_value())


GatewayDep = Annotated[PaymentGateway, Depends(get_payment_gateway)]


# Catalog


@app.get('/events', response_model=ListEvents)
async def list_events(session: SessionDep):
    events = await Catalog(session).list_published_events()

    return {'events': events}


@app.get('/events/{event_id}', response_model=EventDetailResponse)
async def get_event(session: SessionDep, event_id: str):
    return await Catalog(session).get_event_detail(event_id)


# Checkout and orders


@app.post(
    '/checkout/session',
    response_model=CheckoutResponse,
    status_code=HTTPStatus.CREATED,
)
async def create_checkout_session(
    session: SessionDep,
    gateway: GatewayDep,
    settings: SettingsDep,
    user: CurrentUserDep,
    checkout_in: CheckoutRequest,
):
    manager = ReservationManager(session, gateway, settings)
    reservation = await manager.reserve(user.id, checkout_in)

    return {
        'order_id': reservation.order.id,
        'session_id': reservation.checkout.id,
        'url': reservation.checkout.url,
    }


@app.get('/orders/{order_id}', response_model=OrderResponse)
async def read_order(session: SessionDep, user: CurrentUserDep, order_id: str):
    return await get_order(session, user.id, order_id)


@app.post('/orders/{order_id}/cancel', response_model=OrderResponse)
async def cancel_order(
    session: SessionDep,
    gateway: GatewayDep,
    settings: SettingsDep,
    user: CurrentUserDep,
    order_id: str,
):
    manager = ReservationManager(session, gateway, settings)

    return await manager.cancel(user.id, order_id)


@app.post('/stripe/webhook', response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    stripe_signature: Annotated[str | None, Header()] = None,
):
    secret = settings.STRIPE_WEBHOOK_SECRET.get_secret_value()
    if not secret:
        raise WebhookNotConfiguredError()

    event = verify_webhook(
        await request.body(),
        stripe_signature,
        secret,
        settings.STRIPE_WEBHOOK_TOLERANCE,
    )

    processor = FulfillmentProcessor(session)
    try:
        if event.type == CHECKOUT_COMPLETED:
            await processor.fulfill(event)
        elif event.type == CHECKOUT_EXPIRED:
            await processor.expire(event)
        else:
            logger.info(f'Webhook {event.id} of type {event.type} ignored')
    except IntegrityAnomaly as exc:
        # payment already moved; redelivery cannot fix it
        logger.error(
            f'Fulfillment anomaly for webhook {event.id} '
            f'(order {exc.order_id}): {exc}'
        )
        return {'received': True, 'anomaly': exc.code.value}

    return {'received': True}


# Tickets


@app.post('/tickets/validate', response_model=ValidationResponse)
async def validate_ticket(
    session: SessionDep,
    settings: SettingsDep,
    validator: ValidatorDep,
    validation_in: ValidationRequest,
    response: Response,
):
    outcome = await TicketValidator(session, settings).validate(
        validation_in.code, validator.id
    )

    if outcome.code == ValidationCode.INVALID_TICKET:
        response.status_code = HTTPStatus.NOT_FOUND

    return {
        'ok': outcome.ok,
        'code': outcome.code.value,
        'message': outcome.message,
        'ticket': outcome.ticket,
    }


@app.get('/wallet', response_model=Wallet)
async def read_wallet(session: SessionDep, user: CurrentUserDep):
    tickets = await get_wallet(session, user.id)

    return {'tickets': tickets}


# Administration


@app.post(
    '/admin/events',
    response_model=EventResponse,
    status_code=HTTPStatus.CREATED,
)
async def create_event(session: SessionDep, admin: AdminDep, event_in: EventRequestCreate):
    return await Catalog(session).create_event(admin.id, event_in)


@app.patch('/admin/events/{event_id}', response_model=EventResponse)
async def update_event(
    session: SessionDep, admin: AdminDep, event_id: str, event_in: EventRequestUpdate
):
    return await Catalog(session).update_event(admin.id, event_id, event_in)


@app.post(
    '/admin/events/{event_id}/sections',
    response_model=SectionsResponse,
    status_code=HTTPStatus.CREATED,
)
async def replace_sections(
    session: SessionDep, admin: AdminDep, event_id: str, sections_in: SectionsRequest
):
    created = await Catalog(session).replace_seat_map(
        admin.id, event_id, sections_in.sections
    )

    return {'seats_created': created}


@app.get('/admin/orders', response_model=ListOrders)
async def list_orders(
    session: SessionDep,
    admin: AdminDep,
    event_id: str | None = None,
    status: OrderStatus | None = None,
):
    orders = await Catalog(session).list_orders(event_id=event_id, status=status)

    return {'orders': orders}
