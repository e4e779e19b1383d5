import hashlib
import hmac
import json
import os
import time
import typing
from datetime import timedelta

import docker
import pytest
from docker.errors import DockerException
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer

from eventbook.app import app, get_payment_gateway
from eventbook.auth import Role, create_access_token
from eventbook.database import build_engine, build_sessionmaker, get_session
from eventbook.errors import PaymentGatewayError
from eventbook.models import (
    Base,
    BookingType,
    Event,
    Order,
    OrderStatus,
    Seat,
    SeatStatus,
    new_id,
    utcnow,
)
from eventbook.payments import CheckoutSession, PaymentGateway
from eventbook.settings import Settings, get_settings

WEBHOOK_SECRET = 'whsec_test_secret'


class FakeGateway(PaymentGateway):
    """Records checkout requests instead of calling stripe."""

    def __init__(self):
        self.requests = []
        self.fail = False

    async def create_checkout_session(
        self, order, event, lines, success_url, cancel_url, expires_at
    ):
        if self.fail:
            raise PaymentGatewayError()

        self.requests.append(
            {
                'order_id': order.id,
                'currency': event.currency,
                'lines': lines,
                'success_url': success_url,
                'cancel_url': cancel_url,
                'expires_at': expires_at,
                'metadata': {
                    'orderId': order.id,
                    'eventId': event.id,
                    'type': order.booking_type.value,
                },
            }
        )
        number = len(self.requests)
        return CheckoutSession(
            id=f'cs_test_{number}', url=f'https://checkout.test/pay/cs_test_{number}'
        )


def docker_available() -> bool:
    try:
        docker.from_env().ping()
    except DockerException:
        return False
    return True


def database_backend() -> str:
    """``EVENTBOOK_TEST_DATABASE`` picks the backend; Postgres when docker runs."""
    choice = os.environ.get('EVENTBOOK_TEST_DATABASE')
    if choice in ('postgres', 'sqlite'):
        return choice
    return 'postgres' if docker_available() else 'sqlite'


@pytest.fixture(scope='session')
def database_url(
    tmp_path_factory: pytest.TempPathFactory,
) -> typing.Generator[str, None, None]:
    if database_backend() == 'postgres':
        with PostgresContainer('postgres:16', driver='asyncpg') as postgres:
            yield postgres.get_connection_url()
    else:
        db_file = tmp_path_factory.mktemp('db') / 'eventbook.sqlite3'
        yield f'sqlite+aiosqlite:///{db_file}'


@pytest.fixture
async def session_factory(
    database_url: str,
) -> typing.AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    async_engine = build_engine(database_url)

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield build_sessionmaker(async_engine)

    await async_engine.dispose()


@pytest.fixture
async def async_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> typing.AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        SECRET_KEY=SecretStr('test-signing-key'),
        STRIPE_SECRET_KEY=SecretStr('sk_test_unused'),
        STRIPE_WEBHOOK_SECRET=SecretStr(WEBHOOK_SECRET),
        PUBLIC_BASE_URL='https://tickets.test',
        HOLD_MINUTES=60,
        CHECKOUT_GRACE_MINUTES=10,
        VALIDATION_WINDOW_HOURS=3,
        EXPIRY_SWEEP_SECONDS=0,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    gateway: FakeGateway,
) -> typing.AsyncGenerator[AsyncClient, None]:
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    _transport = ASGITransport(app=app)

    async with AsyncClient(
        transport=_transport, base_url='http://test', follow_redirects=True
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(settings: Settings):
    def _auth_headers(user_id: str = 'buyer-1', role: Role = Role.USER) -> dict:
        token = create_access_token(user_id, role, settings)
        return {'Authorization': f'Bearer {token}'}

    return _auth_headers


@pytest.fixture
def make_event(async_session: AsyncSession):
    async def _make_event(**overrides) -> Event:
        now = utcnow()
        data = {
            'slug': f'event-{new_id()[:8]}',
            'title': 'Harbour Lights',
            'category': 'music',
            'venue_name': 'Pier Hall',
            'venue_city': 'Lisbon',
            'currency': 'USD',
            'price_cents': 2500,
            'capacity': 20,
            'ga_reserved': 0,
            'published': True,
            'start_at': now + timedelta(hours=1),
            'end_at': now + timedelta(hours=4),
            'organizer_id': 'admin-1',
            'created_at': now,
        }
        data.update(overrides)
        event = Event(id=new_id(), **data)

        async with async_session.begin():
            async_session.add(event)

        return event

    return _make_event


@pytest.fixture
def make_seats(async_session: AsyncSession):
    async def _make_seats(
        event: Event,
        labels: list[str],
        section: str = 'Floor',
        price_cents: int | None = None,
        status: SeatStatus = SeatStatus.AVAILABLE,
    ) -> list[Seat]:
        seats = [
            Seat(
                id=new_id(),
                event_id=event.id,
                label=label,
                section=section,
                price_cents=price_cents,
                status=status,
            )
            for label in labels
        ]

        async with async_session.begin():
            async_session.add_all(seats)

        return seats

    return _make_seats


@pytest.fixture
def make_order(async_session: AsyncSession):
    """A bare PENDING order row, for tests that skip the reservation flow."""

    async def _make_order(event: Event, **overrides) -> Order:
        now = utcnow()
        data = {
            'user_id': 'buyer-1',
            'event_id': event.id,
            'booking_type': BookingType.GA,
            'quantity': 1,
            'amount_total_cents': event.price_cents,
            'currency': event.currency,
            'status': OrderStatus.PENDING,
            'payment_session_id': f'cs_test_{new_id()[:8]}',
            'expires_at': now + timedelta(minutes=60),
            'created_at': now,
        }
        data.update(overrides)
        order = Order(id=new_id(), **data)

        async with async_session.begin():
            async_session.add(order)

        return order

    return _make_order


def checkout_payload(
    order: Order,
    event_type: str = 'checkout.session.completed',
    payment_intent: str = 'pi_test_123',
    **metadata_overrides,
) -> dict:
    metadata = {
        'orderId': order.id,
        'eventId': order.event_id,
        'type': order.booking_type.value,
    }
    metadata.update(metadata_overrides)
    return {
        'id': f'evt_{new_id()[:12]}',
        'object': 'event',
        'type': event_type,
        'data': {
            'object': {
                'id': order.payment_session_id or 'cs_test_unknown',
                'object': 'checkout.session',
                'payment_intent': payment_intent,
                'metadata': metadata,
            }
        },
    }


@pytest.fixture
def webhook_secret(settings: Settings) -> str:
    return settings.STRIPE_WEBHOOK_SECRET.get_secret_value()


@pytest.fixture
def sign_payload(webhook_secret: str):
    """Build a ``Stripe-Signature`` header the way stripe does."""

    def _sign_payload(
        payload: str, secret: str | None = None, timestamp: int | None = None
    ) -> str:
        if timestamp is None:
            timestamp = int(time.time())
        signature = hmac.new(
            (secret or webhook_secret).encode('utf-8'),
            f'{timestamp}.{payload}'.encode('utf-8'),
            hashlib.sha256,
        ).hexdigest()
        return f't={timestamp},v1={signature}'

    return _sign_payload


@pytest.fixture
def signed_webhook(sign_payload):
    """Serialize a webhook body and sign it the way stripe does."""

    def _signed_webhook(body: dict, **sign_kwargs) -> tuple[str, dict]:
        payload = json.dumps(body)
        return payload, {
            'Stripe-Signature': sign_payload(payload, **sign_kwargs),
            'Content-Type': 'application/json',
        }

    return _signed_webhook


@pytest.fixture
def completion_payload():
    return checkout_payload
