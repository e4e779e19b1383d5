"""Hosted checkout and webhook verification.

The rest of the service only sees ``PaymentGateway``, ``CheckoutSession`` and
``VerifiedEvent``; stripe stays behind this module.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import stripe
from loguru import logger
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from eventbook.errors import (
    PaymentGatewayError,
    UnlinkedCheckoutError,
    WebhookSignatureError,
)
from eventbook.models import BookingType, Event, Order

CHECKOUT_COMPLETED = 'checkout.session.completed'
CHECKOUT_EXPIRED = 'checkout.session.expired'


class CheckoutLine(BaseModel):
    name: str
    description: str
    unit_amount_cents: int
    quantity: int


class CheckoutSession(BaseModel):
    id: str
    url: str


class CheckoutCompletion(BaseModel):
    """What the gateway echoes back about a checkout session."""

    session_id: str
    order_id: str
    event_id: str
    booking_type: BookingType
    payment_reference: str | None = None


class VerifiedEvent(BaseModel):
    id: str
    type: str
    data_object: dict[str, Any]

    def completion(self) -> CheckoutCompletion:
        session_id = str(self.data_object.get('id', ''))
        metadata = self.data_object.get('metadata') or {}
        try:
            return CheckoutCompletion(
                session_id=session_id,
                order_id=metadata['orderId'],
                event_id=metadata['eventId'],
                booking_type=metadata['type'],
                payment_reference=self.data_object.get('payment_intent'),
            )
        except (KeyError, ValidationError):
            raise UnlinkedCheckoutError(session_id)


def checkout_lines(
    event: Event, booking_type: BookingType, quantity: int, seats=()
) -> list[CheckoutLine]:
    if booking_type == BookingType.GA:
        return [
            CheckoutLine(
                name=f'{event.title} - General Admission',
                description=f'General Admission ticket for {event.title}',
                unit_amount_cents=event.price_cents,
                quantity=quantity,
            )
        ]

    return [
        CheckoutLine(
            name=f'{event.title} - Seat {seat.label}',
            description=(
                f'Seat {seat.label} in {seat.section or "General"} section '
                f'for {event.title}'
            ),
            unit_amount_cents=(
                seat.price_cents if seat.price_cents is not None else event.price_cents
            ),
            quantity=1,
        )
        for seat in seats
    ]


class PaymentGateway(ABC):
    @abstractmethod
    async def create_checkout_session(
        self,
        order: Order,
        event: Event,
        lines: list[CheckoutLine],
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
    ) -> CheckoutSession:
        """Open a hosted checkout for the order; raises PaymentGatewayError."""
        ...


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def create_checkout_session(
        self,
        order: Order,
        event: Event,
        lines: list[CheckoutLine],
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
    ) -> CheckoutSession:
        line_items = [
            {
                'price_data': {
                    'currency': event.currency.lower(),
                    'product_data': {
                        'name': line.name,
                        'description': line.description,
                    },
                    'unit_amount': line.unit_amount_cents,
                },
                'quantity': line.quantity,
            }
            for line in lines
        ]

        params: dict[str, Any] = {
            'payment_method_types': ['card'],
            'line_items': line_items,
            'mode': 'payment',
            'success_url': success_url,
            'cancel_url': cancel_url,
            'client_reference_id': order.id,
            'metadata': {
                'orderId': order.id,
                'eventId': event.id,
                'type': order.booking_type.value,
            },
            'expires_at': int(expires_at.timestamp()),
        }

        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create, api_key=self._api_key, **params
            )
        except stripe.StripeError as exc:
            logger.error(f'Checkout session creation failed for order {order.id}: {exc}')
            raise PaymentGatewayError()

        return CheckoutSession(id=session.id, url=session.url)


def verify_webhook(
    raw_body: bytes, signature_header: str | None, secret: str, tolerance: int
) -> VerifiedEvent:
    if not signature_header:
        raise WebhookSignatureError('Missing signature')

    try:
        payload = raw_body.decode('utf-8')
    except UnicodeDecodeError:
        raise WebhookSignatureError('Malformed webhook payload')

    try:
        stripe.WebhookSignature.verify_header(
            payload, signature_header, secret, tolerance
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning(f'Webhook signature verification failed: {exc}')
        raise WebhookSignatureError()

    try:
        body = json.loads(payload)
        return VerifiedEvent(
            id=body['id'],
            type=body['type'],
            data_object=body['data']['object'],
        )
    except (ValueError, KeyError, TypeError, ValidationError) as exc:
        raise WebhookSignatureError(f'Malformed webhook payload: {exc}')
