"""Domain error codes and their HTTP mapping."""

from enum import Enum
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class ErrorCode(str, Enum):
    VALIDATION_FAILED = 'VALIDATION_FAILED'
    UNAUTHORIZED = 'UNAUTHORIZED'
    FORBIDDEN = 'FORBIDDEN'
    EVENT_NOT_FOUND = 'EVENT_NOT_FOUND'
    EVENT_NOT_PUBLISHED = 'EVENT_NOT_PUBLISHED'
    SLUG_TAKEN = 'SLUG_TAKEN'
    INVENTORY_EXHAUSTED = 'INVENTORY_EXHAUSTED'
    SEATS_UNAVAILABLE = 'SEATS_UNAVAILABLE'
    CAPACITY_BELOW_RESERVED = 'CAPACITY_BELOW_RESERVED'
    SEAT_MAP_LOCKED = 'SEAT_MAP_LOCKED'
    ORDER_NOT_FOUND = 'ORDER_NOT_FOUND'
    ORDER_NOT_PENDING = 'ORDER_NOT_PENDING'
    ORDER_MISMATCH = 'ORDER_MISMATCH'
    SEAT_LOCK_MISSING = 'SEAT_LOCK_MISSING'
    INVALID_SIGNATURE = 'INVALID_SIGNATURE'
    WEBHOOK_NOT_CONFIGURED = 'WEBHOOK_NOT_CONFIGURED'
    PAYMENT_GATEWAY_ERROR = 'PAYMENT_GATEWAY_ERROR'
    INTERNAL_ERROR = 'INTERNAL_ERROR'


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    status_code: int = HTTPStatus.BAD_REQUEST

    def __init__(self, code: ErrorCode, message: str, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return f'{self.code.value}: {self.message}'


class UnauthorizedError(DomainError):
    status_code = HTTPStatus.UNAUTHORIZED

    def __init__(self, message: str = 'Not authenticated'):
        super().__init__(ErrorCode.UNAUTHORIZED, message)


class ForbiddenError(DomainError):
    status_code = HTTPStatus.FORBIDDEN

    def __init__(self, message: str = 'Insufficient permissions'):
        super().__init__(ErrorCode.FORBIDDEN, message)


class InvalidScheduleError(DomainError):
    def __init__(self):
        super().__init__(
            ErrorCode.VALIDATION_FAILED, 'end_at must not be before start_at'
        )


class EventNotFoundError(DomainError):
    status_code = HTTPStatus.NOT_FOUND

    def __init__(self, event_id: str):
        super().__init__(ErrorCode.EVENT_NOT_FOUND, 'Event not found')
        self.event_id = event_id


class EventNotPublishedError(DomainError):
    def __init__(self, event_id: str):
        super().__init__(ErrorCode.EVENT_NOT_PUBLISHED, 'Event is not published')
        self.event_id = event_id


class SlugTakenError(DomainError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, slug: str):
        super().__init__(ErrorCode.SLUG_TAKEN, 'Event with this slug already exists')
        self.slug = slug


class InventoryExhaustedError(DomainError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, requested: int):
        super().__init__(
            ErrorCode.INVENTORY_EXHAUSTED, 'Not enough GA tickets available'
        )
        self.requested = requested


class SeatsUnavailableError(DomainError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, seat_ids: list[str]):
        super().__init__(
            ErrorCode.SEATS_UNAVAILABLE, 'Some selected seats are not available'
        )
        self.seat_ids = seat_ids


class CapacityBelowReservedError(DomainError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, reserved: int):
        super().__init__(
            ErrorCode.CAPACITY_BELOW_RESERVED,
            f'Capacity cannot drop below the {reserved} GA tickets already claimed',
        )
        self.reserved = reserved


class SeatMapLockedError(DomainError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self):
        super().__init__(
            ErrorCode.SEAT_MAP_LOCKED,
            'Seats cannot be replaced while some are held or sold',
        )


class OrderNotFoundError(DomainError):
    status_code = HTTPStatus.NOT_FOUND

    def __init__(self, order_id: str):
        super().__init__(ErrorCode.ORDER_NOT_FOUND, 'Order not found')
        self.order_id = order_id


class OrderNotPendingError(DomainError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, order_id: str, status: str):
        super().__init__(ErrorCode.ORDER_NOT_PENDING, f'Order is {status}')
        self.order_id = order_id


class WebhookSignatureError(DomainError):
    def __init__(self, message: str = 'Invalid signature'):
        super().__init__(ErrorCode.INVALID_SIGNATURE, message)


class WebhookNotConfiguredError(DomainError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self):
        super().__init__(
            ErrorCode.WEBHOOK_NOT_CONFIGURED, 'Webhook secret is not configured'
        )


class PaymentGatewayError(DomainError):
    status_code = HTTPStatus.BAD_GATEWAY

    def __init__(self, message: str = 'Failed to create checkout session'):
        super().__init__(ErrorCode.PAYMENT_GATEWAY_ERROR, message)


class IntegrityAnomaly(DomainError):
    """Raised during fulfillment after money has already moved.

    Never retried by the core; surfaced to operators through the error log.
    """

    def __init__(self, code: ErrorCode, message: str, order_id: str | None):
        super().__init__(code, message)
        self.order_id = order_id


class FulfillmentOrderNotFound(IntegrityAnomaly):
    def __init__(self, order_id: str):
        super().__init__(
            ErrorCode.ORDER_NOT_FOUND, 'Paid checkout refers to an unknown order', order_id
        )


class UnlinkedCheckoutError(IntegrityAnomaly):
    def __init__(self, session_id: str):
        super().__init__(
            ErrorCode.ORDER_NOT_FOUND,
            f'Checkout session {session_id} carries no order reference',
            None,
        )


class FulfillmentOrderNotPending(IntegrityAnomaly):
    def __init__(self, order_id: str, status: str):
        super().__init__(
            ErrorCode.ORDER_NOT_PENDING, f'Payment completed for a {status} order', order_id
        )


class FulfillmentOrderMismatch(IntegrityAnomaly):
    def __init__(self, order_id: str, field: str):
        super().__init__(
            ErrorCode.ORDER_MISMATCH,
            f'Checkout metadata {field} does not match the order',
            order_id,
        )


class SeatLockMissingError(IntegrityAnomaly):
    def __init__(self, order_id: str):
        super().__init__(
            ErrorCode.SEAT_LOCK_MISSING, 'Seats of the order are no longer locked', order_id
        )


def error_body(code: ErrorCode, message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {'error': code.value, 'message': message}
    if details is not None:
        body['details'] = details
    return body


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
        logger.error(f'Domain error on {request.url.path}: {exc}')
    else:
        logger.info(f'Rejected {request.method} {request.url.path}: {exc}')
    return JSONResponse(
        status_code=exc.status_code, content=error_body(exc.code, exc.message)
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.info(f'Validation error on {request.url.path}: {exc.errors()}')
    return JSONResponse(
        status_code=HTTPStatus.BAD_REQUEST,
        content=error_body(
            ErrorCode.VALIDATION_FAILED,
            'Validation failed',
            details=jsonable_errors(exc),
        ),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error(f'Unhandled exception on {request.url.path}')
    return JSONResponse(
        status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
        content=error_body(ErrorCode.INTERNAL_ERROR, 'Internal server error'),
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {'loc': list(error.get('loc', ())), 'msg': error.get('msg'), 'type': error.get('type')}
        for error in exc.errors()
    ]


EXCEPTION_HANDLERS = {
    DomainError: domain_error_handler,
    RequestValidationError: validation_error_handler,
    Exception: unhandled_error_handler,
}


def register_exception_handlers(app: FastAPI) -> None:
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
