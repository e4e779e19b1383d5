"""Door-entry validation of ticket codes.

Outcomes are values, not errors: an unknown code, a second scan or a scan
outside the entry window are all normal answers for the validator's screen.
"""

import enum
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventbook.models import Event, Seat, Ticket, utcnow
from eventbook.schemas import TicketSummary
from eventbook.settings import Settings


class ValidationCode(str, enum.Enum):
    VALIDATED = 'VALIDATED'
    INVALID_TICKET = 'INVALID_TICKET'
    ALREADY_SCANNED = 'ALREADY_SCANNED'
    EVENT_NOT_ACTIVE = 'EVENT_NOT_ACTIVE'


MESSAGES = {
    ValidationCode.VALIDATED: 'Ticket validated successfully',
    ValidationCode.INVALID_TICKET: 'Ticket not found',
    ValidationCode.ALREADY_SCANNED: 'Ticket has already been scanned',
    ValidationCode.EVENT_NOT_ACTIVE: 'Event is not currently active for validation',
}


@dataclass(frozen=True)
class ValidationOutcome:
    code: ValidationCode
    ticket: TicketSummary | None = None

    @property
    def ok(self) -> bool:
        return self.code == ValidationCode.VALIDATED

    @property
    def message(self) -> str:
        return MESSAGES[self.code]


def entry_window(event: Event, padding: timedelta) -> tuple[datetime, datetime]:
    return event.start_at - padding, event.end_at + padding


class TicketValidator:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._padding = timedelta(hours=settings.VALIDATION_WINDOW_HOURS)
        self._now = now

    async def validate(self, code: str, validator_id: str) -> ValidationOutcome:
        async with self._session.begin():
            row = (
                await self._session.execute(
                    select(Ticket, Event, Seat)
                    .join(Event, Event.id == Ticket.event_id)
                    .outerjoin(Seat, Seat.id == Ticket.seat_id)
                    .where(Ticket.code == code)
                    .execution_options(populate_existing=True)
                )
            ).first()

        if row is None:
            logger.info(f'Validation by {validator_id}: unknown code')
            return ValidationOutcome(ValidationCode.INVALID_TICKET)

        ticket, event, seat = row

        def summary(scanned_at: datetime | None = None) -> TicketSummary:
            return TicketSummary(
                event_title=event.title,
                venue_name=event.venue_name,
                seat_label=seat.label if seat else None,
                seat_section=seat.section if seat else None,
                scanned_at=scanned_at,
            )

        if ticket.validated_at is not None:
            return self._already_scanned(ticket, validator_id, summary(ticket.validated_at))

        now = self._now()
        valid_from, valid_to = entry_window(event, self._padding)
        if now < valid_from or now > valid_to:
            logger.info(f'Validation of ticket {ticket.id} outside entry window')
            return ValidationOutcome(ValidationCode.EVENT_NOT_ACTIVE, summary())

        async with self._session.begin():
            stm = (
                update(Ticket)
                .where(and_(Ticket.id == ticket.id, Ticket.validated_at.is_(None)))
                .values(validated_at=now, validated_by=validator_id)
                .execution_options(synchronize_session=False)
            )
            scanned = await self._session.execute(stm)

        if scanned.rowcount != 1:
            async with self._session.begin():
                first_scan = await self._session.scalar(
                    select(Ticket.validated_at).where(Ticket.id == ticket.id)
                )
            return self._already_scanned(ticket, validator_id, summary(first_scan))

        logger.info(f'Ticket {ticket.id} validated by {validator_id}')
        return ValidationOutcome(ValidationCode.VALIDATED, summary(now))

    def _already_scanned(
        self, ticket: Ticket, validator_id: str, ticket_summary: TicketSummary
    ) -> ValidationOutcome:
        logger.info(
            f'Ticket {ticket.id} rescanned by {validator_id}, '
            f'first scan at {ticket_summary.scanned_at}'
        )
        return ValidationOutcome(ValidationCode.ALREADY_SCANNED, ticket_summary)
