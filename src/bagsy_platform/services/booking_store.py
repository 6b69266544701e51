"""Record-store helpers shared by the booking and negotiation services.

Every state mutation goes through a conditional UPDATE guarded by the
expected prior state; a writer that loses a race gets
``ConcurrentUpdateError`` and changes nothing.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    OfferStatus,
    PaymentStatus,
)
from bagsy_platform.domain.errors import ConcurrentUpdateError, NotFoundError
from bagsy_platform.domain.models import Booking, BookingEvent, Negotiation, Space, User

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def booking_total(booking: Booking, hourly_price: float) -> float:
    return round(booking.hours * hourly_price, 2)


# ---------------------------------------------------------------------------
# Loads
# ---------------------------------------------------------------------------


async def get_booking(db: AsyncSession, booking_id: str) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking", booking_id)
    return booking


async def get_space(db: AsyncSession, space_id: str) -> Space:
    space = await db.get(Space, space_id)
    if space is None:
        raise NotFoundError("Space", space_id)
    return space


async def get_offer(db: AsyncSession, offer_id: str) -> Negotiation:
    offer = await db.get(Negotiation, offer_id)
    if offer is None:
        raise NotFoundError("Offer", offer_id)
    return offer


async def get_pending_offer(db: AsyncSession, booking_id: str) -> Negotiation | None:
    result = await db.execute(
        select(Negotiation).where(
            Negotiation.booking_id == booking_id,
            Negotiation.status == OfferStatus.PENDING.value,
        )
    )
    return result.scalar_one_or_none()


async def list_offers(db: AsyncSession, booking_id: str) -> list[Negotiation]:
    result = await db.execute(
        select(Negotiation)
        .where(Negotiation.booking_id == booking_id)
        .order_by(Negotiation.created_at, Negotiation.id)
    )
    return list(result.scalars().all())


async def display_name(db: AsyncSession, user_id: str, fallback: str = "Someone") -> str:
    user = await db.get(User, user_id)
    return user.name if user is not None and user.name else fallback


# ---------------------------------------------------------------------------
# Guarded writes
# ---------------------------------------------------------------------------


async def update_booking_if(
    db: AsyncSession,
    booking: Booking,
    expected: BookingStatus | Iterable[BookingStatus],
    payment_expected: PaymentStatus | Iterable[PaymentStatus] | None = None,
    **values,
) -> None:
    """UPDATE the booking only while its status is one of ``expected``.

    ``payment_expected`` additionally guards on the payment status. The
    in-memory ``booking`` is refreshed from the row afterwards.
    """
    if isinstance(expected, (BookingStatus, str)):
        expected = [expected]
    statuses = [BookingStatus(s).value for s in expected]
    stmt = update(Booking).where(Booking.id == booking.id, Booking.status.in_(statuses))
    if payment_expected is not None:
        if isinstance(payment_expected, (PaymentStatus, str)):
            payment_expected = [payment_expected]
        stmt = stmt.where(
            Booking.payment_status.in_([PaymentStatus(s).value for s in payment_expected])
        )
    values.setdefault("updated_at", utcnow())
    result = await db.execute(stmt.values(**values))
    if result.rowcount != 1:
        logger.warning(
            "Guarded update lost for booking %s (expected status in %s)",
            booking.id,
            statuses,
        )
        raise ConcurrentUpdateError("Booking", booking.id)
    await db.refresh(booking)


async def resolve_offer_if_pending(
    db: AsyncSession,
    offer: Negotiation,
    status: OfferStatus,
) -> bool:
    """Move a pending offer to a terminal status. False when it was no longer pending."""
    result = await db.execute(
        update(Negotiation)
        .where(Negotiation.id == offer.id, Negotiation.status == OfferStatus.PENDING.value)
        .values(status=status.value, responded_at=utcnow())
    )
    if result.rowcount != 1:
        return False
    await db.refresh(offer)
    return True


async def reject_pending_offers(db: AsyncSession, booking_id: str) -> int:
    result = await db.execute(
        update(Negotiation)
        .where(
            Negotiation.booking_id == booking_id,
            Negotiation.status == OfferStatus.PENDING.value,
        )
        .values(status=OfferStatus.REJECTED.value, responded_at=utcnow())
    )
    return result.rowcount


def record_event(
    db: AsyncSession,
    booking_id: str,
    event_type: BookingEventType,
    actor: BookingActor,
    actor_id: str | None = None,
    from_status: BookingStatus | str | None = None,
    to_status: BookingStatus | str | None = None,
    data: dict | None = None,
) -> BookingEvent:
    """Stage an audit record in the current transaction."""
    event = BookingEvent(
        booking_id=booking_id,
        event_type=event_type.value,
        actor=actor.value,
        actor_id=actor_id,
        from_status=BookingStatus(from_status).value if from_status else None,
        to_status=BookingStatus(to_status).value if to_status else None,
        data=data,
        created_at=utcnow(),
    )
    db.add(event)
    return event
