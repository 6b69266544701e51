"""Rental agreements: creation, terms rendering and bilateral signing."""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.models import Agreement, Booking, Space
from bagsy_platform.services.booking_store import utcnow

logger = logging.getLogger(__name__)

_DATE_FORMAT = "%Y-%m-%d %H:%M"


def render_terms(booking: Booking, space: Space, ai_assisted: bool = False) -> str:
    """Render agreement terms from the booking/space snapshot."""
    lines = [
        "DRIVEWAY RENTAL AGREEMENT" + (" (AI-Negotiated)" if ai_assisted else ""),
        "",
        f"Space: {space.title or 'Space'}",
        f"Address: {space.full_address}",
        "",
        "Rental Period:",
        f"From: {booking.start_time.strftime(_DATE_FORMAT)}",
        f"To: {booking.end_time.strftime(_DATE_FORMAT)}",
        "",
        f"Agreed Price: ${booking.final_price:.2f} per hour",
        f"Total Amount: ${booking.total_price:.2f}",
        "",
    ]
    if ai_assisted:
        lines.append("This agreement was negotiated with AI assistance on behalf of both parties.")
    lines.append("Both parties have reviewed and agree to these terms.")
    return "\n".join(lines)


async def get_agreement(db: AsyncSession, booking_id: str) -> Agreement | None:
    result = await db.execute(select(Agreement).where(Agreement.booking_id == booking_id))
    return result.scalar_one_or_none()


async def ensure_agreement(
    db: AsyncSession,
    booking: Booking,
    space: Space,
    ai_assisted: bool = False,
) -> tuple[Agreement, bool]:
    """Return the booking's agreement, creating it if none exists.

    The second element is True when the agreement was created here. The
    unique ``booking_id`` column rejects a concurrent second creation.
    """
    existing = await get_agreement(db, booking.id)
    if existing is not None:
        return existing, False

    agreement = Agreement(
        booking_id=booking.id,
        renter_id=booking.renter_id,
        owner_id=booking.owner_id,
        terms=render_terms(booking, space, ai_assisted=ai_assisted),
        fully_executed=False,
        created_at=utcnow(),
    )
    db.add(agreement)
    await db.flush()
    logger.info("Agreement %s created for booking %s", agreement.id, booking.id)
    return agreement, True


async def fill_signature_slot(db: AsyncSession, agreement: Agreement, role: str, signature: str) -> bool:
    """Write a signature into an empty slot. False when the slot was already filled."""
    slot = getattr(Agreement, f"{role}_signature")
    now = utcnow()
    result = await db.execute(
        update(Agreement)
        .where(Agreement.id == agreement.id, slot.is_(None))
        .values({f"{role}_signature": signature, f"{role}_signed_at": now, "updated_at": now})
    )
    return result.rowcount == 1


async def mark_executed_if_complete(db: AsyncSession, agreement: Agreement) -> bool:
    """Set ``fully_executed`` once both signatures are present.

    Only ever sets the flag; nothing clears it. Returns True on the call
    that flips it.
    """
    now = utcnow()
    result = await db.execute(
        update(Agreement)
        .where(
            Agreement.id == agreement.id,
            Agreement.renter_signature.is_not(None),
            Agreement.owner_signature.is_not(None),
            Agreement.fully_executed.is_(False),
        )
        .values(fully_executed=True, executed_at=now, updated_at=now)
    )
    return result.rowcount == 1
