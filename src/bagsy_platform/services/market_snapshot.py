"""Market snapshot of comparable spaces for the negotiation delegate."""

import logging
import statistics

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.enums import DemandLevel
from bagsy_platform.domain.models import Space
from bagsy_platform.domain.schemas import MarketSnapshot

logger = logging.getLogger(__name__)

MAX_COMPARABLES = 20
HIGH_DEMAND_COUNT = 15
MEDIUM_DEMAND_COUNT = 8


def demand_for_count(count: int) -> DemandLevel:
    if count > HIGH_DEMAND_COUNT:
        return DemandLevel.HIGH
    if count > MEDIUM_DEMAND_COUNT:
        return DemandLevel.MEDIUM
    return DemandLevel.LOW


def snapshot_from_prices(prices: list[float]) -> MarketSnapshot:
    ordered = sorted(prices)
    return MarketSnapshot(
        average_price=round(statistics.fmean(ordered), 2),
        # Upper median on even counts
        median_price=ordered[len(ordered) // 2],
        price_range=(ordered[0], ordered[-1]),
        comparable_count=len(ordered),
        demand_level=demand_for_count(len(ordered)),
    )


def fallback_snapshot(listing_price: float) -> MarketSnapshot:
    """Estimate used when no comparable spaces are on file."""
    return MarketSnapshot(
        average_price=round(listing_price * 0.95, 2),
        median_price=listing_price,
        price_range=(round(listing_price * 0.7, 2), round(listing_price * 1.3, 2)),
        comparable_count=0,
        demand_level=DemandLevel.MEDIUM,
    )


async def get_market_snapshot(db: AsyncSession, space: Space) -> MarketSnapshot:
    """Hourly prices of up to 20 other spaces of the same type."""
    try:
        result = await db.execute(
            select(Space.price_per_hour)
            .where(Space.space_type == space.space_type, Space.id != space.id)
            .limit(MAX_COMPARABLES)
        )
        prices = [p for p in result.scalars().all() if p is not None and p > 0]
    except SQLAlchemyError as exc:
        logger.warning("Market snapshot query failed for space %s: %s", space.id, exc)
        prices = []

    if not prices:
        return fallback_snapshot(space.price_per_hour)
    return snapshot_from_prices(prices)
