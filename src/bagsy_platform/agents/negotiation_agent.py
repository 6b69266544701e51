"""Negotiation Agent: decides how a delegate answers a pending offer.

The rule-based strategy is always available. When a Gemini key is
configured the agent asks the model first, clamps the answer to the
principal's bounds, and falls back to the rules on any failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from bagsy_platform.agents.base import BaseAgent
from bagsy_platform.agents.prompts.negotiation import (
    DECISION_RESPONSE_SCHEMA,
    NEGOTIATION_DECISION_TEMPLATE,
    NEGOTIATION_SYSTEM_PROMPT,
)
from bagsy_platform.domain.enums import BookingActor, DelegateAction, DemandLevel, NegotiationStrategy
from bagsy_platform.domain.schemas import DelegateDecision, MarketSnapshot

logger = logging.getLogger(__name__)

# ── Defaults ─────────────────────────────────────────────────────────────────

DEFAULT_AUTO_ACCEPT_RATIO = 0.95
DEFAULT_MIN_PRICE_RATIO = 0.7
DEFAULT_MAX_PRICE_RATIO = 1.1

# Share of the gap to the listing price an owner keeps when countering
OWNER_COUNTER_FACTORS = {
    NegotiationStrategy.AGGRESSIVE: 0.7,
    NegotiationStrategy.MODERATE: 0.5,
    NegotiationStrategy.CONSERVATIVE: 0.4,
}

OWNER_MAX_PROGRESS = 0.3
RENTER_MAX_PROGRESS = 0.4
ROUNDS_TO_CONVERGE = 5


@dataclass
class NegotiationContext:
    """Everything a delegate sees when deciding."""

    role: BookingActor
    listing_price: float
    offer_price: float
    market: MarketSnapshot
    strategy: NegotiationStrategy = NegotiationStrategy.MODERATE
    min_acceptable_price: Optional[float] = None
    max_acceptable_price: Optional[float] = None
    auto_accept_threshold: Optional[float] = None
    round_number: int = 0
    space_title: str = ""
    space_type: str = "driveway"
    city: str = ""
    state: str = ""
    history: list[tuple[str, float, bool]] = field(default_factory=list)

    @property
    def min_price(self) -> float:
        return self.min_acceptable_price or self.listing_price * DEFAULT_MIN_PRICE_RATIO

    @property
    def max_price(self) -> float:
        return self.max_acceptable_price or self.listing_price * DEFAULT_MAX_PRICE_RATIO

    @property
    def auto_accept_ratio(self) -> float:
        return self.auto_accept_threshold or DEFAULT_AUTO_ACCEPT_RATIO


# ---------------------------------------------------------------------------
# Rule-based decisions
# ---------------------------------------------------------------------------


def owner_counter_price(ctx: NegotiationContext) -> float:
    offer = ctx.offer_price
    factor = OWNER_COUNTER_FACTORS.get(ctx.strategy, 0.5)
    counter = offer + (ctx.listing_price - offer) * factor

    if ctx.market.demand_level == DemandLevel.HIGH:
        counter *= 1.05
    elif ctx.market.demand_level == DemandLevel.LOW:
        counter *= 0.95

    progress = min(ctx.round_number / ROUNDS_TO_CONVERGE, OWNER_MAX_PROGRESS)
    counter -= (counter - offer) * progress
    counter = max(counter, ctx.min_price)
    return round(counter, 2)


def renter_counter_price(ctx: NegotiationContext) -> float:
    average = ctx.market.average_price
    if ctx.strategy == NegotiationStrategy.AGGRESSIVE:
        counter = average * 0.85
    elif ctx.strategy == NegotiationStrategy.CONSERVATIVE:
        counter = (ctx.offer_price + average) / 2
    else:
        counter = average * 0.95

    progress = min(ctx.round_number / ROUNDS_TO_CONVERGE, RENTER_MAX_PROGRESS)
    counter += (ctx.offer_price - counter) * progress
    counter = min(counter, ctx.max_price)
    return round(counter, 2)


def owner_decision(ctx: NegotiationContext) -> DelegateDecision:
    offer = ctx.offer_price
    average = ctx.market.average_price
    ratio = offer / ctx.listing_price

    if ratio >= ctx.auto_accept_ratio:
        return DelegateDecision(
            action=DelegateAction.ACCEPT,
            reasoning=f"Offer of ${offer:.2f}/hr is {ratio * 100:.0f}% of listing price. Excellent deal!",
            confidence=0.95,
        )
    if offer >= average and ratio >= 0.85:
        return DelegateDecision(
            action=DelegateAction.ACCEPT,
            reasoning=f"Offer exceeds market average of ${average:.2f}/hr. Good market value.",
            confidence=0.85,
        )
    if offer < ctx.min_price:
        return DelegateDecision(
            action=DelegateAction.REJECT,
            reasoning=(
                f"Offer of ${offer:.2f}/hr is below minimum acceptable price "
                f"of ${ctx.min_price:.2f}/hr."
            ),
            confidence=0.9,
        )

    counter = owner_counter_price(ctx)
    if ctx.market.demand_level == DemandLevel.HIGH:
        market_note = "Demand is currently high in this area."
    elif ctx.market.demand_level == DemandLevel.LOW:
        market_note = "I'm being flexible given current market conditions."
    else:
        market_note = "This represents fair market value for the space."
    return DelegateDecision(
        action=DelegateAction.COUNTER,
        counter_price=counter,
        reasoning=" ".join([
            f"Based on market analysis, comparable spaces average ${average:.2f}/hr.",
            f"My counter-offer of ${counter:.2f}/hr is {(counter / offer - 1) * 100:.0f}% above your offer.",
            market_note,
            "Let's find a price that works for both of us.",
        ]),
        confidence=0.75,
    )


def renter_decision(ctx: NegotiationContext) -> DelegateDecision:
    offer = ctx.offer_price
    average = ctx.market.average_price
    market_ratio = offer / average

    if offer <= ctx.max_price and market_ratio <= 1.1:
        where = "at or below" if market_ratio <= 1.0 else "close to"
        return DelegateDecision(
            action=DelegateAction.ACCEPT,
            reasoning=f"Price of ${offer:.2f}/hr is within budget and {where} market average.",
            confidence=0.9,
        )
    if offer < average * 0.85:
        return DelegateDecision(
            action=DelegateAction.ACCEPT,
            reasoning=f"Excellent deal! Price is {(1 - market_ratio) * 100:.0f}% below market average.",
            confidence=0.95,
        )
    if offer > ctx.max_price * 1.15:
        return DelegateDecision(
            action=DelegateAction.REJECT,
            reasoning=f"Price of ${offer:.2f}/hr exceeds maximum budget of ${ctx.max_price:.2f}/hr.",
            confidence=0.9,
        )

    counter = renter_counter_price(ctx)
    return DelegateDecision(
        action=DelegateAction.COUNTER,
        counter_price=counter,
        reasoning=" ".join([
            f"I've researched comparable spaces in the area averaging ${average:.2f}/hr.",
            f"My offer of ${counter:.2f}/hr reflects fair market value.",
            "This is already above the market average."
            if counter >= average
            else "This is a competitive offer for similar spaces.",
            "I'm ready to book immediately at this price.",
        ]),
        confidence=0.75,
    )


def rule_based_decision(ctx: NegotiationContext) -> DelegateDecision:
    if ctx.role == BookingActor.OWNER:
        return owner_decision(ctx)
    return renter_decision(ctx)


def clamp_decision(decision: DelegateDecision, ctx: NegotiationContext) -> DelegateDecision | None:
    """Keep a model decision inside the principal's bounds.

    Returns None when the decision cannot be used as-is.
    """
    if decision.action != DelegateAction.COUNTER:
        return decision
    if decision.counter_price is None or decision.counter_price <= 0:
        return None
    price = decision.counter_price
    if ctx.role == BookingActor.OWNER:
        price = max(price, ctx.min_price)
    else:
        price = min(price, ctx.max_price)
    return decision.model_copy(update={"counter_price": round(price, 2)})


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class NegotiationAgent(BaseAgent):
    """Delegate brain: Gemini when configured, rules otherwise."""

    def __init__(self, use_llm: Optional[bool] = None, model_name: Optional[str] = None):
        super().__init__(agent_name="negotiation_agent", model_name=model_name)
        if use_llm is None:
            from bagsy_platform.infra.gemini_client import is_configured

            use_llm = is_configured()
        self.use_llm = use_llm

    async def decide(self, ctx: NegotiationContext) -> DelegateDecision:
        if self.use_llm:
            decision = await self._llm_decision(ctx)
            if decision is not None:
                return decision
        return rule_based_decision(ctx)

    async def _llm_decision(self, ctx: NegotiationContext) -> DelegateDecision | None:
        result = await self.generate_json(
            prompt=self._build_prompt(ctx),
            system_instruction=NEGOTIATION_SYSTEM_PROMPT,
            response_schema=DECISION_RESPONSE_SCHEMA,
        )
        if not result.ok:
            logger.warning("Negotiation model failed, using rules: %s", result.error)
            return None
        try:
            decision = DelegateDecision.model_validate(result.data)
        except ValidationError as exc:
            logger.warning("Negotiation model returned an invalid decision: %s", exc)
            return None
        clamped = clamp_decision(decision, ctx)
        if clamped is None:
            logger.warning("Negotiation model countered without a usable price")
        return clamped

    @staticmethod
    def _build_prompt(ctx: NegotiationContext) -> str:
        history = "\n".join(
            f"- {who}: ${price:.2f}/hr{' (AI)' if ai else ''}" for who, price, ai in ctx.history
        ) or "- (none)"
        low, high = ctx.market.price_range
        return NEGOTIATION_DECISION_TEMPLATE.format(
            role=ctx.role.value,
            space_title=ctx.space_title or "Space",
            space_type=ctx.space_type,
            city=ctx.city,
            state=ctx.state,
            listing_price=ctx.listing_price,
            offer_price=ctx.offer_price,
            round_number=ctx.round_number,
            strategy=ctx.strategy.value,
            min_price=f"${ctx.min_price:.2f}/hr",
            max_price=f"${ctx.max_price:.2f}/hr",
            auto_accept=f"{ctx.auto_accept_ratio:.2f}",
            average_price=ctx.market.average_price,
            median_price=ctx.market.median_price,
            low_price=low,
            high_price=high,
            demand_level=ctx.market.demand_level.value,
            history=history,
        )
