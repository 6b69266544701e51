"""Tests for the NegotiationEngine: offers, counters, acceptance and the delegate."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from bagsy_platform.agents.negotiation_agent import NegotiationAgent
from bagsy_platform.domain.enums import (
    BookingStatus,
    DelegateAction,
    NotificationKind,
    OfferStatus,
)
from bagsy_platform.domain.errors import (
    InvalidPriceError,
    NotAuthorizedForActionError,
    OfferNotPendingError,
    PreconditionFailedError,
)
from bagsy_platform.domain.models import Agreement, Booking, BookingEvent, Negotiation
from bagsy_platform.domain.schemas import DelegateDecision
from bagsy_platform.services.negotiation_engine import NegotiationEngine

S = BookingStatus


@pytest.fixture
def make_booking(db_session, make_user, make_space, booking_window):
    """Factory that creates renter, owner, space and a committed booking.

    Usage:
        ctx = await make_booking(status="pending", price=10.0)
        ctx.booking, ctx.renter, ctx.owner, ctx.space
    """
    async def _factory(status: str = "pending", price: float = 10.0):
        renter = await make_user(name="Rita Renter")
        owner = await make_user(name="Owen Owner")
        space = await make_space(owner, price_per_hour=price)
        start, end = booking_window
        booking = Booking(
            space_id=space.id,
            renter_id=renter.id,
            owner_id=owner.id,
            start_time=start,
            end_time=end,
            original_price=price,
            final_price=price,
            total_price=round(price * 2, 2),
            status=status,
            payment_status="pending",
        )
        db_session.add(booking)
        await db_session.commit()
        # Plain ids survive the session expiring everything after a rollback
        return SimpleNamespace(
            booking=booking,
            renter=renter,
            owner=owner,
            space=space,
            booking_id=booking.id,
            renter_id=renter.id,
            owner_id=owner.id,
        )

    return _factory


@pytest.fixture
def engine(db_session, notifier_mock, fake_dispatcher):
    return NegotiationEngine(db_session, notifier=notifier_mock, dispatcher=fake_dispatcher)


async def _offers(db_session, booking_id):
    result = await db_session.execute(
        select(Negotiation).where(Negotiation.booking_id == booking_id).order_by(Negotiation.created_at)
    )
    return list(result.scalars().all())


async def _pending_count(db_session, booking_id):
    return sum(1 for o in await _offers(db_session, booking_id) if o.status == OfferStatus.PENDING.value)


async def _event_types(db_session, booking_id):
    result = await db_session.execute(
        select(BookingEvent.event_type).where(BookingEvent.booking_id == booking_id)
    )
    return list(result.scalars().all())


def _fake_agent(decision: DelegateDecision):
    agent = MagicMock()
    agent.decide = AsyncMock(return_value=decision)
    return agent


# ---------------------------------------------------------------------------
# Submitting offers
# ---------------------------------------------------------------------------


class TestSubmitOffer:
    async def test_lower_offer_opens_negotiation(self, db_session, engine, notifier_mock, make_booking):
        ctx = await make_booking()
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0, "Is $7 ok?")

        await db_session.refresh(ctx.booking)
        assert ctx.booking.status == S.NEGOTIATING.value
        assert ctx.booking.final_price == 7.0
        assert ctx.booking.total_price == 14.0
        assert offer.status == OfferStatus.PENDING.value
        assert offer.to_user_id == ctx.owner_id

        kind, recipient, payload = notifier_mock.sent[-1]
        assert kind == NotificationKind.NEGOTIATION_OFFER
        assert recipient == ctx.owner_id
        assert payload["from_name"] == "Rita Renter"
        assert payload["offer_price"] == 7.0

    async def test_offer_at_current_price_keeps_pending(self, db_session, engine, make_booking):
        ctx = await make_booking()
        await engine.submit_offer(ctx.booking_id, ctx.renter_id, 10.0)
        await db_session.refresh(ctx.booking)
        assert ctx.booking.status == S.PENDING.value

    async def test_sender_cannot_stack_offers(self, db_session, engine, make_booking):
        ctx = await make_booking()
        await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        with pytest.raises(PreconditionFailedError):
            await engine.submit_offer(ctx.booking_id, ctx.renter_id, 6.5)
        assert await _pending_count(db_session, ctx.booking_id) == 1

    async def test_counter_rejects_previous_offer(self, db_session, engine, make_booking):
        ctx = await make_booking()
        first = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        counter = await engine.submit_offer(ctx.booking_id, ctx.owner_id, 8.5, "Meet me halfway")

        offers = await _offers(db_session, ctx.booking_id)
        assert [o.status for o in offers] == ["rejected", "pending"]
        assert offers[0].id == first.id
        assert counter.to_user_id == ctx.renter_id
        await db_session.refresh(ctx.booking)
        assert ctx.booking.final_price == 8.5
        assert "offer_rejected" in await _event_types(db_session, ctx.booking_id)

    @pytest.mark.parametrize("price", [0, -3.0])
    async def test_non_positive_price(self, engine, make_booking, price):
        ctx = await make_booking()
        with pytest.raises(InvalidPriceError):
            await engine.submit_offer(ctx.booking_id, ctx.renter_id, price)

    async def test_stranger_cannot_offer(self, engine, make_booking, make_user):
        ctx = await make_booking()
        stranger = await make_user(name="Stan Stranger")
        with pytest.raises(NotAuthorizedForActionError):
            await engine.submit_offer(ctx.booking_id, stranger.id, 7.0)

    @pytest.mark.parametrize("status", ["accepted", "confirmed", "cancelled"])
    async def test_no_offers_outside_negotiable_states(self, engine, make_booking, status):
        ctx = await make_booking(status=status)
        with pytest.raises(PreconditionFailedError):
            await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)

    async def test_storage_rejects_second_pending_offer(self, db_session, make_booking):
        ctx = await make_booking()
        for price in (7.0, 8.0):
            db_session.add(
                Negotiation(
                    booking_id=ctx.booking_id,
                    from_user_id=ctx.renter_id,
                    to_user_id=ctx.owner_id,
                    offer_price=price,
                    status="pending",
                )
            )
        with pytest.raises(IntegrityError):
            await db_session.flush()


# ---------------------------------------------------------------------------
# Accepting / rejecting
# ---------------------------------------------------------------------------


class TestAcceptOffer:
    async def test_accept_fixes_price_and_creates_agreement(
        self, db_session, engine, notifier_mock, make_booking
    ):
        ctx = await make_booking()
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)

        booking = await engine.accept_offer(offer.id, ctx.owner_id)

        assert booking.status == S.ACCEPTED.value
        assert booking.final_price == 7.0
        await db_session.refresh(offer)
        assert offer.status == OfferStatus.ACCEPTED.value
        agreement = (
            await db_session.execute(select(Agreement).where(Agreement.booking_id == booking.id))
        ).scalar_one()
        assert agreement.fully_executed is False
        assert "Agreed Price: $7.00 per hour" in agreement.terms
        ready = [r for k, r, _ in notifier_mock.sent if k == NotificationKind.AGREEMENT_READY]
        assert sorted(ready) == sorted([ctx.renter_id, ctx.owner_id])

    async def test_sender_cannot_accept_own_offer(self, engine, make_booking):
        ctx = await make_booking()
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        with pytest.raises(NotAuthorizedForActionError):
            await engine.accept_offer(offer.id, ctx.renter_id)

    async def test_accepting_a_resolved_offer_changes_nothing(self, db_session, engine, make_booking):
        ctx = await make_booking()
        first = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        await engine.submit_offer(ctx.booking_id, ctx.owner_id, 9.0)

        with pytest.raises(OfferNotPendingError):
            await engine.accept_offer(first.id, ctx.owner_id)

        await db_session.refresh(ctx.booking)
        assert ctx.booking.status == S.NEGOTIATING.value
        assert ctx.booking.final_price == 9.0


class TestRejectOffer:
    async def test_reject_then_fresh_offer(self, db_session, engine, notifier_mock, make_booking):
        ctx = await make_booking()
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 10.0)

        await engine.reject_offer(offer.id, ctx.owner_id, "Booked that day")

        await db_session.refresh(ctx.booking)
        assert ctx.booking.status == S.NEGOTIATING.value
        kind, recipient, payload = notifier_mock.sent[-1]
        assert recipient == ctx.renter_id
        assert payload["title"] == "Offer Rejected"
        assert payload["message"] == "Owen Owner rejected your offer of $10.00: Booked that day"

        with pytest.raises(OfferNotPendingError):
            await engine.reject_offer(offer.id, ctx.owner_id)

        fresh = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 9.0)
        assert fresh.status == OfferStatus.PENDING.value


# ---------------------------------------------------------------------------
# Delegate
# ---------------------------------------------------------------------------


class TestDelegateDispatch:
    async def test_enqueued_when_recipient_has_delegate(self, engine, fake_dispatcher, make_booking, make_delegate):
        ctx = await make_booking()
        await make_delegate(ctx.owner)
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        assert fake_dispatcher.queued == [(ctx.booking_id, offer.id)]

    async def test_not_enqueued_without_enabled_delegate(
        self, engine, fake_dispatcher, make_booking, make_delegate
    ):
        ctx = await make_booking()
        await make_delegate(ctx.owner, enabled=False)
        await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        assert fake_dispatcher.queued == []

    async def test_notifier_failure_still_queues_delegate(
        self, db_session, fake_dispatcher, make_booking, make_delegate
    ):
        ctx = await make_booking()
        await make_delegate(ctx.owner)
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("mail relay down"))
        engine = NegotiationEngine(db_session, notifier=notifier, dispatcher=fake_dispatcher)

        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)

        assert offer.status == OfferStatus.PENDING.value
        assert fake_dispatcher.queued == [(ctx.booking_id, offer.id)]
        notifier.notify.assert_awaited_once()

    async def test_notifier_failure_after_reject(self, db_session, make_booking):
        ctx = await make_booking()
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("mail relay down"))
        engine = NegotiationEngine(db_session, notifier=notifier)
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)

        rejected = await engine.reject_offer(offer.id, ctx.owner_id, "No")

        assert rejected.status == OfferStatus.REJECTED.value
        assert notifier.notify.await_count == 2


class TestRunDelegate:
    async def test_rule_based_owner_counter(self, db_session, notifier_mock, fake_dispatcher, make_booking, make_delegate):
        ctx = await make_booking()
        await make_delegate(ctx.owner)
        await make_delegate(ctx.renter)
        engine = NegotiationEngine(
            db_session,
            notifier=notifier_mock,
            dispatcher=fake_dispatcher,
            agent=NegotiationAgent(use_llm=False),
        )
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.5)

        decision = await engine.run_delegate(ctx.booking_id, offer.id)

        # 7.5 + (10 - 7.5) x 0.5 = 8.75, pulled 20% towards 7.5 in round one
        assert decision.action == DelegateAction.COUNTER
        assert decision.counter_price == 8.5
        offers = await _offers(db_session, ctx.booking_id)
        counter = offers[-1]
        assert counter.ai_generated is True
        assert counter.from_user_id == ctx.owner_id
        assert counter.offer_price == 8.5
        assert counter.message.startswith("AI Agent: Based on market analysis")
        # The renter's delegate is queued in turn
        assert fake_dispatcher.queued[-1] == (ctx.booking_id, counter.id)

    async def test_accept_decision(self, db_session, make_booking, make_delegate):
        ctx = await make_booking()
        await make_delegate(ctx.owner)
        engine = NegotiationEngine(
            db_session, agent=_fake_agent(DelegateDecision(action=DelegateAction.ACCEPT, reasoning="ok"))
        )
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 9.8)
        await engine.run_delegate(ctx.booking_id, offer.id)
        await db_session.refresh(ctx.booking)
        assert ctx.booking.status == S.ACCEPTED.value
        assert ctx.booking.final_price == 9.8

    async def test_counter_at_offer_price_becomes_accept(self, db_session, make_booking, make_delegate):
        ctx = await make_booking()
        await make_delegate(ctx.owner)
        engine = NegotiationEngine(
            db_session,
            agent=_fake_agent(
                DelegateDecision(action=DelegateAction.COUNTER, counter_price=8.0, reasoning="fine")
            ),
        )
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 8.0)
        decision = await engine.run_delegate(ctx.booking_id, offer.id)
        assert decision.action == DelegateAction.ACCEPT
        await db_session.refresh(ctx.booking)
        assert ctx.booking.status == S.ACCEPTED.value

    async def test_reject_decision(self, db_session, make_booking, make_delegate):
        ctx = await make_booking()
        await make_delegate(ctx.owner)
        engine = NegotiationEngine(
            db_session,
            agent=_fake_agent(DelegateDecision(action=DelegateAction.REJECT, reasoning="Too low.")),
        )
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 2.0)
        await engine.run_delegate(ctx.booking_id, offer.id)
        await db_session.refresh(offer)
        assert offer.status == OfferStatus.REJECTED.value

    async def test_repeat_run_for_same_offer_is_noop(self, db_session, make_booking, make_delegate):
        ctx = await make_booking()
        await make_delegate(ctx.owner)
        agent = _fake_agent(DelegateDecision(action=DelegateAction.COUNTER, counter_price=9.0, reasoning="x"))
        engine = NegotiationEngine(db_session, agent=agent)
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)

        await engine.run_delegate(ctx.booking_id, offer.id)
        second = await engine.run_delegate(ctx.booking_id, offer.id)

        assert second.action == DelegateAction.NONE
        assert agent.decide.await_count == 1
        assert len(await _offers(db_session, ctx.booking_id)) == 2

    async def test_offer_addressed_to_principal_without_delegate(self, db_session, make_booking):
        ctx = await make_booking()
        agent = _fake_agent(DelegateDecision(action=DelegateAction.ACCEPT))
        engine = NegotiationEngine(db_session, agent=agent)
        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        decision = await engine.run_delegate(ctx.booking_id, offer.id)
        assert decision.action == DelegateAction.NONE
        agent.decide.assert_not_awaited()

    async def test_counter_limit(self, db_session, make_booking, make_delegate):
        ctx = await make_booking()
        await make_delegate(ctx.owner, max_counter_offers=1)
        agent = _fake_agent(DelegateDecision(action=DelegateAction.COUNTER, counter_price=9.0, reasoning="x"))
        engine = NegotiationEngine(db_session, agent=agent)

        offer = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.0)
        await engine.run_delegate(ctx.booking_id, offer.id)
        renter_reply = await engine.submit_offer(ctx.booking_id, ctx.renter_id, 7.5)
        decision = await engine.run_delegate(ctx.booking_id, renter_reply.id)

        assert decision.action == DelegateAction.NONE
        assert decision.reasoning == "Counter-offer limit reached"
        assert agent.decide.await_count == 1
