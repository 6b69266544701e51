"""Tests for the delegate work queue and a fully automated negotiation."""

import asyncio
from unittest.mock import AsyncMock

from sqlalchemy import select

from bagsy_platform.agents.negotiation_agent import NegotiationAgent
from bagsy_platform.domain.enums import BookingStatus, OfferStatus
from bagsy_platform.domain.models import Booking, Negotiation, Notification
from bagsy_platform.services.delegate_queue import DelegateTask, DelegateTaskQueue
from bagsy_platform.services.negotiation_engine import NegotiationEngine


async def _committed_booking(db_session, make_user, make_space, make_delegate, booking_window):
    renter = await make_user(name="Rita Renter")
    owner = await make_user(name="Owen Owner")
    space = await make_space(owner)
    await make_delegate(owner)
    await make_delegate(renter)
    start, end = booking_window
    booking = Booking(
        space_id=space.id,
        renter_id=renter.id,
        owner_id=owner.id,
        start_time=start,
        end_time=end,
        original_price=10.0,
        final_price=10.0,
        total_price=20.0,
        status="pending",
        payment_status="pending",
    )
    db_session.add(booking)
    await db_session.commit()
    return booking.id, renter.id, owner.id


class TestDelegateTaskQueue:
    async def test_two_delegates_settle_a_price(
        self, db_session, session_factory, make_user, make_space, make_delegate, booking_window
    ):
        booking_id, renter_id, owner_id = await _committed_booking(
            db_session, make_user, make_space, make_delegate, booking_window
        )
        queue = DelegateTaskQueue(session_factory, agent=NegotiationAgent(use_llm=False), send_email=False)
        engine = NegotiationEngine(db_session, dispatcher=queue)

        await engine.submit_offer(booking_id, renter_id, 7.5, "Would $7.50 work?")
        assert queue.queue.qsize() == 1

        runs = await queue.drain()

        # Owner delegate counters at 8.50, the renter delegate accepts it
        assert runs == 2
        booking = await db_session.get(Booking, booking_id, populate_existing=True)
        assert booking.status == BookingStatus.ACCEPTED.value
        assert booking.final_price == 8.5

        result = await db_session.execute(
            select(Negotiation)
            .where(Negotiation.booking_id == booking_id)
            .order_by(Negotiation.created_at)
            .execution_options(populate_existing=True)
        )
        offers = result.scalars().all()
        assert [(o.from_user_id, o.status, o.ai_generated) for o in offers] == [
            (renter_id, OfferStatus.REJECTED.value, False),
            (owner_id, OfferStatus.ACCEPTED.value, True),
        ]

        notified = await db_session.execute(select(Notification.user_id, Notification.kind))
        assert (renter_id, "negotiation_offer") in notified.all()

    async def test_stale_task_is_a_noop(
        self, db_session, session_factory, make_user, make_space, make_delegate, booking_window
    ):
        booking_id, _, _ = await _committed_booking(
            db_session, make_user, make_space, make_delegate, booking_window
        )
        agent = AsyncMock()
        queue = DelegateTaskQueue(session_factory, agent=agent, send_email=False)
        queue.enqueue(booking_id, "no-such-offer")

        assert await queue.drain() == 1
        agent.decide.assert_not_awaited()

    async def test_worker_survives_failures(self, session_factory):
        queue = DelegateTaskQueue(session_factory)
        queue.process = AsyncMock(side_effect=[RuntimeError("boom"), None])

        queue.start()
        queue.enqueue("booking-1", "offer-1")
        queue.enqueue("booking-2", "offer-2")
        await asyncio.wait_for(queue.queue.join(), timeout=1)
        await queue.stop()

        assert queue.process.await_count == 2
        assert queue.process.await_args_list[1].args == (DelegateTask("booking-2", "offer-2"),)
        assert queue._worker_task is None
