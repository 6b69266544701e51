"""Negotiation engine: per-booking offers, counters, acceptance and the delegate.

Offer lifecycle::

    (no offer) -> pending -> accepted
                          -> rejected -> (a fresh pending offer may follow)

At most one offer per booking is pending. Countering an offer rejects it in
the same transaction that creates the counter. Every write is a guarded
UPDATE; the partial unique index on pending offers backs the invariant at
the storage level.
"""

import logging
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    DelegateAction,
    NegotiationStrategy,
    NotificationKind,
    OfferStatus,
)
from bagsy_platform.domain.errors import (
    ConcurrentUpdateError,
    InvalidPriceError,
    NotAuthorizedForActionError,
    OfferNotPendingError,
    PreconditionFailedError,
)
from bagsy_platform.domain.models import Booking, Negotiation, NegotiationDelegate, Space
from bagsy_platform.domain.schemas import DelegateDecision
from bagsy_platform.services import booking_store as store
from bagsy_platform.services.agreement_service import ensure_agreement
from bagsy_platform.services.booking_state_machine import BookingStateMachine
from bagsy_platform.services.market_snapshot import get_market_snapshot
from bagsy_platform.services.notification_service import best_effort

logger = logging.getLogger(__name__)

AI_MESSAGE_PREFIX = "AI Agent: "


class DelegateDispatcher(Protocol):
    """Anything that can schedule a delegate run for a pending offer."""

    def enqueue(self, booking_id: str, offer_id: str) -> None: ...


def party_role(booking: Booking, user_id: str) -> BookingActor:
    """Return the role ``user_id`` plays on ``booking``."""
    if user_id == booking.renter_id:
        return BookingActor.RENTER
    if user_id == booking.owner_id:
        return BookingActor.OWNER
    raise NotAuthorizedForActionError(f"User {user_id} is not a party to booking {booking.id}")


def counterpart_of(booking: Booking, user_id: str) -> str:
    return booking.owner_id if user_id == booking.renter_id else booking.renter_id


class NegotiationEngine:
    """Offer exchange on a single booking, for humans and delegates alike."""

    def __init__(
        self,
        db: AsyncSession,
        notifier=None,
        dispatcher: Optional[DelegateDispatcher] = None,
        agent=None,
        state_machine: Optional[BookingStateMachine] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.dispatcher = dispatcher
        self._agent = agent
        self.state_machine = state_machine or BookingStateMachine()

    @property
    def agent(self):
        if self._agent is None:
            from bagsy_platform.agents.negotiation_agent import NegotiationAgent

            self._agent = NegotiationAgent()
        return self._agent

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def add_offer(
        self,
        booking: Booking,
        from_user_id: str,
        price: float,
        message: str | None = None,
        ai_generated: bool = False,
    ) -> Negotiation:
        """Stage a new pending offer in the current transaction (no commit)."""
        if price is None or price <= 0:
            raise InvalidPriceError(price)
        role = party_role(booking, from_user_id)
        current = BookingStatus(booking.status)
        if not self.state_machine.can_negotiate(current):
            raise PreconditionFailedError(
                f"Offers cannot be made on a booking that is {current.value}"
            )

        pending = await store.get_pending_offer(self.db, booking.id)
        countered: Negotiation | None = None
        if pending is not None:
            if pending.from_user_id == from_user_id:
                raise PreconditionFailedError(
                    "You already have a pending offer on this booking; wait for a response"
                )
            if not await store.resolve_offer_if_pending(self.db, pending, OfferStatus.REJECTED):
                raise ConcurrentUpdateError("Offer", pending.id)
            countered = pending

        price = round(float(price), 2)
        values = {"final_price": price, "total_price": store.booking_total(booking, price)}
        target = current
        if price != booking.final_price and current == BookingStatus.PENDING:
            self.state_machine.validate_transition(current, BookingStatus.NEGOTIATING, role)
            target = BookingStatus.NEGOTIATING
            values["status"] = target.value
        await store.update_booking_if(self.db, booking, current, **values)

        offer = Negotiation(
            booking_id=booking.id,
            from_user_id=from_user_id,
            to_user_id=counterpart_of(booking, from_user_id),
            offer_price=price,
            message=message,
            status=OfferStatus.PENDING.value,
            ai_generated=ai_generated,
            created_at=store.utcnow(),
        )
        self.db.add(offer)
        await self.db.flush()

        if countered is not None:
            store.record_event(
                self.db, booking.id, BookingEventType.OFFER_REJECTED, role, from_user_id,
                data={"offer_id": countered.id, "countered_by": offer.id},
            )
        store.record_event(
            self.db, booking.id, BookingEventType.OFFER_SUBMITTED, role, from_user_id,
            from_status=current, to_status=target,
            data={"offer_id": offer.id, "price": price, "ai_generated": ai_generated},
        )
        logger.info(
            "Offer %s on booking %s: %s offered %.2f%s",
            offer.id,
            booking.id,
            role.value,
            price,
            " (delegate)" if ai_generated else "",
        )
        return offer

    async def submit_offer(
        self,
        booking_id: str,
        from_user_id: str,
        price: float,
        message: str | None = None,
        ai_generated: bool = False,
    ) -> Negotiation:
        """Create a pending offer to the counterpart, countering any offer addressed to the sender."""
        try:
            booking = await store.get_booking(self.db, booking_id)
            offer = await self.add_offer(booking, from_user_id, price, message, ai_generated)
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            logger.warning("Pending offer conflict on booking %s: %s", booking_id, exc)
            raise PreconditionFailedError(
                "Another offer is already pending on this booking"
            ) from exc
        except Exception:
            await self.db.rollback()
            raise

        # Queue the counterpart's delegate before notifying
        await best_effort(
            self.dispatch_delegate(booking.id, offer), f"Delegate dispatch for offer {offer.id}"
        )
        await best_effort(self.announce_offer(booking, offer), f"Notification for offer {offer.id}")
        return offer

    async def announce_offer(self, booking: Booking, offer: Negotiation) -> None:
        if self.notifier is None:
            return
        space = await self.db.get(Space, booking.space_id)
        await self.notifier.notify(
            NotificationKind.NEGOTIATION_OFFER,
            offer.to_user_id,
            {
                "booking_id": booking.id,
                "offer_id": offer.id,
                "space_title": space.title if space is not None else "your space",
                "from_name": await store.display_name(self.db, offer.from_user_id),
                "offer_price": offer.offer_price,
                "offer_message": offer.message,
            },
        )

    async def dispatch_delegate(self, booking_id: str, offer: Negotiation) -> bool:
        """Enqueue a delegate run when the offer's recipient has one enabled."""
        if self.dispatcher is None:
            return False
        delegate = await self._get_delegate(offer.to_user_id)
        if delegate is None:
            return False
        self.dispatcher.enqueue(booking_id, offer.id)
        return True

    async def accept_offer(self, offer_id: str, actor_id: str) -> Booking:
        """Accept a pending offer: fixes the price and creates the agreement."""
        try:
            offer = await store.get_offer(self.db, offer_id)
            booking = await store.get_booking(self.db, offer.booking_id)
            role = party_role(booking, actor_id)
            if actor_id != offer.to_user_id:
                raise NotAuthorizedForActionError("Only the recipient of an offer can accept it")
            if offer.status != OfferStatus.PENDING.value:
                raise OfferNotPendingError(offer.id, offer.status)

            current = BookingStatus(booking.status)
            self.state_machine.validate_transition(current, BookingStatus.ACCEPTED, role)

            if not await store.resolve_offer_if_pending(self.db, offer, OfferStatus.ACCEPTED):
                raise OfferNotPendingError(offer.id, "resolved")
            await store.update_booking_if(
                self.db,
                booking,
                current,
                status=BookingStatus.ACCEPTED.value,
                final_price=offer.offer_price,
                total_price=store.booking_total(booking, offer.offer_price),
            )

            space = await store.get_space(self.db, booking.space_id)
            agreement, created = await ensure_agreement(
                self.db, booking, space, ai_assisted=bool(offer.ai_generated)
            )
            store.record_event(
                self.db, booking.id, BookingEventType.OFFER_ACCEPTED, role, actor_id,
                from_status=current, to_status=BookingStatus.ACCEPTED,
                data={"offer_id": offer.id, "price": offer.offer_price},
            )
            if created:
                store.record_event(
                    self.db, booking.id, BookingEventType.AGREEMENT_CREATED, BookingActor.SYSTEM,
                    data={"agreement_id": agreement.id},
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Offer %s accepted; booking %s accepted at %.2f",
            offer.id,
            booking.id,
            offer.offer_price,
        )
        if self.notifier is not None:
            payload = {"booking_id": booking.id, "agreement_id": agreement.id, "space_title": space.title}
            for user_id in (booking.renter_id, booking.owner_id):
                await best_effort(
                    self.notifier.notify(NotificationKind.AGREEMENT_READY, user_id, dict(payload)),
                    f"Agreement notification for booking {booking.id}",
                )
        return booking

    async def reject_offer(self, offer_id: str, actor_id: str, message: str | None = None) -> Negotiation:
        """Reject a pending offer; the booking stays (or moves to) negotiating."""
        try:
            offer = await store.get_offer(self.db, offer_id)
            booking = await store.get_booking(self.db, offer.booking_id)
            role = party_role(booking, actor_id)
            if actor_id != offer.to_user_id:
                raise NotAuthorizedForActionError("Only the recipient of an offer can reject it")
            if offer.status != OfferStatus.PENDING.value:
                raise OfferNotPendingError(offer.id, offer.status)

            current = BookingStatus(booking.status)
            if not await store.resolve_offer_if_pending(self.db, offer, OfferStatus.REJECTED):
                raise OfferNotPendingError(offer.id, "resolved")
            target = current
            if current == BookingStatus.PENDING:
                self.state_machine.validate_transition(current, BookingStatus.NEGOTIATING, role)
                target = BookingStatus.NEGOTIATING
                await store.update_booking_if(self.db, booking, current, status=target.value)
            store.record_event(
                self.db, booking.id, BookingEventType.OFFER_REJECTED, role, actor_id,
                from_status=current, to_status=target,
                data={"offer_id": offer.id, "message": message},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Offer %s rejected on booking %s", offer.id, booking.id)
        await best_effort(
            self._announce_rejection(booking, offer, actor_id, message),
            f"Rejection notice for offer {offer.id}",
        )
        return offer

    async def _announce_rejection(
        self, booking: Booking, offer: Negotiation, actor_id: str, message: str | None
    ) -> None:
        if self.notifier is None:
            return
        name = await store.display_name(self.db, actor_id)
        text = f"{name} rejected your offer of ${offer.offer_price:.2f}"
        await self.notifier.notify(
            NotificationKind.NEGOTIATION_OFFER,
            offer.from_user_id,
            {
                "title": "Offer Rejected",
                "message": f"{text}: {message}" if message else text,
                "booking_id": booking.id,
                "offer_id": offer.id,
            },
        )

    async def list_offers(self, booking_id: str, viewer_id: str | None = None) -> list[Negotiation]:
        booking = await store.get_booking(self.db, booking_id)
        if viewer_id is not None:
            party_role(booking, viewer_id)
        return await store.list_offers(self.db, booking_id)

    # ------------------------------------------------------------------
    # Automated delegate
    # ------------------------------------------------------------------

    async def run_delegate(self, booking_id: str, offer_id: str) -> DelegateDecision:
        """Let the recipient's delegate answer ``offer_id`` if it is still live.

        Safe to call repeatedly: anything other than the booking's current
        pending offer addressed to a principal with an enabled delegate is
        left alone.
        """
        skip = DelegateDecision(action=DelegateAction.NONE, reasoning="")
        booking = await self.db.get(Booking, booking_id, populate_existing=True)
        if booking is None or not self.state_machine.can_negotiate(booking.status):
            return skip
        pending = await store.get_pending_offer(self.db, booking_id)
        if pending is None or pending.id != offer_id:
            return skip
        principal_id = pending.to_user_id
        delegate = await self._get_delegate(principal_id)
        if delegate is None:
            return skip

        own_counters = await self._count_ai_offers(booking_id, principal_id)
        if own_counters >= delegate.max_counter_offers:
            logger.info(
                "Delegate for user %s reached %d counters on booking %s",
                principal_id,
                own_counters,
                booking_id,
            )
            return DelegateDecision(
                action=DelegateAction.NONE,
                reasoning="Counter-offer limit reached",
            )

        decision = await self.agent.decide(await self._build_context(booking, pending, delegate))
        if (
            decision.action == DelegateAction.COUNTER
            and decision.counter_price is not None
            and round(decision.counter_price, 2) == round(pending.offer_price, 2)
        ):
            decision = decision.model_copy(update={"action": DelegateAction.ACCEPT, "counter_price": None})

        logger.info(
            "Delegate for user %s on booking %s: %s (%s)",
            principal_id,
            booking_id,
            decision.action.value,
            decision.counter_price,
        )
        try:
            if decision.action == DelegateAction.ACCEPT:
                await self.accept_offer(pending.id, principal_id)
            elif decision.action == DelegateAction.REJECT:
                await self.reject_offer(pending.id, principal_id, AI_MESSAGE_PREFIX + decision.reasoning)
            elif decision.action == DelegateAction.COUNTER and decision.counter_price:
                await self.submit_offer(
                    booking_id,
                    principal_id,
                    decision.counter_price,
                    AI_MESSAGE_PREFIX + decision.reasoning,
                    ai_generated=True,
                )
        except PreconditionFailedError as exc:
            # State moved on while deciding
            logger.info("Delegate action on booking %s skipped: %s", booking_id, exc.message)
            return skip
        return decision

    async def _get_delegate(self, user_id: str) -> NegotiationDelegate | None:
        result = await self.db.execute(
            select(NegotiationDelegate).where(
                NegotiationDelegate.user_id == user_id,
                NegotiationDelegate.enabled.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _count_ai_offers(self, booking_id: str, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Negotiation.id)).where(
                Negotiation.booking_id == booking_id,
                Negotiation.from_user_id == user_id,
                Negotiation.ai_generated.is_(True),
            )
        )
        return result.scalar_one()

    async def _build_context(self, booking: Booking, offer: Negotiation, delegate: NegotiationDelegate):
        from bagsy_platform.agents.negotiation_agent import NegotiationContext

        space = await store.get_space(self.db, booking.space_id)
        history = await store.list_offers(self.db, booking.id)
        return NegotiationContext(
            role=party_role(booking, delegate.user_id),
            listing_price=booking.original_price,
            offer_price=offer.offer_price,
            market=await get_market_snapshot(self.db, space),
            strategy=NegotiationStrategy(delegate.strategy or NegotiationStrategy.MODERATE.value),
            min_acceptable_price=delegate.min_acceptable_price,
            max_acceptable_price=delegate.max_acceptable_price,
            auto_accept_threshold=delegate.auto_accept_threshold,
            round_number=len(history),
            space_title=space.title,
            space_type=space.space_type or "driveway",
            city=space.city,
            state=space.state,
            history=[
                (party_role(booking, o.from_user_id).value, o.offer_price, bool(o.ai_generated))
                for o in history
            ],
        )
