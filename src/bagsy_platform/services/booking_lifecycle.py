"""Booking lifecycle: request, acceptance, signing, payment and completion.

    pending -> negotiating <-> accepted -> confirmed -> active -> completed

``cancelled`` / ``rejected`` are reachable from any non-terminal state.

Every operation loads what it needs, validates, applies guarded updates and
commits once; any exception rolls the whole action back. Notifications go
out only after the commit and never undo it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    ComplianceStatus,
    NotificationKind,
    PaymentStatus,
    VerificationTier,
)
from bagsy_platform.domain.errors import (
    AgreementNotExecutedError,
    AlreadySignedError,
    AppError,
    ExternalCollaboratorError,
    InvalidPriceError,
    InvalidWindowError,
    NotAuthorizedForActionError,
    NotFoundError,
    PaymentDeclinedError,
    PreconditionFailedError,
)
from bagsy_platform.domain.models import Agreement, Booking, Negotiation, Space
from bagsy_platform.domain.schemas import ComplianceResult
from bagsy_platform.services import booking_store as store
from bagsy_platform.services.agreement_service import (
    ensure_agreement,
    fill_signature_slot,
    get_agreement,
    mark_executed_if_complete,
)
from bagsy_platform.services.booking_state_machine import BookingStateMachine
from bagsy_platform.services.compliance_classifier import ComplianceClassifier
from bagsy_platform.services.negotiation_engine import NegotiationEngine, party_role
from bagsy_platform.services.notification_service import best_effort
from bagsy_platform.services.payment_service import PaymentProcessor
from bagsy_platform.services.verification_ledger import VerificationLedger

logger = logging.getLogger(__name__)

S = BookingStatus

PAYMENT_SETUP_SUGGESTION = "Set up payment method"


@dataclass
class VerificationDenied:
    """The renter is not verified enough to book. Returned, never raised."""

    tier_required: VerificationTier
    suggestions: list[str] = field(default_factory=list)


@dataclass
class BookingRequestResult:
    ok: bool
    booking: Optional[Booking] = None
    denial: Optional[VerificationDenied] = None
    compliance: Optional[ComplianceResult] = None
    offer: Optional[Negotiation] = None


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_window(start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
    if start is None or end is None:
        raise InvalidWindowError("both start and end times are required")
    start, end = as_utc(start), as_utc(end)
    if start >= end:
        raise InvalidWindowError("start time must be before end time")
    return start, end


def _legal_details(compliance: ComplianceResult) -> str:
    rule = compliance.details
    parts = []
    if rule.requires_permit:
        parts.append("A permit is required.")
    if rule.restrictions:
        parts.append("Restrictions: " + ", ".join(rule.restrictions) + ".")
    if rule.notes:
        parts.append(rule.notes)
    return " ".join(parts)


class BookingLifecycle:
    """Orchestrates a booking from request to completion."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: VerificationLedger,
        classifier: ComplianceClassifier,
        payments: PaymentProcessor,
        notifier=None,
        negotiation: Optional[NegotiationEngine] = None,
        state_machine: Optional[BookingStateMachine] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.classifier = classifier
        self.payments = payments
        self.notifier = notifier
        self.state_machine = state_machine or BookingStateMachine()
        self.negotiation = negotiation or NegotiationEngine(
            db, notifier=notifier, state_machine=self.state_machine
        )

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def check_booking_eligibility(self, renter_id: str) -> VerificationDenied | None:
        """The verification gate alone. None means the renter may book.

        Reads the ledger's derived status, which falls back to the unverified
        default when the lookup fails, so an outage denies rather than raises.
        """
        status = await self.ledger.get_status(renter_id)
        if status.requirements.payment_setup:
            return None
        suggestions = list(status.next_steps)
        if PAYMENT_SETUP_SUGGESTION not in suggestions:
            suggestions.insert(0, PAYMENT_SETUP_SUGGESTION)
        return VerificationDenied(
            tier_required=VerificationTier.PAYMENT_VERIFIED,
            suggestions=suggestions,
        )

    async def create_booking(
        self,
        renter_id: str,
        space_id: str,
        start_time: datetime | None,
        end_time: datetime | None,
        offer_price: float | None = None,
        message: str | None = None,
    ) -> BookingRequestResult:
        """Request a space. Offers below or above the listing open a negotiation."""
        denial = await self.check_booking_eligibility(renter_id)
        if denial is not None:
            logger.info("Booking request by %s denied: payment setup required", renter_id)
            return BookingRequestResult(ok=False, denial=denial)

        start, end = validate_window(start_time, end_time)
        space = await store.get_space(self.db, space_id)
        if offer_price is None:
            offer_price = space.price_per_hour
        if offer_price <= 0:
            raise InvalidPriceError(offer_price)
        if space.owner_id == renter_id:
            raise NotAuthorizedForActionError("Owners cannot book their own space")

        compliance = self.classifier.check_compliance(space.full_address, space.zip_code)

        offer: Negotiation | None = None
        try:
            listing_price = space.price_per_hour
            booking = Booking(
                space_id=space.id,
                renter_id=renter_id,
                owner_id=space.owner_id,
                start_time=start,
                end_time=end,
                original_price=listing_price,
                final_price=listing_price,
                total_price=0.0,
                status=S.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                legal_compliance_checked=True,
                legal_compliance_status=compliance.status.value,
                legal_compliance_details=compliance.model_dump(mode="json"),
                message=message,
                created_at=store.utcnow(),
            )
            booking.total_price = store.booking_total(booking, listing_price)
            self.db.add(booking)
            await self.db.flush()
            store.record_event(
                self.db, booking.id, BookingEventType.REQUESTED, BookingActor.RENTER, renter_id,
                to_status=S.PENDING,
                data={"compliance_status": compliance.status.value},
            )

            if round(float(offer_price), 2) != round(listing_price, 2):
                offer = await self.negotiation.add_offer(booking, renter_id, offer_price, message)
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise PreconditionFailedError("Booking could not be created; please retry") from exc
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Booking %s requested by %s on space %s (%s, compliance=%s)",
            booking.id,
            renter_id,
            space.id,
            booking.status,
            compliance.status.value,
        )

        if offer is not None:
            await best_effort(
                self.negotiation.dispatch_delegate(booking.id, offer),
                f"Delegate dispatch for offer {offer.id}",
            )
        await best_effort(
            self._announce_request(booking, space, offer),
            f"Request notification for booking {booking.id}",
        )
        if compliance.status != ComplianceStatus.ALLOWED:
            await self._notify_both(
                booking,
                NotificationKind.LEGAL_ALERT,
                {
                    "booking_id": booking.id,
                    "space_title": space.title,
                    "compliance_status": compliance.status.value,
                    "details": _legal_details(compliance),
                },
            )
        return BookingRequestResult(ok=True, booking=booking, compliance=compliance, offer=offer)

    async def _announce_request(
        self,
        booking: Booking,
        space: Space,
        offer: Negotiation | None,
    ) -> None:
        if self.notifier is None:
            return
        if offer is None:
            renter_name = await store.display_name(self.db, booking.renter_id, "A renter")
            await self.notifier.notify(
                NotificationKind.BOOKING_REQUEST,
                space.owner_id,
                {"booking_id": booking.id, "space_title": space.title, "renter_name": renter_name},
            )
        else:
            await self.negotiation.announce_offer(booking, offer)

    async def accept_request(self, booking_id: str, owner_id: str) -> Booking:
        """Owner accepts a pending booking at the listed price."""
        try:
            booking = await store.get_booking(self.db, booking_id)
            self._require_owner(booking, owner_id)
            current = S(booking.status)
            if current != S.PENDING:
                raise PreconditionFailedError(
                    f"Only pending requests can be accepted directly (booking is {current.value})"
                )
            if await store.get_pending_offer(self.db, booking.id) is not None:
                raise PreconditionFailedError("Respond to the pending offer instead")
            self.state_machine.validate_transition(current, S.ACCEPTED, BookingActor.OWNER)

            await store.update_booking_if(self.db, booking, current, status=S.ACCEPTED.value)
            space = await store.get_space(self.db, booking.space_id)
            agreement, created = await ensure_agreement(self.db, booking, space)
            store.record_event(
                self.db, booking.id, BookingEventType.REQUEST_ACCEPTED, BookingActor.OWNER, owner_id,
                from_status=current, to_status=S.ACCEPTED,
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

        logger.info("Booking %s accepted by owner %s", booking.id, owner_id)
        await self._notify_both(
            booking,
            NotificationKind.AGREEMENT_READY,
            {"booking_id": booking.id, "agreement_id": agreement.id, "space_title": space.title},
        )
        return booking

    async def decline_request(self, booking_id: str, owner_id: str, reason: str | None = None) -> Booking:
        booking = await store.get_booking(self.db, booking_id)
        self._require_owner(booking, owner_id)
        return await self._close(
            booking, S.REJECTED, BookingActor.OWNER, owner_id, reason, BookingEventType.REQUEST_DECLINED
        )

    async def cancel_booking(self, booking_id: str, actor_id: str, reason: str | None = None) -> Booking:
        booking = await store.get_booking(self.db, booking_id)
        role = party_role(booking, actor_id)
        return await self._close(booking, S.CANCELLED, role, actor_id, reason, BookingEventType.CANCELLED)

    async def _close(
        self,
        booking: Booking,
        target: BookingStatus,
        actor: BookingActor,
        actor_id: str,
        reason: str | None,
        event_type: BookingEventType,
    ) -> Booking:
        try:
            current = S(booking.status)
            self.state_machine.validate_transition(current, target, actor)
            await store.update_booking_if(
                self.db,
                booking,
                current,
                status=target.value,
                cancel_reason=reason,
                cancelled_at=store.utcnow(),
            )
            withdrawn = await store.reject_pending_offers(self.db, booking.id)
            store.record_event(
                self.db, booking.id, event_type, actor, actor_id,
                from_status=current, to_status=target,
                data={"reason": reason, "offers_rejected": withdrawn},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Booking %s %s by %s", booking.id, target.value, actor.value)
        await best_effort(
            self._announce_closed(booking, reason),
            f"Cancellation notices for booking {booking.id}",
        )
        return booking

    async def _announce_closed(self, booking: Booking, reason: str | None) -> None:
        space = await self.db.get(Space, booking.space_id)
        await self._notify_both(
            booking,
            NotificationKind.BOOKING_CANCELLED,
            {
                "booking_id": booking.id,
                "space_title": space.title if space is not None else "your space",
                "reason": reason,
            },
        )

    # ------------------------------------------------------------------
    # Agreement
    # ------------------------------------------------------------------

    async def sign_agreement(self, booking_id: str, signer_id: str, signature: str) -> Agreement:
        """Sign the booking's agreement. Order of signing does not matter."""
        try:
            booking = await store.get_booking(self.db, booking_id)
            role = party_role(booking, signer_id)
            agreement = await get_agreement(self.db, booking.id)
            if agreement is None:
                raise NotFoundError("Agreement", booking.id)
            if not signature:
                raise PreconditionFailedError("A signature is required")
            if booking.status != S.ACCEPTED.value:
                raise PreconditionFailedError(
                    f"Agreements can only be signed on accepted bookings (booking is {booking.status})"
                )
            # Holds the accepted status for this transaction; a concurrent cancel loses
            await store.update_booking_if(self.db, booking, S.ACCEPTED)

            if not await fill_signature_slot(self.db, agreement, role.value, signature):
                raise AlreadySignedError(role.value)
            executed = await mark_executed_if_complete(self.db, agreement)
            store.record_event(
                self.db, booking.id, BookingEventType.AGREEMENT_SIGNED, role, signer_id,
                data={"agreement_id": agreement.id},
            )
            if executed:
                store.record_event(
                    self.db, booking.id, BookingEventType.AGREEMENT_EXECUTED, BookingActor.SYSTEM,
                    data={"agreement_id": agreement.id},
                )
            await self.db.commit()
            await self.db.refresh(agreement)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Agreement %s signed by %s%s",
            agreement.id,
            role.value,
            " (fully executed)" if executed else "",
        )
        if executed:
            await self._notify_both(
                booking,
                NotificationKind.AGREEMENT_READY,
                {
                    "title": "Agreement Fully Signed",
                    "message": "Both parties have signed the rental agreement. Payment can now be completed.",
                    "booking_id": booking.id,
                    "agreement_id": agreement.id,
                },
            )
        return agreement

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def _payment_gate(self, booking_id: str, renter_id: str) -> Booking:
        booking = await store.get_booking(self.db, booking_id)
        if renter_id != booking.renter_id:
            raise NotAuthorizedForActionError("Only the renter can pay for a booking")
        if booking.status != S.ACCEPTED.value:
            raise PreconditionFailedError(
                f"Payment requires an accepted booking (booking is {booking.status})"
            )
        agreement = await get_agreement(self.db, booking.id)
        if agreement is None or not agreement.fully_executed:
            raise AgreementNotExecutedError(booking.id)
        return booking

    async def create_payment_intent(self, booking_id: str, renter_id: str) -> str:
        booking = await self._payment_gate(booking_id, renter_id)
        try:
            reference = await self.payments.create_payment_intent(
                booking.id, renter_id, booking.total_price
            )
        except AppError:
            raise
        except Exception as exc:
            raise ExternalCollaboratorError("Payment processor", str(exc)) from exc

        try:
            await store.update_booking_if(self.db, booking, S.ACCEPTED, payment_intent_id=reference)
            store.record_event(
                self.db, booking.id, BookingEventType.PAYMENT_INTENT_CREATED, BookingActor.RENTER, renter_id,
                data={"payment_intent_id": reference, "amount": booking.total_price},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return reference

    async def confirm_payment(self, booking_id: str, renter_id: str, payment_reference: str) -> Booking:
        """Confirm payment for an accepted booking with an executed agreement.

        The payment is claimed (``processing``) before the processor is
        called, so a second confirmation racing this one fails without
        charging. A processor outage releases the claim.
        """
        booking = await self._payment_gate(booking_id, renter_id)
        self.state_machine.validate_transition(S(booking.status), S.CONFIRMED, BookingActor.RENTER)
        if booking.payment_intent_id and payment_reference != booking.payment_intent_id:
            raise PreconditionFailedError("Payment reference does not match this booking's payment intent")
        if booking.payment_status == PaymentStatus.PROCESSING.value:
            raise PreconditionFailedError("A payment confirmation is already in progress")

        previous = PaymentStatus(booking.payment_status)
        await self._move_payment(booking, previous, PaymentStatus.PROCESSING)
        try:
            verdict = await self.payments.confirm_payment(payment_reference, booking.total_price)
        except Exception as exc:
            await self._move_payment(booking, PaymentStatus.PROCESSING, previous)
            if isinstance(exc, AppError):
                raise
            logger.error("Payment confirmation for booking %s failed: %s", booking.id, exc)
            raise ExternalCollaboratorError("Payment processor", str(exc)) from exc

        if not verdict.succeeded:
            await self._move_payment(
                booking,
                PaymentStatus.PROCESSING,
                PaymentStatus.FAILED,
                event_data={"reference": payment_reference, "reason": verdict.failure_reason},
                renter_id=renter_id,
            )
            logger.warning("Payment declined for booking %s: %s", booking.id, verdict.failure_reason)
            raise PaymentDeclinedError(verdict.failure_reason or "Payment was declined")

        try:
            await store.update_booking_if(
                self.db,
                booking,
                S.ACCEPTED,
                payment_expected=PaymentStatus.PROCESSING,
                status=S.CONFIRMED.value,
                payment_status=PaymentStatus.SUCCEEDED.value,
                payment_intent_id=verdict.reference or booking.payment_intent_id,
                confirmed_at=store.utcnow(),
            )
            store.record_event(
                self.db, booking.id, BookingEventType.PAYMENT_CONFIRMED, BookingActor.RENTER, renter_id,
                from_status=S.ACCEPTED, to_status=S.CONFIRMED,
                data={"reference": verdict.reference, "amount": booking.total_price},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Booking %s confirmed; payment %s", booking.id, verdict.reference)
        await best_effort(
            self._announce_payment(booking), f"Payment notifications for booking {booking.id}"
        )
        return booking

    async def _move_payment(
        self,
        booking: Booking,
        expected: PaymentStatus,
        target: PaymentStatus,
        event_data: dict | None = None,
        renter_id: str | None = None,
    ) -> None:
        """Guarded payment-status change on an accepted booking, committed on its own."""
        try:
            await store.update_booking_if(
                self.db, booking, S.ACCEPTED, payment_expected=expected, payment_status=target.value
            )
            if event_data is not None:
                store.record_event(
                    self.db, booking.id, BookingEventType.PAYMENT_FAILED, BookingActor.RENTER, renter_id,
                    data=event_data,
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def _announce_payment(self, booking: Booking) -> None:
        if self.notifier is None:
            return
        space = await self.db.get(Space, booking.space_id)
        renter_name = await store.display_name(self.db, booking.renter_id, "the renter")
        await best_effort(
            self.notifier.notify(
                NotificationKind.PAYMENT_RECEIVED,
                booking.owner_id,
                {"booking_id": booking.id, "amount": booking.total_price, "renter_name": renter_name},
            ),
            f"Payment receipt for booking {booking.id}",
        )
        await self._notify_both(
            booking,
            NotificationKind.BOOKING_CONFIRMED,
            {
                "booking_id": booking.id,
                "space_title": space.title if space is not None else "your space",
                "start_time": booking.start_time,
                "end_time": booking.end_time,
            },
        )

    # ------------------------------------------------------------------
    # Rental period
    # ------------------------------------------------------------------

    async def start_booking(self, booking_id: str) -> Booking:
        return await self._system_transition(
            booking_id, S.CONFIRMED, S.ACTIVE, BookingEventType.STARTED, started_at=store.utcnow()
        )

    async def complete_booking(self, booking_id: str) -> Booking:
        return await self._system_transition(
            booking_id, S.ACTIVE, S.COMPLETED, BookingEventType.COMPLETED, completed_at=store.utcnow()
        )

    async def _system_transition(
        self,
        booking_id: str,
        expected: BookingStatus,
        target: BookingStatus,
        event_type: BookingEventType,
        **values,
    ) -> Booking:
        try:
            booking = await store.get_booking(self.db, booking_id)
            self.state_machine.validate_transition(S(booking.status), target, BookingActor.SYSTEM)
            await store.update_booking_if(self.db, booking, expected, status=target.value, **values)
            store.record_event(
                self.db, booking.id, event_type, BookingActor.SYSTEM,
                from_status=expected, to_status=target,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Booking %s -> %s", booking.id, target.value)
        return booking

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: str, viewer_id: str | None = None) -> Booking:
        booking = await store.get_booking(self.db, booking_id)
        if viewer_id is not None:
            party_role(booking, viewer_id)
        return booking

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_owner(booking: Booking, user_id: str) -> None:
        if user_id != booking.owner_id:
            raise NotAuthorizedForActionError("Only the space owner can do this")

    async def _notify_both(self, booking: Booking, kind: NotificationKind, payload: dict) -> None:
        if self.notifier is None:
            return
        for user_id in (booking.renter_id, booking.owner_id):
            await best_effort(
                self.notifier.notify(kind, user_id, dict(payload)),
                f"{kind.value} notification for booking {booking.id}",
            )
