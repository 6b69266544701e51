"""Booking, negotiation and agreement API endpoints.

Thin wrappers over BookingLifecycle and NegotiationEngine; domain errors
are rendered by the AppError handler registered in ``app.main``.
"""

import logging

from fastapi import APIRouter, Depends

from bagsy_platform.app.dependencies import (
    get_current_user_dep,
    get_lifecycle,
    get_negotiation_engine,
)
from bagsy_platform.domain.errors import NotFoundError
from bagsy_platform.domain.models import User
from bagsy_platform.domain.schemas import (
    AgreementResponse,
    BookingCreateRequest,
    BookingRequestResponse,
    BookingResponse,
    NegotiationResponse,
    OfferCreateRequest,
    PaymentConfirmRequest,
    ReasonRequest,
    SignAgreementRequest,
)
from bagsy_platform.services.agreement_service import get_agreement
from bagsy_platform.services.booking_lifecycle import BookingLifecycle
from bagsy_platform.services.negotiation_engine import NegotiationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])
offers_router = APIRouter(prefix="/api/offers", tags=["negotiation"])


# ---------------------------------------------------------------------------
# Booking requests
# ---------------------------------------------------------------------------


@router.post("", response_model=BookingRequestResponse)
async def create_booking(
    body: BookingCreateRequest,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Request a space. A verification denial is a normal (ok=false) response."""
    result = await lifecycle.create_booking(
        renter_id=user.id,
        space_id=body.space_id,
        start_time=body.start_time,
        end_time=body.end_time,
        offer_price=body.offer_price,
        message=body.message,
    )
    if not result.ok:
        return BookingRequestResponse(
            ok=False,
            tier_required=result.denial.tier_required,
            suggestions=result.denial.suggestions,
        )
    return BookingRequestResponse(ok=True, booking=BookingResponse.model_validate(result.booking))


@router.get("/eligibility", response_model=BookingRequestResponse)
async def check_eligibility(
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    denial = await lifecycle.check_booking_eligibility(user.id)
    if denial is None:
        return BookingRequestResponse(ok=True)
    return BookingRequestResponse(
        ok=False, tier_required=denial.tier_required, suggestions=denial.suggestions
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.get_booking(booking_id, viewer_id=user.id)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_request(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Owner accepts a pending request at the listed price."""
    return await lifecycle.accept_request(booking_id, user.id)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
async def decline_request(
    booking_id: str,
    body: ReasonRequest,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.decline_request(booking_id, user.id, body.reason)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    body: ReasonRequest,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.cancel_booking(booking_id, user.id, body.reason)


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------


@router.get("/{booking_id}/offers", response_model=list[NegotiationResponse])
async def list_offers(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    return await engine.list_offers(booking_id, viewer_id=user.id)


@router.post("/{booking_id}/offers", response_model=NegotiationResponse)
async def submit_offer(
    booking_id: str,
    body: OfferCreateRequest,
    user: User = Depends(get_current_user_dep),
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    """Make (or counter with) a price offer."""
    return await engine.submit_offer(booking_id, user.id, body.price, body.message)


@offers_router.post("/{offer_id}/accept", response_model=BookingResponse)
async def accept_offer(
    offer_id: str,
    user: User = Depends(get_current_user_dep),
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    return await engine.accept_offer(offer_id, user.id)


@offers_router.post("/{offer_id}/reject", response_model=NegotiationResponse)
async def reject_offer(
    offer_id: str,
    body: ReasonRequest,
    user: User = Depends(get_current_user_dep),
    engine: NegotiationEngine = Depends(get_negotiation_engine),
):
    return await engine.reject_offer(offer_id, user.id, body.reason)


# ---------------------------------------------------------------------------
# Agreement
# ---------------------------------------------------------------------------


@router.get("/{booking_id}/agreement", response_model=AgreementResponse)
async def get_booking_agreement(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    booking = await lifecycle.get_booking(booking_id, viewer_id=user.id)
    agreement = await get_agreement(lifecycle.db, booking.id)
    if agreement is None:
        raise NotFoundError("Agreement", booking.id)
    return agreement


@router.post("/{booking_id}/agreement/sign", response_model=AgreementResponse)
async def sign_agreement(
    booking_id: str,
    body: SignAgreementRequest,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.sign_agreement(booking_id, user.id, body.signature)


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/payment-intent")
async def create_payment_intent(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    reference = await lifecycle.create_payment_intent(booking_id, user.id)
    return {"ok": True, "payment_intent_id": reference}


@router.post("/{booking_id}/payment/confirm", response_model=BookingResponse)
async def confirm_payment(
    booking_id: str,
    body: PaymentConfirmRequest,
    user: User = Depends(get_current_user_dep),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Renter confirms payment; needs an accepted booking and an executed agreement."""
    return await lifecycle.confirm_payment(booking_id, user.id, body.payment_reference)
