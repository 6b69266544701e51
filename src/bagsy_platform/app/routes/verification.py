"""Verification and negotiation-delegate API endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.app.dependencies import get_current_user_dep, get_ledger
from bagsy_platform.domain.enums import VerificationTier
from bagsy_platform.domain.models import NegotiationDelegate, User
from bagsy_platform.domain.schemas import (
    Address,
    AddressVerificationOutcome,
    DelegatePreferencesResponse,
    DelegatePreferencesUpdate,
    FraudFlagRequest,
    IdVerificationRequest,
    ListingAttributes,
    ListingVerificationResult,
    PaymentSetupRequest,
    TierInfo,
    VerificationStatus,
)
from bagsy_platform.infra.database import get_db
from bagsy_platform.services.verification_ledger import VerificationLedger, tier_requirements

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verification", tags=["verification"])
delegate_router = APIRouter(prefix="/api/delegate", tags=["negotiation"])


@router.get("/me", response_model=VerificationStatus)
async def get_my_status(
    user: User = Depends(get_current_user_dep),
    ledger: VerificationLedger = Depends(get_ledger),
):
    return await ledger.get_status(user.id)


@router.get("/tiers/{tier}", response_model=TierInfo)
async def get_tier_info(tier: VerificationTier):
    return tier_requirements(tier)


@router.post("/payment-setup", response_model=VerificationStatus)
async def record_payment_setup(
    body: PaymentSetupRequest,
    user: User = Depends(get_current_user_dep),
    ledger: VerificationLedger = Depends(get_ledger),
):
    return await ledger.record_payment_setup(user.id, body.billing_address)


@router.post("/address-check", response_model=AddressVerificationOutcome)
async def verify_address(
    body: Address,
    user: User = Depends(get_current_user_dep),
    ledger: VerificationLedger = Depends(get_ledger),
):
    """Compare the billing address on file with a listing address."""
    return await ledger.record_address_verification(user.id, body)


@router.post("/listing-check", response_model=ListingVerificationResult)
async def check_listing(
    body: ListingAttributes,
    user: User = Depends(get_current_user_dep),
    ledger: VerificationLedger = Depends(get_ledger),
):
    return await ledger.can_create_listing(user.id, body)


@router.post("/id", response_model=VerificationStatus)
async def record_id_verification(
    body: IdVerificationRequest,
    user: User = Depends(get_current_user_dep),
    ledger: VerificationLedger = Depends(get_ledger),
):
    return await ledger.record_id_verification(user.id, body.verified)


@router.post("/verified-host", response_model=VerificationStatus)
async def upgrade_to_verified_host(
    user: User = Depends(get_current_user_dep),
    ledger: VerificationLedger = Depends(get_ledger),
):
    return await ledger.upgrade_to_verified_host(user.id)


@router.post("/users/{user_id}/fraud-flags", response_model=VerificationStatus)
async def flag_fraud(
    user_id: str,
    body: FraudFlagRequest,
    user: User = Depends(get_current_user_dep),
    ledger: VerificationLedger = Depends(get_ledger),
):
    """Report a user. Repeated flags downgrade their verification."""
    logger.info("User %s flagged %s: %s", user.id, user_id, body.reason)
    return await ledger.flag_fraud(user_id, body.reason)


# ---------------------------------------------------------------------------
# Negotiation delegate preferences
# ---------------------------------------------------------------------------


async def _get_delegate(db: AsyncSession, user_id: str) -> NegotiationDelegate | None:
    result = await db.execute(select(NegotiationDelegate).where(NegotiationDelegate.user_id == user_id))
    return result.scalar_one_or_none()


@delegate_router.get("", response_model=DelegatePreferencesResponse)
async def get_delegate_preferences(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    delegate = await _get_delegate(db, user.id)
    if delegate is None:
        return DelegatePreferencesResponse(
            user_id=user.id,
            enabled=False,
            strategy="moderate",
            max_counter_offers=5,
        )
    return delegate


@delegate_router.put("", response_model=DelegatePreferencesResponse)
async def update_delegate_preferences(
    body: DelegatePreferencesUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    delegate = await _get_delegate(db, user.id)
    if delegate is None:
        delegate = NegotiationDelegate(user_id=user.id)
        db.add(delegate)
    delegate.enabled = body.enabled
    delegate.strategy = body.strategy.value
    delegate.min_acceptable_price = body.min_acceptable_price
    delegate.max_acceptable_price = body.max_acceptable_price
    delegate.auto_accept_threshold = body.auto_accept_threshold
    delegate.max_counter_offers = body.max_counter_offers
    await db.commit()
    await db.refresh(delegate)
    logger.info("Delegate %s for user %s", "enabled" if delegate.enabled else "disabled", user.id)
    return delegate
