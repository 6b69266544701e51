"""Tiered verification ledger.

Tracks each user's verification tier, score, badges and outstanding
requirements. The cached tier/score/badges on ``VerificationProfile`` are
always recomputed from the stored facts:

    score = 10 (profile exists)
          + 30 (payment setup)
          + 0.2 x address confidence
          + 30 (ID verified)
          + 10 (verified host badge)
          - 5 per fraud flag

clamped to 0-100. The tier comes from the configured score bands and is then
capped by the requirement gates, so a tier is never held without the fact
that grants it.

Reads fail closed: any lookup failure yields the basic, all-false status.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.enums import (
    AddressVerificationStatus,
    VerificationBadge,
    VerificationEventType,
    VerificationTier,
)
from bagsy_platform.domain.errors import AppError, NotFoundError, PreconditionFailedError
from bagsy_platform.domain.models import (
    User,
    VerificationAuditLog,
    VerificationProfile,
    VerificationSetting,
)
from bagsy_platform.domain.schemas import (
    Address,
    AddressVerificationOutcome,
    ListingAttributes,
    ListingVerificationResult,
    TierInfo,
    VerificationConfig,
    VerificationRequirements,
    VerificationStatus,
)
from bagsy_platform.services.address_matcher import validate_address, verify_address_match

logger = logging.getLogger(__name__)

T = VerificationTier

# ── Score weights ────────────────────────────────────────────────────────────

BASE_POINTS = 10
PAYMENT_POINTS = 30
ADDRESS_CONFIDENCE_FACTOR = 0.2
ID_POINTS = 30
HOST_POINTS = 10
FRAUD_PENALTY = 5

SETTING_KEYS = (
    "tier_thresholds",
    "high_value_threshold",
    "address_match_thresholds",
    "fraud_detection",
)

SAFE_DEFAULT_NEXT_STEPS = ["Complete payment setup", "Verify your address"]

TIER_INFO: dict[VerificationTier, TierInfo] = {
    T.BASIC: TierInfo(
        name="Basic",
        description="New user with minimal verification",
        benefits=["Can make bookings", "Can list basic spaces"],
        requirements=["User account created"],
    ),
    T.PAYMENT_VERIFIED: TierInfo(
        name="Payment Verified",
        description="Payment method verified with address check",
        benefits=["All Basic benefits", "Faster booking approval", "Address verification"],
        requirements=["Payment method set up", "Billing address verified"],
    ),
    T.ID_VERIFIED: TierInfo(
        name="ID Verified",
        description="Government ID verified for enhanced trust",
        benefits=[
            "All Payment Verified benefits",
            "High-value listing access",
            "Priority customer support",
            "Lower booking fees",
        ],
        requirements=["All Payment Verified requirements", "Government ID verification"],
    ),
    T.PREMIUM_VERIFIED: TierInfo(
        name="Premium Verified",
        description="Full verification with premium features",
        benefits=[
            "All ID Verified benefits",
            "Verified Host badge",
            "Premium listing features",
            "Highest search ranking",
        ],
        requirements=["All ID Verified requirements", "Verified Host application approved"],
    ),
}


# ---------------------------------------------------------------------------
# Pure derivations
# ---------------------------------------------------------------------------


def requirements_for(profile: VerificationProfile) -> VerificationRequirements:
    return VerificationRequirements(
        payment_setup=bool(profile.payment_method_setup),
        address_verified=profile.address_verification_status == AddressVerificationStatus.VERIFIED.value,
        id_verified=bool(profile.driver_license_verified),
        verified_host_badge=bool(profile.verified_host_badge),
    )


def compute_score(profile: VerificationProfile) -> int:
    score = BASE_POINTS
    if profile.payment_method_setup:
        score += PAYMENT_POINTS
    if profile.address_verification_confidence:
        score += ADDRESS_CONFIDENCE_FACTOR * profile.address_verification_confidence
    if profile.driver_license_verified:
        score += ID_POINTS
    if profile.verified_host_badge:
        score += HOST_POINTS
    score -= FRAUD_PENALTY * (profile.fraud_flags or 0)
    return max(0, min(100, round(score)))


def _gate_met(tier: VerificationTier, req: VerificationRequirements) -> bool:
    """Each tier requires its own fact plus every lower tier's."""
    if tier == T.BASIC:
        return True
    if not req.payment_setup:
        return False
    if tier == T.PAYMENT_VERIFIED:
        return True
    if not req.id_verified:
        return False
    if tier == T.ID_VERIFIED:
        return True
    return req.verified_host_badge


def compute_tier(score: int, req: VerificationRequirements, config: VerificationConfig) -> VerificationTier:
    tier = config.tier_thresholds.tier_for_score(score)
    order = list(VerificationTier)
    while not _gate_met(tier, req):
        tier = order[tier.rank - 1]
    return tier


def badges_for(req: VerificationRequirements) -> list[str]:
    badges = []
    if req.payment_setup:
        badges.append(VerificationBadge.PAYMENT_VERIFIED.value)
    if req.address_verified:
        badges.append(VerificationBadge.ADDRESS_VERIFIED.value)
    if req.id_verified:
        badges.append(VerificationBadge.ID_VERIFIED.value)
    if req.verified_host_badge:
        badges.append(VerificationBadge.VERIFIED_HOST.value)
    return badges


def next_steps(tier: VerificationTier, req: VerificationRequirements) -> list[str]:
    steps = []
    if not req.payment_setup:
        steps.append("Set up payment method")
    if req.payment_setup and not req.address_verified:
        steps.append("Verify your billing address")
    if tier in (T.BASIC, T.PAYMENT_VERIFIED):
        steps.append("Complete ID verification for premium features")
    if tier == T.ID_VERIFIED and not req.verified_host_badge:
        steps.append("Apply for verified host badge")
    return steps


def tier_requirements(tier: VerificationTier) -> TierInfo:
    """Human-readable benefits and requirements of a tier."""
    return TIER_INFO[VerificationTier(tier)]


def recompute(
    profile: VerificationProfile, config: VerificationConfig
) -> tuple[VerificationTier, VerificationTier]:
    """Refresh the cached score, tier, badges and high-value grant in place.

    Returns ``(previous_tier, new_tier)``.
    """
    previous = VerificationTier(profile.verification_tier or T.BASIC.value)
    req = requirements_for(profile)
    score = compute_score(profile)
    tier = compute_tier(score, req, config)

    profile.verification_score = score
    profile.verification_tier = tier.value
    profile.verification_badges = badges_for(req)
    profile.high_value_listing_access = tier.at_least(T.ID_VERIFIED)
    profile.last_verification_check = datetime.now(timezone.utc)
    return previous, tier


def status_from_profile(profile: VerificationProfile) -> VerificationStatus:
    tier = VerificationTier(profile.verification_tier or T.BASIC.value)
    req = requirements_for(profile)
    return VerificationStatus(
        tier=tier,
        score=profile.verification_score or 0,
        badges=list(profile.verification_badges or []),
        requirements=req,
        can_create_high_value_listings=(
            tier.at_least(T.ID_VERIFIED) and bool(profile.high_value_listing_access)
        ),
        can_book_without_restrictions=tier != T.BASIC,
        next_steps=next_steps(tier, req),
    )


def safe_default_status() -> VerificationStatus:
    return VerificationStatus(next_steps=list(SAFE_DEFAULT_NEXT_STEPS))


# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------


async def load_verification_config(db: AsyncSession) -> VerificationConfig:
    """Build ``VerificationConfig`` from ``verification_settings`` rows.

    Missing keys keep their defaults; any load or parse failure falls back
    to the built-in defaults.
    """
    try:
        result = await db.execute(
            select(VerificationSetting).where(VerificationSetting.setting_key.in_(SETTING_KEYS))
        )
        values = {row.setting_key: row.setting_value for row in result.scalars().all()}
        config = VerificationConfig.model_validate(values)
        logger.info("Loaded verification config (%d overrides)", len(values))
        return config
    except Exception as exc:
        logger.warning("Failed to load verification settings, using defaults: %s", exc)
        return VerificationConfig()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class VerificationLedger:
    """Per-user verification facts and the tier derived from them."""

    def __init__(self, db: AsyncSession, config: VerificationConfig | None = None):
        self.db = db
        self.config = config or VerificationConfig()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_status(self, user_id: str) -> VerificationStatus:
        try:
            profile = await self._get_profile(user_id)
            if profile is None:
                return safe_default_status()
            return status_from_profile(profile)
        except Exception as exc:
            logger.error("Verification lookup failed for user %s: %s", user_id, exc)
            return safe_default_status()

    async def billing_address(self, user_id: str) -> Address | None:
        profile = await self._get_profile(user_id)
        if profile is None or not profile.billing_zip:
            return None
        return Address(
            street=profile.billing_street,
            city=profile.billing_city,
            state=profile.billing_state,
            zip_code=profile.billing_zip,
        )

    # ------------------------------------------------------------------
    # Address verification
    # ------------------------------------------------------------------

    async def record_address_verification(
        self, user_id: str, listing_address: Address
    ) -> AddressVerificationOutcome:
        """Score the on-file billing address against a listing address.

        Persists the resulting status and confidence onto the profile.
        """
        validate_address(listing_address, "listing address")
        try:
            profile = await self._get_profile(user_id)
            if profile is None or not profile.payment_method_setup:
                return AddressVerificationOutcome(
                    success=False,
                    status=AddressVerificationStatus.MISMATCH,
                    confidence=0,
                    requires_id_verification=False,
                    message="Payment method setup required for address verification",
                )

            billing = await self.billing_address(user_id)
            if billing is None:
                return AddressVerificationOutcome(
                    success=False,
                    status=AddressVerificationStatus.MISMATCH,
                    confidence=0,
                    requires_id_verification=False,
                    message="Could not retrieve billing address",
                )

            match = verify_address_match(billing, listing_address)
            bands = self.config.address_match_thresholds
            if match.confidence >= bands.verified_min:
                status = AddressVerificationStatus.VERIFIED
                message = "Address verified successfully"
            elif match.confidence >= bands.review_required_min:
                status = AddressVerificationStatus.REVIEW_REQUIRED
                message = "Address partially matches - review may be required"
            else:
                status = AddressVerificationStatus.MISMATCH
                message = "Address mismatch detected - additional verification required"

            profile.address_verification_status = status.value
            profile.address_verification_confidence = match.confidence
            self._log_event(
                user_id,
                VerificationEventType.ADDRESS_VERIFICATION,
                details={
                    "confidence": match.confidence,
                    "is_match": match.is_match,
                    "status": status.value,
                    "warnings": match.warnings,
                },
            )
            self._apply_recompute(profile)
            await self.db.commit()

            logger.info(
                "Address verification for user %s: %s (%d)",
                user_id,
                status.value,
                match.confidence,
            )
            return AddressVerificationOutcome(
                success=match.is_match,
                status=status,
                confidence=match.confidence,
                requires_id_verification=status == AddressVerificationStatus.MISMATCH,
                message=message,
            )
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Address verification failed for user %s: %s", user_id, exc)
            return AddressVerificationOutcome(
                success=False,
                status=AddressVerificationStatus.MISMATCH,
                confidence=0,
                requires_id_verification=True,
                message="Address verification failed",
            )

    # ------------------------------------------------------------------
    # Listing gate
    # ------------------------------------------------------------------

    async def can_create_listing(
        self, user_id: str, listing: ListingAttributes
    ) -> ListingVerificationResult:
        """Decide whether a user may publish a listing.

        High-value listings need the high-value grant, and an address
        mismatch blocks them outright. For ordinary listings a mismatch is
        only advisory. Every applicable suggestion is returned.
        """
        try:
            status = await self.get_status(user_id)
            daily_value = max(listing.price_per_day or 0, listing.price_per_hour * 24)
            is_high_value = daily_value > self.config.high_value_threshold

            outcome = await self.record_address_verification(
                user_id,
                Address(
                    street=listing.address,
                    city=listing.city,
                    state=listing.state,
                    zip_code=listing.zip_code,
                ),
            )
        except AppError:
            raise
        except Exception as exc:
            logger.error("Listing permission check failed for user %s: %s", user_id, exc)
            return ListingVerificationResult(
                can_create=False,
                requires_verification=True,
                tier_required=T.BASIC,
                reason="Verification check failed",
                suggestions=["Please try again or contact support"],
            )

        can_create = True
        requires_verification = False
        tier_required = T.BASIC
        suggestions: list[str] = []

        if is_high_value and not status.can_create_high_value_listings:
            can_create = False
            requires_verification = True
            tier_required = T.ID_VERIFIED
            suggestions.append("Upgrade to ID verification to list high-value spaces")

        if outcome.status == AddressVerificationStatus.MISMATCH:
            if is_high_value:
                can_create = False
                suggestions.append(
                    "Address mismatch detected. ID verification required for high-value listings."
                )
            else:
                suggestions.append(
                    "Address mismatch detected. Consider verifying your ID for better approval rates."
                )
        elif outcome.status == AddressVerificationStatus.REVIEW_REQUIRED:
            suggestions.append("Your listing will be reviewed due to address differences.")

        if status.tier == T.BASIC:
            suggestions.append("Complete payment setup to improve your verification status")
        elif status.tier == T.PAYMENT_VERIFIED and is_high_value:
            suggestions.append("Consider ID verification to unlock high-value listing features")

        return ListingVerificationResult(
            can_create=can_create,
            requires_verification=requires_verification,
            tier_required=tier_required,
            suggestions=suggestions,
            reason=None if can_create else "Insufficient verification level",
        )

    # ------------------------------------------------------------------
    # Fact recording
    # ------------------------------------------------------------------

    async def record_payment_setup(self, user_id: str, billing_address: Address) -> VerificationStatus:
        validate_address(billing_address, "billing address")
        try:
            profile = await self._get_or_create_profile(user_id)
            profile.payment_method_setup = True
            profile.billing_street = billing_address.street
            profile.billing_city = billing_address.city
            profile.billing_state = billing_address.state
            profile.billing_zip = billing_address.zip_code
            self._log_event(user_id, VerificationEventType.PAYMENT_SETUP)
            self._apply_recompute(profile)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Payment setup recorded for user %s", user_id)
        return status_from_profile(profile)

    async def record_id_verification(self, user_id: str, verified: bool = True) -> VerificationStatus:
        try:
            profile = await self._get_or_create_profile(user_id)
            profile.driver_license_verified = verified
            self._log_event(
                user_id,
                VerificationEventType.ID_VERIFICATION
                if verified
                else VerificationEventType.VERIFICATION_FAILED,
                details={"verified": verified},
            )
            self._apply_recompute(profile)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("ID verification recorded for user %s: %s", user_id, verified)
        return status_from_profile(profile)

    async def upgrade_to_verified_host(self, user_id: str) -> VerificationStatus:
        try:
            profile = await self._get_or_create_profile(user_id)
            current = VerificationTier(profile.verification_tier or T.BASIC.value)
            if not current.at_least(T.ID_VERIFIED):
                raise PreconditionFailedError("ID verification required for verified host badge")
            profile.verified_host_badge = True
            self._apply_recompute(profile)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return status_from_profile(profile)

    async def flag_fraud(self, user_id: str, reason: str) -> VerificationStatus:
        """Record a fraud flag; at the configured limit, downgrade the user.

        The downgrade clears ID, address, host-badge and high-value facts
        in the same write as the tier change.
        """
        fraud = self.config.fraud_detection
        try:
            profile = await self._get_or_create_profile(user_id)
            profile.fraud_flags = (profile.fraud_flags or 0) + 1
            self._log_event(
                user_id,
                VerificationEventType.FRAUD_FLAG,
                details={"reason": reason, "fraud_flags": profile.fraud_flags},
            )
            if fraud.auto_downgrade and profile.fraud_flags >= fraud.max_flags:
                profile.driver_license_verified = False
                profile.address_verification_status = None
                profile.address_verification_confidence = None
                profile.verified_host_badge = False
                profile.high_value_listing_access = False
                logger.warning(
                    "User %s reached %d fraud flags; downgrading",
                    user_id,
                    profile.fraud_flags,
                )
            self._apply_recompute(profile)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return status_from_profile(profile)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_profile(self, user_id: str) -> VerificationProfile | None:
        result = await self.db.execute(
            select(VerificationProfile).where(VerificationProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_profile(self, user_id: str) -> VerificationProfile:
        profile = await self._get_profile(user_id)
        if profile is not None:
            return profile
        if await self.db.get(User, user_id) is None:
            raise NotFoundError("User", user_id)
        profile = VerificationProfile(
            user_id=user_id,
            payment_method_setup=False,
            driver_license_verified=False,
            verified_host_badge=False,
            high_value_listing_access=False,
            fraud_flags=0,
            verification_tier=T.BASIC.value,
            verification_score=0,
            verification_badges=[],
        )
        self.db.add(profile)
        return profile

    def _apply_recompute(self, profile: VerificationProfile) -> None:
        previous, tier = recompute(profile, self.config)
        if tier != previous:
            event = (
                VerificationEventType.TIER_UPGRADE
                if tier.rank > previous.rank
                else VerificationEventType.TIER_DOWNGRADE
            )
            self._log_event(
                profile.user_id,
                event,
                previous_tier=previous,
                new_tier=tier,
                details={"score": profile.verification_score},
            )
            logger.info(
                "User %s tier %s -> %s (score %d)",
                profile.user_id,
                previous.value,
                tier.value,
                profile.verification_score,
            )

    def _log_event(
        self,
        user_id: str,
        event_type: VerificationEventType,
        previous_tier: VerificationTier | None = None,
        new_tier: VerificationTier | None = None,
        details: dict | None = None,
    ) -> None:
        self.db.add(
            VerificationAuditLog(
                user_id=user_id,
                event_type=event_type.value,
                previous_tier=previous_tier.value if previous_tier else None,
                new_tier=new_tier.value if new_tier else None,
                details=details,
            )
        )
