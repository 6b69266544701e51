"""Pydantic v2 schemas for value types and API request/response validation."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from bagsy_platform.domain.enums import (
    AddressVerificationStatus,
    ComplianceStatus,
    DelegateAction,
    DemandLevel,
    NegotiationStrategy,
    VerificationTier,
)


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------


class Address(BaseModel):
    """Postal address. City, state and zip are required by the matcher."""

    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None


class FieldMatches(BaseModel):
    street: bool
    city: bool
    state: bool
    zip_code: bool


class AddressMatchResult(BaseModel):
    """Outcome of comparing a billing address to a listing address."""

    is_match: bool
    confidence: int = Field(ge=0, le=100)
    matches: FieldMatches
    warnings: list[str] = Field(default_factory=list)
    suggestion: str | None = None


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class JurisdictionRule(BaseModel):
    """Regulation record for a state or county."""

    short_term_rental_allowed: bool = True
    requires_permit: bool = False
    permit_url: str | None = None
    restrictions: list[str] = Field(default_factory=list)
    max_days: int | None = None
    zoning: str | None = None
    notes: str | None = None


class StateRegulations(BaseModel):
    default: JurisdictionRule
    counties: dict[str, JurisdictionRule] = Field(default_factory=dict)


class ComplianceResult(BaseModel):
    """Legal verdict for a location, snapshotted onto bookings."""

    status: ComplianceStatus
    state: str
    county: str | None = None
    city: str | None = None
    details: JurisdictionRule
    sources: list[str] = Field(default_factory=list)
    last_updated: datetime


# ---------------------------------------------------------------------------
# Verification configuration
# ---------------------------------------------------------------------------


class TierBand(BaseModel):
    min: int
    max: int


class TierThresholds(BaseModel):
    basic: TierBand = TierBand(min=0, max=39)
    payment_verified: TierBand = TierBand(min=40, max=69)
    id_verified: TierBand = TierBand(min=70, max=89)
    premium_verified: TierBand = TierBand(min=90, max=100)

    def tier_for_score(self, score: int) -> VerificationTier:
        """Highest tier whose band floor the score reaches."""
        for tier in reversed(list(VerificationTier)):
            if score >= getattr(self, tier.value).min:
                return tier
        return VerificationTier.BASIC


class AddressMatchThresholds(BaseModel):
    verified_min: int = 80
    review_required_min: int = 60


class FraudDetectionSettings(BaseModel):
    max_flags: int = 3
    auto_downgrade: bool = True


class VerificationConfig(BaseModel):
    """Verification thresholds, loaded once at start-up and passed in."""

    tier_thresholds: TierThresholds = Field(default_factory=TierThresholds)
    high_value_threshold: float = 100
    address_match_thresholds: AddressMatchThresholds = Field(default_factory=AddressMatchThresholds)
    fraud_detection: FraudDetectionSettings = Field(default_factory=FraudDetectionSettings)


# ---------------------------------------------------------------------------
# Verification results
# ---------------------------------------------------------------------------


class VerificationRequirements(BaseModel):
    payment_setup: bool = False
    address_verified: bool = False
    id_verified: bool = False
    verified_host_badge: bool = False


class VerificationStatus(BaseModel):
    """Derived verification view of a user."""

    tier: VerificationTier = VerificationTier.BASIC
    score: int = 0
    badges: list[str] = Field(default_factory=list)
    requirements: VerificationRequirements = Field(default_factory=VerificationRequirements)
    can_create_high_value_listings: bool = False
    can_book_without_restrictions: bool = False
    next_steps: list[str] = Field(default_factory=list)


class AddressVerificationOutcome(BaseModel):
    success: bool
    status: AddressVerificationStatus
    confidence: int
    requires_id_verification: bool
    message: str


class ListingAttributes(BaseModel):
    """Pricing and location of a listing being created."""

    price_per_hour: float
    price_per_day: float | None = None
    address: str | None = None
    city: str
    state: str
    zip_code: str


class ListingVerificationResult(BaseModel):
    can_create: bool
    requires_verification: bool
    tier_required: VerificationTier
    suggestions: list[str] = Field(default_factory=list)
    reason: str | None = None


class TierInfo(BaseModel):
    name: str
    description: str
    benefits: list[str]
    requirements: list[str]


# ---------------------------------------------------------------------------
# Negotiation delegate
# ---------------------------------------------------------------------------


class MarketSnapshot(BaseModel):
    """Hourly prices of comparable spaces."""

    average_price: float
    median_price: float
    price_range: tuple[float, float]
    comparable_count: int = 0
    demand_level: DemandLevel = DemandLevel.MEDIUM


class DelegateDecision(BaseModel):
    """What an automated delegate wants to do with a pending offer."""

    action: DelegateAction
    counter_price: float | None = None
    reasoning: str = ""
    confidence: float = Field(default=0.75, ge=0, le=1)


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class BookingCreateRequest(BaseModel):
    space_id: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    offer_price: float | None = None
    message: str | None = None


class OfferCreateRequest(BaseModel):
    price: float
    message: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class SignAgreementRequest(BaseModel):
    signature: str = Field(min_length=1)


class PaymentConfirmRequest(BaseModel):
    payment_reference: str


class PaymentSetupRequest(BaseModel):
    billing_address: Address


class IdVerificationRequest(BaseModel):
    verified: bool = True


class FraudFlagRequest(BaseModel):
    reason: str


class DelegatePreferencesUpdate(BaseModel):
    enabled: bool = True
    strategy: NegotiationStrategy = NegotiationStrategy.MODERATE
    min_acceptable_price: float | None = None
    max_acceptable_price: float | None = None
    auto_accept_threshold: float | None = Field(default=None, gt=0, le=1)
    max_counter_offers: int = Field(default=5, ge=0)


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class NegotiationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    from_user_id: str
    to_user_id: str
    offer_price: float
    message: str | None = None
    status: str
    ai_generated: bool
    created_at: datetime | None = None
    responded_at: datetime | None = None


class AgreementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    renter_id: str
    owner_id: str
    terms: str
    renter_signed_at: datetime | None = None
    owner_signed_at: datetime | None = None
    fully_executed: bool
    executed_at: datetime | None = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    space_id: str
    renter_id: str
    owner_id: str
    start_time: datetime
    end_time: datetime
    original_price: float
    final_price: float
    total_price: float
    status: str
    legal_compliance_checked: bool | None = None
    legal_compliance_status: str | None = None
    payment_status: str
    payment_intent_id: str | None = None
    message: str | None = None
    confirmed_at: datetime | None = None
    created_at: datetime | None = None


class BookingRequestResponse(BaseModel):
    """Either a created booking or a verification denial."""

    ok: bool
    booking: BookingResponse | None = None
    tier_required: VerificationTier | None = None
    suggestions: list[str] = Field(default_factory=list)


class DelegatePreferencesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    enabled: bool
    strategy: str
    min_acceptable_price: float | None = None
    max_acceptable_price: float | None = None
    auto_accept_threshold: float | None = None
    max_counter_offers: int


class ErrorResponse(BaseModel):
    code: int
    message: str
