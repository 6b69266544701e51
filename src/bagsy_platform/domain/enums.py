"""Domain enumerations for the Bagsy marketplace.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


# ---------------------------------------------------------------------------
# Booking lifecycle
# ---------------------------------------------------------------------------


class BookingStatus(str, Enum):
    """Status of a booking through its lifecycle."""

    PENDING = "pending"
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class BookingActor(str, Enum):
    """Who is performing a booking state transition."""

    RENTER = "renter"
    OWNER = "owner"
    SYSTEM = "system"
    ADMIN = "admin"


class BookingEventType(str, Enum):
    """Audit event types recorded against a booking."""

    REQUESTED = "requested"
    OFFER_SUBMITTED = "offer_submitted"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    REQUEST_ACCEPTED = "request_accepted"
    REQUEST_DECLINED = "request_declined"
    AGREEMENT_CREATED = "agreement_created"
    AGREEMENT_SIGNED = "agreement_signed"
    AGREEMENT_EXECUTED = "agreement_executed"
    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment state of a booking."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


class OfferStatus(str, Enum):
    """Status of a single price offer."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class NegotiationStrategy(str, Enum):
    """How hard an automated delegate pushes on price."""

    AGGRESSIVE = "aggressive"
    MODERATE = "moderate"
    CONSERVATIVE = "conservative"


class DelegateAction(str, Enum):
    """Decision returned by an automated negotiation delegate."""

    ACCEPT = "accept"
    REJECT = "reject"
    COUNTER = "counter"
    NONE = "none"


class DemandLevel(str, Enum):
    """Local demand for comparable spaces."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class ComplianceStatus(str, Enum):
    """Jurisdiction-derived legal verdict for renting a location."""

    ALLOWED = "allowed"
    RESTRICTED = "restricted"
    PROHIBITED = "prohibited"
    PENDING = "pending"


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class VerificationTier(str, Enum):
    """User verification level, ordered by increasing trust."""

    BASIC = "basic"
    PAYMENT_VERIFIED = "payment_verified"
    ID_VERIFIED = "id_verified"
    PREMIUM_VERIFIED = "premium_verified"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def at_least(self, other: "VerificationTier") -> bool:
        return self.rank >= other.rank


_TIER_ORDER = [
    VerificationTier.BASIC,
    VerificationTier.PAYMENT_VERIFIED,
    VerificationTier.ID_VERIFIED,
    VerificationTier.PREMIUM_VERIFIED,
]


class AddressVerificationStatus(str, Enum):
    """Outcome band of a billing-vs-listing address check."""

    VERIFIED = "verified"
    REVIEW_REQUIRED = "review_required"
    MISMATCH = "mismatch"


class VerificationEventType(str, Enum):
    """Verification audit log event types."""

    PAYMENT_SETUP = "payment_setup"
    ADDRESS_VERIFICATION = "address_verification"
    ID_VERIFICATION = "id_verification"
    TIER_UPGRADE = "tier_upgrade"
    TIER_DOWNGRADE = "tier_downgrade"
    FRAUD_FLAG = "fraud_flag"
    VERIFICATION_FAILED = "verification_failed"


class VerificationBadge(str, Enum):
    """Badges shown on a profile, each backed by one requirement."""

    PAYMENT_VERIFIED = "payment_verified"
    ADDRESS_VERIFIED = "address_verified"
    ID_VERIFIED = "id_verified"
    VERIFIED_HOST = "verified_host"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationKind(str, Enum):
    """Kinds of user notifications emitted by the booking core."""

    BOOKING_REQUEST = "booking_request"
    NEGOTIATION_OFFER = "negotiation_offer"
    AGREEMENT_READY = "agreement_ready"
    PAYMENT_RECEIVED = "payment_received"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    LEGAL_ALERT = "legal_alert"
