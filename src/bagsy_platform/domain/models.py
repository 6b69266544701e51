"""SQLAlchemy ORM models for the Bagsy Platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from bagsy_platform.infra.database import Base


# ---------------------------------------------------------------------------
# Users / Verification
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user (identity only; auth lives upstream)."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    verification_profile = relationship("VerificationProfile", back_populates="user", uselist=False)
    spaces = relationship("Space", back_populates="owner")


class VerificationProfile(Base):
    """Stored verification facts for a user.

    Tier, score and badges are cached here but always recomputed from the
    facts (payment setup, address check, ID check, host badge, fraud flags).
    """

    __tablename__ = "verification_profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)

    # Payment setup + billing address on file
    payment_method_setup = Column(Boolean, default=False, nullable=False)
    billing_street = Column(String(255), nullable=True)
    billing_city = Column(String(100), nullable=True)
    billing_state = Column(String(50), nullable=True)
    billing_zip = Column(String(20), nullable=True)

    # Address verification
    address_verification_status = Column(String(20), nullable=True)  # AddressVerificationStatus
    address_verification_confidence = Column(Integer, nullable=True)

    # Identity / host
    driver_license_verified = Column(Boolean, default=False, nullable=False)
    verified_host_badge = Column(Boolean, default=False, nullable=False)
    high_value_listing_access = Column(Boolean, default=False, nullable=False)
    fraud_flags = Column(Integer, default=0, nullable=False)

    # Cached derivations
    verification_tier = Column(String(20), default="basic", nullable=False, index=True)
    verification_score = Column(Integer, default=0, nullable=False)
    verification_badges = Column(JSON, default=list)
    last_verification_check = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="verification_profile")


class VerificationAuditLog(Base):
    """Audit trail of verification events and tier changes."""

    __tablename__ = "verification_audit_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    event_type = Column(String(30), nullable=False)  # VerificationEventType
    previous_tier = Column(String(20), nullable=True)
    new_tier = Column(String(20), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())


class VerificationSetting(Base):
    """Admin-tunable verification thresholds (JSON value per key)."""

    __tablename__ = "verification_settings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    setting_key = Column(String(100), unique=True, nullable=False)
    setting_value = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


class Space(Base):
    """A rentable space (driveway, garage, lot) listed by an owner."""

    __tablename__ = "spaces"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    address = Column(String(500), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(50), nullable=False)
    zip_code = Column(String(20), nullable=False)
    space_type = Column(String(50), default="driveway")  # driveway, garage, lot, covered
    price_per_hour = Column(Float, nullable=False)
    price_per_day = Column(Float, nullable=True)
    is_available = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    owner = relationship("User", back_populates="spaces")
    bookings = relationship("Booking", back_populates="space")

    @property
    def full_address(self) -> str:
        return f"{self.address}, {self.city}, {self.state} {self.zip_code}"


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Booking(Base):
    """A renter's request for a space over a time window."""

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    space_id = Column(String(36), ForeignKey("spaces.id"), nullable=False, index=True)
    renter_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    # Window
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    # Pricing (hourly); final_price tracks the latest unresolved offer
    original_price = Column(Float, nullable=False)
    final_price = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)  # BookingStatus

    # Compliance snapshot, frozen at creation
    legal_compliance_checked = Column(Boolean, default=False)
    legal_compliance_status = Column(String(20), nullable=True)  # ComplianceStatus
    legal_compliance_details = Column(JSON, nullable=True)

    # Payment
    payment_status = Column(String(20), nullable=False, default="pending")  # PaymentStatus
    payment_intent_id = Column(String(255), nullable=True)

    message = Column(Text, nullable=True)
    cancel_reason = Column(Text, nullable=True)

    # Lifecycle timestamps
    confirmed_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    space = relationship("Space", back_populates="bookings")
    negotiations = relationship("Negotiation", back_populates="booking", order_by="Negotiation.created_at")
    agreement = relationship("Agreement", back_populates="booking", uselist=False)
    events = relationship("BookingEvent", back_populates="booking")

    @property
    def hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600


class BookingEvent(Base):
    """Immutable audit trail entry for booking state transitions."""

    __tablename__ = "booking_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # BookingEventType
    actor = Column(String(20), nullable=False)  # BookingActor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    booking = relationship("Booking", back_populates="events")


class Negotiation(Base):
    """A single price offer within a booking's negotiation."""

    __tablename__ = "negotiations"
    __table_args__ = (
        # At most one pending offer per booking
        Index(
            "uq_negotiations_one_pending",
            "booking_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    from_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    to_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    offer_price = Column(Float, nullable=False)
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # OfferStatus
    ai_generated = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=func.now())
    responded_at = Column(DateTime, nullable=True)

    # Relationships
    booking = relationship("Booking", back_populates="negotiations")


class Agreement(Base):
    """Bilateral rental agreement; both signatures unlock payment."""

    __tablename__ = "agreements"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id"), unique=True, nullable=False)
    renter_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    terms = Column(Text, nullable=False)

    # Signatures (opaque image payloads)
    renter_signature = Column(Text, nullable=True)
    renter_signed_at = Column(DateTime, nullable=True)
    owner_signature = Column(Text, nullable=True)
    owner_signed_at = Column(DateTime, nullable=True)

    # Set once both signatures are present; never cleared
    fully_executed = Column(Boolean, default=False, nullable=False)
    executed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    booking = relationship("Booking", back_populates="agreement")

    @property
    def both_signed(self) -> bool:
        return bool(self.renter_signature) and bool(self.owner_signature)


# ---------------------------------------------------------------------------
# Delegates / Notifications
# ---------------------------------------------------------------------------


class NegotiationDelegate(Base):
    """Per-user automated negotiation delegate preferences."""

    __tablename__ = "negotiation_delegates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)
    strategy = Column(String(20), default="moderate", nullable=False)  # NegotiationStrategy
    min_acceptable_price = Column(Float, nullable=True)
    max_acceptable_price = Column(Float, nullable=True)
    auto_accept_threshold = Column(Float, nullable=True)
    max_counter_offers = Column(Integer, default=5, nullable=False)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class Notification(Base):
    """In-app notification; email delivery is best-effort on top."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String(30), nullable=False)  # NotificationKind
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False)
    email_sent = Column(Boolean, default=False)
    created_at = Column(DateTime, default=func.now())
    read_at = Column(DateTime, nullable=True)
