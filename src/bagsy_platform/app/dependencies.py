"""FastAPI dependencies: the acting user and per-request service wiring."""

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.models import User
from bagsy_platform.infra.database import get_db
from bagsy_platform.services.booking_lifecycle import BookingLifecycle
from bagsy_platform.services.compliance_classifier import ComplianceClassifier
from bagsy_platform.services.negotiation_engine import NegotiationEngine
from bagsy_platform.services.notification_service import NotificationService
from bagsy_platform.services.payment_service import LocalPaymentProcessor
from bagsy_platform.services.verification_ledger import VerificationLedger

_classifier = ComplianceClassifier()


async def get_current_user_dep(
    x_user_id: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Dependency: the user the upstream auth gateway put in ``X-User-Id``."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    user = await db.get(User, x_user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )
    return user


def get_ledger(request: Request, db: AsyncSession = Depends(get_db)) -> VerificationLedger:
    config = getattr(request.app.state, "verification_config", None)
    return VerificationLedger(db, config)


def get_negotiation_engine(request: Request, db: AsyncSession = Depends(get_db)) -> NegotiationEngine:
    return NegotiationEngine(
        db,
        notifier=NotificationService(db),
        dispatcher=getattr(request.app.state, "delegate_queue", None),
    )


def get_lifecycle(
    db: AsyncSession = Depends(get_db),
    ledger: VerificationLedger = Depends(get_ledger),
    negotiation: NegotiationEngine = Depends(get_negotiation_engine),
) -> BookingLifecycle:
    return BookingLifecycle(
        db,
        ledger=ledger,
        classifier=_classifier,
        payments=LocalPaymentProcessor(),
        notifier=negotiation.notifier,
        negotiation=negotiation,
    )
