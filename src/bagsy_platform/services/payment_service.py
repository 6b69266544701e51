"""Payment processor contract used by the booking lifecycle.

The booking core only needs an opaque intent reference and a confirmation
verdict from a processor. ``LocalPaymentProcessor`` issues references
locally and approves any non-empty one; card-network integrations subclass
``PaymentProcessor`` the same way.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class PaymentConfirmation:
    """Processor verdict for a confirmation attempt."""

    succeeded: bool
    reference: str
    failure_reason: Optional[str] = None


class PaymentProcessor(ABC):
    """Contract for payment processors."""

    @abstractmethod
    async def create_payment_intent(self, booking_id: str, renter_id: str, amount: float) -> str:
        """Create an intent and return its opaque reference."""

    @abstractmethod
    async def confirm_payment(self, payment_reference: str, amount: float) -> PaymentConfirmation:
        """Confirm a charge. Raises on transport failure, returns a decline verdict otherwise."""


class LocalPaymentProcessor(PaymentProcessor):
    """In-process processor for development and tests."""

    async def create_payment_intent(self, booking_id: str, renter_id: str, amount: float) -> str:
        reference = f"pi_{uuid.uuid4().hex[:24]}"
        logger.info(
            "Payment intent %s created for booking %s (%.2f)",
            reference,
            booking_id,
            amount,
        )
        return reference

    async def confirm_payment(self, payment_reference: str, amount: float) -> PaymentConfirmation:
        if not payment_reference:
            return PaymentConfirmation(
                succeeded=False,
                reference=payment_reference,
                failure_reason="Missing payment reference",
            )
        return PaymentConfirmation(succeeded=True, reference=payment_reference)
