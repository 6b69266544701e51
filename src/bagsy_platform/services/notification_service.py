"""In-app (and optional email) notifications for booking events.

Notifications are best-effort: they are sent after the state change has been
committed, and a failure here is logged and swallowed so it never undoes
the transition that triggered it.
"""

import logging
from datetime import datetime
from typing import Awaitable

from sqlalchemy.ext.asyncio import AsyncSession

from bagsy_platform.domain.enums import NotificationKind
from bagsy_platform.domain.models import Notification, User
from bagsy_platform.services import email_service

logger = logging.getLogger(__name__)

K = NotificationKind

TITLES: dict[NotificationKind, str] = {
    K.BOOKING_REQUEST: "New Booking Request",
    K.NEGOTIATION_OFFER: "New Price Offer",
    K.AGREEMENT_READY: "Agreement Ready to Sign",
    K.PAYMENT_RECEIVED: "Payment Received",
    K.BOOKING_CONFIRMED: "Booking Confirmed",
    K.BOOKING_CANCELLED: "Booking Cancelled",
    K.LEGAL_ALERT: "Legal Compliance Alert",
}


def _fmt_date(value) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return str(value or "")


def render_message(kind: NotificationKind, payload: dict) -> str:
    """Render the body text for a notification kind from its payload."""
    space = payload.get("space_title", "your space")
    if kind == K.BOOKING_REQUEST:
        return f'{payload.get("renter_name", "A renter")} has requested to book your space "{space}"'
    if kind == K.NEGOTIATION_OFFER:
        note = payload.get("offer_message")
        text = f'{payload.get("from_name", "The other party")} has offered ${payload.get("offer_price", 0):.2f}'
        return f'{text}: "{note}"' if note else text
    if kind == K.AGREEMENT_READY:
        return "Your rental agreement is ready for signature. Please review and sign."
    if kind == K.PAYMENT_RECEIVED:
        return f'Payment of ${payload.get("amount", 0):.2f} received from {payload.get("renter_name", "the renter")}'
    if kind == K.BOOKING_CONFIRMED:
        return (
            f'Your booking for "{space}" is confirmed from '
            f'{_fmt_date(payload.get("start_time"))} to {_fmt_date(payload.get("end_time"))}'
        )
    if kind == K.BOOKING_CANCELLED:
        reason = payload.get("reason")
        text = f'The booking for "{space}" was cancelled'
        return f"{text}: {reason}" if reason else text
    if kind == K.LEGAL_ALERT:
        return f'Legal status: {payload.get("compliance_status", "pending")}. {payload.get("details", "")}'.strip()
    return ""


class NotificationService:
    """Persists notifications and optionally emails them."""

    def __init__(self, db: AsyncSession, send_email: bool = True):
        self.db = db
        self.send_email = send_email

    async def notify(
        self,
        kind: NotificationKind,
        recipient_id: str,
        payload: dict | None = None,
    ) -> Notification | None:
        """Create a notification for ``recipient_id``.

        ``payload`` may carry ``title``/``message`` overrides; everything
        else is stored as the notification's data. Returns None on failure.
        """
        payload = dict(payload or {})
        try:
            title = payload.pop("title", None) or TITLES[kind]
            message = payload.pop("message", None) or render_message(kind, payload)
            data = {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in payload.items()}
        except Exception as exc:
            logger.warning("Could not render %s notification for user %s: %s", kind.value, recipient_id, exc)
            return None

        try:
            notification = Notification(
                user_id=recipient_id,
                kind=kind.value,
                title=title,
                message=message,
                data=data,
                read=False,
                email_sent=False,
            )
            self.db.add(notification)
            await self.db.commit()
        except Exception as exc:
            logger.warning(
                "Failed to store %s notification for user %s: %s",
                kind.value,
                recipient_id,
                exc,
            )
            await self.db.rollback()
            return None

        if self.send_email:
            await self._email(notification)
        return notification

    async def _email(self, notification: Notification) -> None:
        try:
            user = await self.db.get(User, notification.user_id)
            if user is None or not user.email:
                return
            if await email_service.send_notification_email(
                user.email, notification.title, notification.message
            ):
                notification.email_sent = True
                await self.db.commit()
        except Exception as exc:
            logger.warning("Notification email failed for %s: %s", notification.id, exc)
            await self.db.rollback()


async def best_effort(step: Awaitable, what: str) -> None:
    """Await a post-commit notification step. Failures are logged, never raised."""
    try:
        await step
    except Exception as exc:
        logger.warning("%s failed: %s", what, exc)
