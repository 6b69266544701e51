"""SendGrid email delivery for user notifications.

Uses asyncio.to_thread to wrap the synchronous SendGrid client.
"""

import asyncio
import html
import logging

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

logger = logging.getLogger(__name__)


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from bagsy_platform.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.notification_from_email


def _get_client() -> sendgrid.SendGridAPIClient:
    """Return a configured SendGrid API client."""
    api_key, _ = _get_config()
    return sendgrid.SendGridAPIClient(api_key=api_key)


def _build_notification_html(title: str, message: str) -> str:
    return f"""\
<!DOCTYPE html>
<html>
<body style="margin: 0; padding: 24px; font-family: -apple-system, sans-serif; background: #f9fafb;">
    <table width="100%" cellpadding="0" cellspacing="0" style="max-width: 560px; margin: 0 auto; background: #ffffff; border-radius: 8px;">
        <tr>
            <td style="padding: 24px 24px 8px 24px; font-size: 20px; font-weight: 600; color: #111827;">
                {html.escape(title)}
            </td>
        </tr>
        <tr>
            <td style="padding: 8px 24px 24px 24px; font-size: 15px; color: #4b5563;">
                {html.escape(message)}
            </td>
        </tr>
    </table>
</body>
</html>
"""


def _send_mail(mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = _get_client()
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


# ---------------------------------------------------------------------------
# Public async API
# ---------------------------------------------------------------------------


async def send_notification_email(email: str, title: str, message: str) -> bool:
    """Send a notification email.

    Returns:
        True on success, False when SendGrid is not configured or the send fails.
    """
    api_key, from_address = _get_config()
    if not api_key:
        logger.debug("SENDGRID_API_KEY not set, skipping notification email")
        return False

    try:
        mail = Mail(
            from_email=Email(from_address, "Bagsy"),
            to_emails=To(email),
            subject=title,
            html_content=HtmlContent(_build_notification_html(title, message)),
        )
        result = await asyncio.to_thread(_send_mail, mail)
        if result:
            logger.info("Notification email sent to %s", email)
        return result
    except Exception:
        logger.exception("Failed to send notification email to %s", email)
        return False
