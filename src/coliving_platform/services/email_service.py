"""SendGrid email delivery for agreement notifications.

Uses asyncio.to_thread to wrap the synchronous SendGrid client.
"""

import asyncio
import logging
from typing import Optional

import sendgrid
from sendgrid.helpers.mail import Email, Header, Mail, To

from coliving_platform.domain.enums import ReminderUrgency

logger = logging.getLogger(__name__)


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from coliving_platform.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.notification_from_email, s.notification_from_name


def _send_mail(api_key: str, mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = sendgrid.SendGridAPIClient(api_key=api_key)
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


class EmailNotificationSender:
    """Notification sender backed by SendGrid.

    ``send`` never raises: any failure is logged and reported as False so the
    caller can record it and retry on a later pass.
    """

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        urgency: Optional[ReminderUrgency] = None,
    ) -> bool:
        api_key, from_email, from_name = _get_config()
        if not api_key or not from_email:
            logger.warning("SENDGRID_API_KEY not set, email to %s not sent: %s", recipient, subject)
            return False

        try:
            mail = Mail(
                from_email=Email(from_email, from_name),
                to_emails=To(recipient),
                subject=subject,
                plain_text_content=body,
            )
            if urgency in (ReminderUrgency.URGENT, ReminderUrgency.FINAL):
                mail.header = Header("X-Priority", "1")
                mail.header = Header("Importance", "high")
            result = await asyncio.to_thread(_send_mail, api_key, mail)
            if result:
                logger.info("Email sent to %s: %s", recipient, subject)
            return result
        except Exception:
            logger.exception("Failed to send email to %s: %s", recipient, subject)
            return False
