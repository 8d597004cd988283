"""Message content for agreement notifications.

Pure builders: each returns a NotificationMessage and never sends anything.
Delivery lives in email_service (SendGrid) and sms_service (Aircall).
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from coliving_platform.domain.enums import ReminderUrgency


@dataclass(frozen=True)
class NotificationMessage:
    subject: str
    body: str


class NotificationSender(Protocol):
    async def send(self, recipient: str, subject: str, body: str, urgency: Optional[ReminderUrgency] = None) -> bool:
        ...


_REMINDER_SUBJECT_PREFIX = {
    ReminderUrgency.STANDARD: "Reminder",
    ReminderUrgency.URGENT: "Important Reminder",
    ReminderUrgency.FINAL: "URGENT: Final Reminder",
}


def signing_url(agreement_id: str) -> str:
    from coliving_platform.app.config import get_settings

    return f"{get_settings().app_url.rstrip('/')}/agreements/sign/{agreement_id}"


def property_label(agreement) -> str:
    data = agreement.agreement_data or {}
    return data.get("property_name") or "your coliving home"


def _expiry_line(days: int, urgency: ReminderUrgency) -> str:
    if urgency == ReminderUrgency.FINAL:
        if days <= 1:
            return "Your agreement expires today! Please sign immediately."
        return f"Your agreement expires in {days} days. This is your last reminder."
    if urgency == ReminderUrgency.URGENT:
        return f"Your agreement expires in {days} days. Please sign as soon as possible."
    return f"Your agreement is ready for signature and expires in {days} days."


def build_agreement_sent_message(agreement) -> NotificationMessage:
    prop = property_label(agreement)
    body = (
        f"Hello {agreement.prospect_name},\n\n"
        f"Your lease agreement for {prop} is ready to sign.\n\n"
        f"Review and sign here: {signing_url(agreement.id)}\n"
    )
    if agreement.expiration_date is not None:
        body += f"\nPlease sign before {agreement.expiration_date:%B %d, %Y}.\n"
    return NotificationMessage(subject=f"Digital Lease Agreement - {prop}", body=body)


def build_reminder_message(agreement, urgency: ReminderUrgency, days_until_expiry: int) -> NotificationMessage:
    prop = property_label(agreement)
    subject = f"{_REMINDER_SUBJECT_PREFIX[urgency]}: Sign Your Agreement - {prop}"
    body = (
        f"Hello {agreement.prospect_name},\n\n"
        f"{_expiry_line(days_until_expiry, urgency)}\n\n"
        f"Your lease agreement for {prop} is still pending your signature.\n"
        f"Sign here: {signing_url(agreement.id)}\n"
    )
    if urgency == ReminderUrgency.FINAL:
        body += "\nIf the agreement expires, the room may be offered to another applicant.\n"
    return NotificationMessage(subject=subject, body=body)


def build_reminder_sms(agreement, days_until_expiry: int) -> str:
    return (
        f"{property_label(agreement)}: your lease agreement expires in "
        f"{max(days_until_expiry, 0)} day(s). Sign now: {signing_url(agreement.id)}"
    )


def build_owner_decline_notice(agreement, reason: Optional[str] = None) -> NotificationMessage:
    prop = property_label(agreement)
    body = (
        f"Hello {agreement.owner_name or 'there'},\n\n"
        f"{agreement.prospect_name} ({agreement.prospect_email}) declined the lease agreement for {prop}.\n"
    )
    if reason:
        body += f"\nReason given: {reason}\n"
    body += f"\nAgreement id: {agreement.id}\n"
    return NotificationMessage(subject=f"Agreement declined - {prop}", body=body)


def build_owner_escalation_notice(agreement, days_until_expiry: int) -> NotificationMessage:
    prop = property_label(agreement)
    body = (
        f"Hello {agreement.owner_name or 'there'},\n\n"
        f"The lease agreement sent to {agreement.prospect_name} ({agreement.prospect_email}) for {prop} "
        f"is still unsigned after {agreement.reminders_sent or 0} reminder(s) and expires in "
        f"{days_until_expiry} day(s). You may want to follow up directly.\n"
    )
    return NotificationMessage(subject=f"Unsigned agreement needs attention - {prop}", body=body)


def build_completion_message(agreement) -> NotificationMessage:
    prop = property_label(agreement)
    body = (
        f"Hello {agreement.prospect_name},\n\n"
        f"Congratulations! Your lease agreement for {prop} has been signed and completed.\n"
        "We'll be in touch shortly with move-in details.\n"
    )
    return NotificationMessage(subject=f"Agreement Signed - {prop}", body=body)
