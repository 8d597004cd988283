"""Domain enumerations for the agreement lifecycle engine.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class AgreementStatus(str, Enum):
    """Lifecycle status of a lease agreement."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StatusActor(str, Enum):
    """Who caused a status history entry."""

    SYSTEM = "system"
    OPERATOR = "operator"
    WEBHOOK = "webhook"
    SCHEDULER = "scheduler"


class ReminderUrgency(str, Enum):
    """Severity tier of a signing reminder, ordered standard < urgent < final."""

    STANDARD = "standard"
    URGENT = "urgent"
    FINAL = "final"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {
    ReminderUrgency.STANDARD: 1,
    ReminderUrgency.URGENT: 2,
    ReminderUrgency.FINAL: 3,
}


class ReminderChannel(str, Enum):
    """Delivery channel for a reminder."""

    EMAIL = "email"
    SMS = "sms"


class EnvelopeStatus(str, Enum):
    """Envelope statuses reported by DocuSign Connect that the engine acts on."""

    SENT = "sent"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DECLINED = "declined"
    VOIDED = "voided"


class TemplateVariableType(str, Enum):
    """Value type of a template variable."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    SELECT = "select"


class TenantStatus(str, Enum):
    """Status of a tenant record provisioned from an agreement."""

    PENDING = "pending"
    ACTIVE = "active"
