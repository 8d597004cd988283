"""SQLAlchemy ORM models for the agreement lifecycle engine.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- UTCDateTime for timestamps: stored naive, always read back as aware UTC
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
)

from coliving_platform.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """DateTime that normalizes to UTC on write and returns aware values on read."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class AgreementTemplate(Base):
    """Lease template with {{variable}} placeholders and typed variable definitions."""

    __tablename__ = "agreement_templates"

    id = Column(String(36), primary_key=True, default=_uuid)
    property_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=False, default="Standard Lease")
    content = Column(Text, nullable=False)
    variables = Column(JSON, nullable=False, default=list)  # list[TemplateVariable dict], ordered
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    created_by = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Agreements
# ---------------------------------------------------------------------------


class Agreement(Base):
    """Lease agreement tracked from creation through signature to tenant onboarding."""

    __tablename__ = "agreements"

    id = Column(String(36), primary_key=True, default=_uuid)
    template_id = Column(String(36), ForeignKey("agreement_templates.id"), nullable=False)
    template_version = Column(Integer, nullable=True)
    property_id = Column(String(36), nullable=False, index=True)

    # Prospect contact
    prospect_name = Column(String(255), nullable=False)
    prospect_email = Column(String(255), nullable=False)
    prospect_phone = Column(String(50), nullable=True)

    # Property owner contact (decline / escalation notices)
    owner_name = Column(String(255), nullable=True)
    owner_email = Column(String(255), nullable=True)

    # Status
    status = Column(String(20), nullable=False, default="draft", index=True)  # AgreementStatus

    # Milestones
    sent_date = Column(UTCDateTime, nullable=True)
    viewed_date = Column(UTCDateTime, nullable=True)
    signed_date = Column(UTCDateTime, nullable=True)
    completed_date = Column(UTCDateTime, nullable=True)
    cancelled_date = Column(UTCDateTime, nullable=True)
    expiration_date = Column(UTCDateTime, nullable=True)

    # Reminders
    last_reminder_date = Column(UTCDateTime, nullable=True)
    reminders_sent = Column(Integer, nullable=False, default=0)
    reminders_cancelled_at = Column(UTCDateTime, nullable=True)
    reminders_cancel_reason = Column(String(255), nullable=True)

    # E-signature
    docusign_envelope_id = Column(String(100), nullable=True, index=True)
    signed_document_url = Column(String(500), nullable=True)

    # Content
    agreement_data = Column(JSON, nullable=False, default=dict)  # variable name -> value
    rendered_content = Column(Text, nullable=True)

    # Onboarding
    tenant_id = Column(String(36), nullable=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    # Optimistic concurrency: every ORM flush checks and bumps this
    row_version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": row_version}


class AgreementEnvelope(Base):
    """Envelope id -> agreement lookup, written whenever signing is initiated.

    An agreement may own several envelopes when it is re-sent.
    """

    __tablename__ = "agreement_envelopes"

    envelope_id = Column(String(100), primary_key=True)
    agreement_id = Column(String(36), ForeignKey("agreements.id"), nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow)


class AgreementStatusHistory(Base):
    """Immutable audit trail entry for agreement status transitions."""

    __tablename__ = "agreement_status_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    agreement_id = Column(String(36), ForeignKey("agreements.id"), nullable=False, index=True)
    previous_status = Column(String(20), nullable=True)  # None for the creation entry
    new_status = Column(String(20), nullable=False)
    note = Column(Text, nullable=True)
    actor = Column(String(20), nullable=False)  # StatusActor
    data = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class AgreementReminderLog(Base):
    """One row per reminder delivery attempt."""

    __tablename__ = "agreement_reminder_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    agreement_id = Column(String(36), ForeignKey("agreements.id"), nullable=False, index=True)
    channel = Column(String(10), nullable=False)  # ReminderChannel
    urgency = Column(String(10), nullable=False)  # ReminderUrgency
    milestone = Column(String(30), nullable=True)  # initial / followup_N / urgent / final
    recipient = Column(String(255), nullable=False)
    reminder_number = Column(Integer, nullable=True)
    manual = Column(Boolean, nullable=False, default=False)
    success = Column(Boolean, nullable=False, default=True)
    error = Column(Text, nullable=True)
    sent_at = Column(UTCDateTime, default=utcnow, index=True)


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class Tenant(Base):
    """Tenant profile provisioned from a completed agreement."""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=_uuid)
    agreement_id = Column(String(36), unique=True, nullable=False)
    property_id = Column(String(36), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # TenantStatus
    room_number = Column(String(50), nullable=True)
    lease_start_date = Column(UTCDateTime, nullable=True)
    lease_end_date = Column(UTCDateTime, nullable=True)
    monthly_rent_cents = Column(Integer, nullable=True)
    deposit_cents = Column(Integer, nullable=True)
    emergency_contact = Column(JSON, nullable=True)
    signed_document_url = Column(String(500), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
