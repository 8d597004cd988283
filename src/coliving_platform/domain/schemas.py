"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from coliving_platform.domain.enums import (
    AgreementStatus,
    ReminderUrgency,
    TemplateVariableType,
)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateVariable(BaseModel):
    """A typed placeholder declared by a template."""

    name: str
    label: str
    type: TemplateVariableType = TemplateVariableType.TEXT
    required: bool = False
    default_value: str | None = None
    select_options: list[str] | None = None


class TemplateCreate(BaseModel):
    """Schema for creating an agreement template."""

    property_id: str
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    category: str = "Standard Lease"
    content: str
    variables: list[TemplateVariable] = []


class TemplateUpdate(BaseModel):
    """Partial template update; only supplied fields change."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category: str | None = None
    content: str | None = None
    variables: list[TemplateVariable] | None = None
    is_active: bool | None = None


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    property_id: str
    name: str
    description: str | None = None
    category: str
    content: str
    variables: list[TemplateVariable]
    is_active: bool
    version: int
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TemplateCloneRequest(BaseModel):
    name: str | None = None


class TemplatePreviewRequest(BaseModel):
    values: dict[str, Any] = {}


class TemplatePreviewResponse(BaseModel):
    content: str
    missing: list[str] = []
    warnings: list[str] = []


# ---------------------------------------------------------------------------
# Agreements
# ---------------------------------------------------------------------------


class AgreementCreate(BaseModel):
    """Schema for creating (and optionally sending) an agreement."""

    template_id: str
    property_id: str
    prospect_name: str = Field(min_length=1, max_length=255)
    prospect_email: EmailStr
    prospect_phone: str | None = None
    owner_name: str | None = None
    owner_email: EmailStr | None = None
    agreement_data: dict[str, Any] = {}
    expiration_days: int | None = Field(default=None, ge=1, le=90)
    send_immediately: bool = True


class AgreementResponse(BaseModel):
    """Agreement as seen by operators, with the computed expiry flag."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    template_id: str
    template_version: int | None = None
    property_id: str
    prospect_name: str
    prospect_email: str
    prospect_phone: str | None = None
    owner_name: str | None = None
    owner_email: str | None = None
    status: AgreementStatus
    sent_date: datetime | None = None
    viewed_date: datetime | None = None
    signed_date: datetime | None = None
    completed_date: datetime | None = None
    cancelled_date: datetime | None = None
    expiration_date: datetime | None = None
    last_reminder_date: datetime | None = None
    reminders_sent: int = 0
    reminders_cancelled_at: datetime | None = None
    docusign_envelope_id: str | None = None
    signed_document_url: str | None = None
    agreement_data: dict[str, Any] = {}
    tenant_id: str | None = None
    created_at: datetime | None = None
    is_expired: bool = False
    days_until_expiry: int | None = None


class AgreementDetailResponse(AgreementResponse):
    rendered_content: str | None = None


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agreement_id: str
    previous_status: AgreementStatus | None = None
    new_status: AgreementStatus
    note: str | None = None
    actor: str
    data: dict[str, Any] | None = None
    created_at: datetime


class TransitionRequest(BaseModel):
    status: AgreementStatus
    note: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class ReminderResponse(BaseModel):
    sent: bool
    urgency: ReminderUrgency | None = None
    reason: str | None = None
    reminders_sent: int
    days_until_expiry: int | None = None


# ---------------------------------------------------------------------------
# Reminder configuration
# ---------------------------------------------------------------------------


class ReminderConfig(BaseModel):
    """Reminder schedule. Immutable; updates build and swap a new instance."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    initial: int = Field(default=5, ge=1, le=30)
    followup: tuple[Annotated[int, Field(ge=1, le=60)], ...] = (10, 20)
    urgent: int = Field(default=3, ge=1, le=14)
    final: int = Field(default=1, ge=1, le=7)
    max_attempts: int = Field(default=5, ge=1, le=10)
    business_hours_only: bool = False
    business_hours_start: int = Field(default=9, ge=0, le=23)
    business_hours_end: int = Field(default=18, ge=1, le=24)
    exclude_weekends: bool = False
    escalation_enabled: bool = True

    @field_validator("followup")
    @classmethod
    def _dedupe_followup(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        return tuple(sorted(set(value), reverse=True))


class ReminderStats(BaseModel):
    period_days: int
    total: int
    successful: int
    failed: int
    success_rate: float
    by_urgency: dict[str, int]
    by_channel: dict[str, int]


class ReminderConfigResponse(BaseModel):
    config: ReminderConfig
    stats: ReminderStats | None = None


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agreement_id: str
    property_id: str
    first_name: str
    last_name: str | None = None
    email: str
    phone: str | None = None
    status: str
    room_number: str | None = None
    lease_start_date: datetime | None = None
    lease_end_date: datetime | None = None
    monthly_rent_cents: int | None = None
    deposit_cents: int | None = None
    emergency_contact: dict[str, Any] | None = None
    created_at: datetime | None = None


class CompletionResponse(BaseModel):
    tenant: TenantResponse | None = None
    created: bool
    warnings: list[str] = []
