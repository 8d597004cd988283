"""Operator agreement routes: create, send, inspect, transition, remind."""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.app.dependencies import (
    get_esign_client,
    get_notifier,
    get_rate_limiter,
    get_reminder_config_store,
    get_sms_sender,
)
from coliving_platform.app.http_errors import to_http_exception
from coliving_platform.app.routes.auth import require_operator
from coliving_platform.domain.enums import AgreementStatus
from coliving_platform.domain.errors import AgreementEngineError, AgreementNotFoundError
from coliving_platform.domain.models import Agreement
from coliving_platform.domain.schemas import (
    AgreementCreate,
    AgreementDetailResponse,
    AgreementResponse,
    CancelRequest,
    CompletionResponse,
    ReminderResponse,
    StatusHistoryResponse,
    TenantResponse,
    TransitionRequest,
)
from coliving_platform.infra.database import get_db
from coliving_platform.services.agreement_service import ActionResult, AgreementService
from coliving_platform.services.agreement_state_machine import REMINDABLE_STATES, state_machine
from coliving_platform.services.agreement_store import AgreementStore
from coliving_platform.services.esign_client import DocuSignClient
from coliving_platform.services.notifications import NotificationSender
from coliving_platform.services.rate_limiter import RecipientRateLimiter
from coliving_platform.services.reminder_config import ReminderConfigStore
from coliving_platform.services.reminder_scheduler import ReminderOutcome, ReminderScheduler, days_until_expiry
from coliving_platform.services.tenant_integration import CompletionResult

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/agreements",
    tags=["agreements"],
    dependencies=[Depends(require_operator)],
)

# Skip reasons that mean "try again later" rather than "not allowed"
_RATE_LIMITED = {"rate_limited"}


def _agreement_payload(agreement: Agreement, now: datetime) -> dict:
    """Column values plus the derived expiry fields."""
    payload = AgreementResponse.model_validate(agreement).model_dump()
    payload["is_expired"] = state_machine.is_expired(agreement, now)
    remindable = AgreementStatus(agreement.status) in REMINDABLE_STATES
    if agreement.expiration_date is not None and remindable:
        payload["days_until_expiry"] = days_until_expiry(agreement.expiration_date, now)
    return payload


def _to_response(agreement: Agreement, now: Optional[datetime] = None) -> AgreementResponse:
    return AgreementResponse(**_agreement_payload(agreement, now or datetime.now(timezone.utc)))


def _to_detail(agreement: Agreement) -> AgreementDetailResponse:
    payload = _agreement_payload(agreement, datetime.now(timezone.utc))
    return AgreementDetailResponse(**payload, rendered_content=agreement.rendered_content)


def _completion_payload(completion: Optional[CompletionResult]) -> Optional[dict]:
    if completion is None:
        return None
    tenant = TenantResponse.model_validate(completion.tenant) if completion.tenant is not None else None
    return CompletionResponse(tenant=tenant, created=completion.created, warnings=completion.warnings).model_dump(
        mode="json"
    )


def _action_response(result: ActionResult) -> dict:
    return {
        "agreement": _to_response(result.agreement).model_dump(mode="json"),
        "warnings": result.warnings,
        "tenant": _completion_payload(result.completion),
    }


def _service(
    db: AsyncSession = Depends(get_db),
    esign_client: DocuSignClient = Depends(get_esign_client),
    notifier: NotificationSender = Depends(get_notifier),
) -> AgreementService:
    return AgreementService(db, esign_client=esign_client, notifier=notifier)


def _scheduler(
    db: AsyncSession = Depends(get_db),
    config_store: ReminderConfigStore = Depends(get_reminder_config_store),
    notifier: NotificationSender = Depends(get_notifier),
    rate_limiter: RecipientRateLimiter = Depends(get_rate_limiter),
    sms_sender: NotificationSender = Depends(get_sms_sender),
) -> ReminderScheduler:
    return ReminderScheduler(db, config_store, notifier, rate_limiter, sms_sender=sms_sender)


def _reminder_response(outcome: ReminderOutcome) -> ReminderResponse:
    """Skipped reminders surface as 429 (rate limited) or 409 (not allowed now)."""
    if not outcome.sent:
        code = status.HTTP_429_TOO_MANY_REQUESTS if outcome.reason in _RATE_LIMITED else status.HTTP_409_CONFLICT
        raise HTTPException(
            status_code=code,
            detail={"message": f"Reminder not sent: {outcome.reason}", "reason": outcome.reason},
        )
    return ReminderResponse(
        sent=True,
        urgency=outcome.urgency,
        reminders_sent=outcome.reminders_sent,
        days_until_expiry=outcome.days_until_expiry,
    )


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_agreement(
    data: AgreementCreate,
    operator: str = Depends(require_operator),
    service: AgreementService = Depends(_service),
):
    """Render a template for a prospect; sends for signature unless send_immediately is false."""
    try:
        result = await service.create_agreement(data, created_by=operator)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _action_response(result)


@router.get("", response_model=list[AgreementResponse])
async def list_agreements(
    status_filter: Optional[AgreementStatus] = Query(None, alias="status"),
    property_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    agreements = await AgreementStore(db).list_agreements(
        status=status_filter, property_id=property_id, limit=min(limit, 500), offset=offset
    )
    now = datetime.now(timezone.utc)
    return [_to_response(a, now) for a in agreements]


@router.get("/{agreement_id}", response_model=AgreementDetailResponse)
async def get_agreement(agreement_id: str, db: AsyncSession = Depends(get_db)):
    agreement = await AgreementStore(db).get(agreement_id, fresh=True)
    if agreement is None:
        raise to_http_exception(AgreementNotFoundError(agreement_id))
    return _to_detail(agreement)


@router.get("/{agreement_id}/history", response_model=list[StatusHistoryResponse])
async def get_agreement_history(agreement_id: str, db: AsyncSession = Depends(get_db)):
    """Append-only status log, oldest first."""
    store = AgreementStore(db)
    if await store.get(agreement_id) is None:
        raise to_http_exception(AgreementNotFoundError(agreement_id))
    return await store.history(agreement_id)


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/{agreement_id}/send")
async def send_agreement(agreement_id: str, service: AgreementService = Depends(_service)):
    try:
        result = await service.send_agreement(agreement_id)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _action_response(result)


@router.post("/{agreement_id}/transition")
async def transition_agreement(
    agreement_id: str,
    data: TransitionRequest,
    service: AgreementService = Depends(_service),
):
    """Manual status change, validated by the same state machine as webhook events."""
    try:
        result = await service.apply_manual_transition(agreement_id, data.status, data.note)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _action_response(result)


@router.post("/{agreement_id}/cancel")
async def cancel_agreement(
    agreement_id: str,
    data: CancelRequest,
    service: AgreementService = Depends(_service),
):
    try:
        result = await service.cancel_agreement(agreement_id, data.reason)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _action_response(result)


@router.post("/{agreement_id}/complete")
async def complete_agreement(agreement_id: str, service: AgreementService = Depends(_service)):
    """Signed -> completed, then tenant provisioning. Provisioning failures are warnings."""
    try:
        result = await service.complete_agreement(agreement_id)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _action_response(result)


@router.post("/{agreement_id}/create-tenant", response_model=CompletionResponse)
async def create_tenant(agreement_id: str, service: AgreementService = Depends(_service)):
    """Idempotent: a second call returns the already-linked tenant with created=false."""
    try:
        completion = await service.create_tenant(agreement_id)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _completion_payload(completion)


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


@router.post("/{agreement_id}/remind", response_model=ReminderResponse)
async def send_reminder(agreement_id: str, scheduler: ReminderScheduler = Depends(_scheduler)):
    try:
        outcome = await scheduler.send_manual_reminder(agreement_id)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _reminder_response(outcome)


@router.post("/{agreement_id}/escalate", response_model=ReminderResponse)
async def escalate_reminder(agreement_id: str, scheduler: ReminderScheduler = Depends(_scheduler)):
    """Final-tier reminder to the prospect plus a notice to the property owner."""
    try:
        outcome = await scheduler.send_manual_reminder(agreement_id, escalate=True)
    except AgreementEngineError as e:
        raise to_http_exception(e)
    return _reminder_response(outcome)
