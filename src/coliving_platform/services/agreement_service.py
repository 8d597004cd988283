"""Operator-driven agreement actions: create, send, cancel, complete."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.app.config import get_settings
from coliving_platform.domain.enums import AgreementStatus, StatusActor
from coliving_platform.domain.errors import (
    AgreementDataError,
    AgreementNotFoundError,
    InvalidTransitionError,
    TemplateValidationError,
)
from coliving_platform.domain.models import Agreement
from coliving_platform.domain.schemas import AgreementCreate
from coliving_platform.services.agreement_state_machine import TransitionCause, load_agreement, transition
from coliving_platform.services.agreement_store import AgreementStore
from coliving_platform.services.esign_client import DocuSignClient
from coliving_platform.services.notifications import NotificationSender, build_agreement_sent_message
from coliving_platform.services.reminder_scheduler import cancel_reminders
from coliving_platform.services.template_service import (
    TemplateService,
    render_template,
    resolve_values,
    template_variables,
)
from coliving_platform.services.tenant_integration import CompletionResult, TenantIntegrationService

logger = logging.getLogger(__name__)

# Prospect contact fills these template variables when the operator leaves them blank
_CONTACT_VARIABLES = {
    "tenant_name": "prospect_name",
    "tenant_email": "prospect_email",
    "tenant_phone": "prospect_phone",
}


@dataclass
class ActionResult:
    agreement: Agreement
    warnings: list[str] = field(default_factory=list)
    completion: Optional[CompletionResult] = None


class AgreementService:
    """Creates and drives agreements on behalf of an operator."""

    def __init__(
        self,
        db: AsyncSession,
        esign_client: Optional[DocuSignClient] = None,
        notifier: Optional[NotificationSender] = None,
    ):
        self.db = db
        self.store = AgreementStore(db)
        self.templates = TemplateService(db)
        self.esign_client = esign_client or DocuSignClient()
        self.notifier = notifier

    async def _require(self, agreement_id: str) -> Agreement:
        agreement = await load_agreement(self.db, agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(agreement_id)
        return agreement

    async def create_agreement(self, request: AgreementCreate, created_by: Optional[str] = None) -> ActionResult:
        """Render the template for a prospect and persist the agreement in draft.

        With ``send_immediately`` the agreement is sent for signature in the
        same call.
        """
        template = await self.templates.get(request.template_id)
        if not template.is_active:
            raise TemplateValidationError([f"Template {template.id} is not active"])
        if template.property_id != request.property_id:
            raise AgreementDataError([f"Template {template.id} does not belong to property {request.property_id}"])

        variables = template_variables(template)
        declared = {v.name for v in variables}
        supplied = dict(request.agreement_data)
        for var_name, attr in _CONTACT_VARIABLES.items():
            if var_name in declared and supplied.get(var_name) in (None, ""):
                supplied[var_name] = getattr(request, attr)
        values = resolve_values(variables, supplied)

        now = datetime.now(timezone.utc)
        expiration_days = request.expiration_days or get_settings().default_expiration_days
        agreement = Agreement(
            template_id=template.id,
            template_version=template.version,
            property_id=request.property_id,
            prospect_name=request.prospect_name,
            prospect_email=str(request.prospect_email),
            prospect_phone=request.prospect_phone,
            owner_name=request.owner_name,
            owner_email=str(request.owner_email) if request.owner_email else None,
            status=AgreementStatus.DRAFT.value,
            expiration_date=now + timedelta(days=expiration_days),
            agreement_data=values,
            rendered_content=render_template(template.content, values),
            reminders_sent=0,
            created_by=created_by,
        )
        await self.store.add(agreement, actor=StatusActor.OPERATOR)

        if request.send_immediately:
            return await self.send_agreement(agreement.id)
        return ActionResult(agreement=agreement)

    async def send_agreement(self, agreement_id: str) -> ActionResult:
        """Create the signing envelope, index it, and move draft -> sent.

        A provider failure raises SigningProviderError and leaves the
        agreement in draft. The signing-link email is best effort.
        """
        agreement = await self._require(agreement_id)
        current = AgreementStatus(agreement.status)
        if current != AgreementStatus.DRAFT:
            raise InvalidTransitionError(current, AgreementStatus.SENT, "Agreement has already been sent")

        warnings: list[str] = []
        envelope_id = await self.esign_client.create_envelope(agreement)
        if envelope_id:
            await self.store.register_envelope(agreement.id, envelope_id)
        else:
            warnings.append("E-signature provider not configured; no envelope created")

        agreement = await transition(
            self.db,
            agreement.id,
            AgreementStatus.SENT,
            TransitionCause(
                actor=StatusActor.OPERATOR,
                note="Agreement sent for signature",
                envelope_id=envelope_id,
            ),
        )

        if self.notifier is not None:
            message = build_agreement_sent_message(agreement)
            try:
                delivered = await self.notifier.send(agreement.prospect_email, message.subject, message.body)
            except Exception:
                logger.exception("Agreement email raised for %s", agreement.id)
                delivered = False
            if not delivered:
                warnings.append("Signing link email could not be sent")
        return ActionResult(agreement=agreement, warnings=warnings)

    async def cancel_agreement(self, agreement_id: str, reason: Optional[str] = None) -> ActionResult:
        note = reason or "Cancelled by operator"
        await transition(
            self.db,
            agreement_id,
            AgreementStatus.CANCELLED,
            TransitionCause(actor=StatusActor.OPERATOR, note=note),
        )
        await cancel_reminders(self.db, agreement_id, note)
        return ActionResult(agreement=await self._require(agreement_id))

    async def complete_agreement(self, agreement_id: str, note: Optional[str] = None) -> ActionResult:
        """Manual signed -> completed, followed by tenant provisioning."""
        await transition(
            self.db,
            agreement_id,
            AgreementStatus.COMPLETED,
            TransitionCause(actor=StatusActor.OPERATOR, note=note or "Completed by operator"),
        )
        await cancel_reminders(self.db, agreement_id, "Agreement completed and signed")

        warnings: list[str] = []
        completion = None
        try:
            completion = await self.create_tenant(agreement_id)
            warnings.extend(completion.warnings)
        except Exception as e:
            await self.db.rollback()
            logger.exception("Tenant provisioning failed for agreement %s", agreement_id)
            warnings.append(f"Tenant provisioning failed: {e}")
        return ActionResult(agreement=await self._require(agreement_id), warnings=warnings, completion=completion)

    async def apply_manual_transition(
        self, agreement_id: str, target: AgreementStatus, note: Optional[str] = None
    ) -> ActionResult:
        """Generic operator transition; completion and cancellation keep their side effects."""
        agreement = await self._require(agreement_id)
        if AgreementStatus(agreement.status) == target:
            return ActionResult(agreement=agreement)
        if target == AgreementStatus.COMPLETED:
            return await self.complete_agreement(agreement_id, note)
        if target == AgreementStatus.CANCELLED:
            return await self.cancel_agreement(agreement_id, note)
        if target == AgreementStatus.SENT:
            return await self.send_agreement(agreement_id)
        agreement = await transition(
            self.db, agreement_id, target, TransitionCause(actor=StatusActor.OPERATOR, note=note)
        )
        return ActionResult(agreement=agreement)

    async def create_tenant(self, agreement_id: str) -> CompletionResult:
        agreement = await self._require(agreement_id)
        return await TenantIntegrationService(self.db).process_completion(agreement)
