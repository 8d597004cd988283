"""DocuSign Connect event processing.

Signature check, envelope correlation, and envelope status -> agreement
transition mapping. Delivery is at-least-once and may be out of order, so
every handler tolerates seeing the same event twice and state-machine
rejections are logged rather than surfaced to the provider.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coliving_platform.domain.enums import AgreementStatus, StatusActor
from coliving_platform.domain.envelope_events import (
    EnvelopeCompleted,
    EnvelopeDeclined,
    EnvelopeDelivered,
    EnvelopeEvent,
    EnvelopeSent,
    EnvelopeVoided,
)
from coliving_platform.domain.errors import InvalidTransitionError, WebhookSignatureError
from coliving_platform.domain.models import Agreement
from coliving_platform.services.agreement_state_machine import TransitionCause, transition
from coliving_platform.services.agreement_store import AgreementStore
from coliving_platform.services.background_tasks import SideEffectRunner
from coliving_platform.services.notifications import (
    NotificationSender,
    build_completion_message,
    build_owner_decline_notice,
)
from coliving_platform.services.reminder_scheduler import cancel_reminders
from coliving_platform.services.tenant_integration import TenantIntegrationService

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, secret: str) -> str:
    """DocuSign Connect HMAC: base64(HMAC-SHA256(secret, body))."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signatures: Iterable[str], secret: Optional[str]) -> bool:
    """Check the raw body against any supplied X-DocuSign-Signature-N value.

    Returns False when no secret is configured (verification skipped, local
    dev). Raises WebhookSignatureError when a secret is configured and no
    signature matches.
    """
    if not secret:
        return False

    provided = [s.strip() for s in signatures if s and s.strip()]
    if not provided:
        raise WebhookSignatureError("Missing DocuSign signature")

    expected = compute_signature(raw_body, secret).encode("ascii")
    for candidate in provided:
        if hmac.compare_digest(candidate.encode("ascii", "ignore"), expected):
            return True
    raise WebhookSignatureError("Invalid DocuSign signature")


@dataclass
class WebhookOutcome:
    envelope_id: str
    action: str
    agreement_id: Optional[str] = None
    transitions: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    tenant_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "envelope_id": self.envelope_id,
            "agreement_id": self.agreement_id,
            "action": self.action,
            "transitions": self.transitions,
            "warnings": self.warnings,
            "tenant_id": self.tenant_id,
        }


class WebhookProcessor:
    """Applies a decoded envelope event to the matching agreement."""

    def __init__(
        self,
        db: AsyncSession,
        side_effects: SideEffectRunner,
        session_factory: async_sessionmaker,
        notifier: Optional[NotificationSender] = None,
        document_resolver: Optional[Callable[[str], str]] = None,
    ):
        self.db = db
        self.side_effects = side_effects
        self.session_factory = session_factory
        self.notifier = notifier
        self.document_resolver = document_resolver
        self.store = AgreementStore(db)

    async def process(self, event: EnvelopeEvent) -> WebhookOutcome:
        agreement = await self.store.get_by_envelope_id(event.envelope_id)
        if agreement is None:
            logger.info("DocuSign event for unknown envelope %s dropped (%s)", event.envelope_id, type(event).__name__)
            return WebhookOutcome(envelope_id=event.envelope_id, action="agreement_not_found")

        outcome = WebhookOutcome(envelope_id=event.envelope_id, action="processed", agreement_id=agreement.id)

        if isinstance(event, EnvelopeSent):
            await self._step(outcome, AgreementStatus.SENT, TransitionCause(
                actor=StatusActor.WEBHOOK,
                note="Envelope sent",
                occurred_at=event.occurred_at,
                envelope_id=event.envelope_id,
            ))
        elif isinstance(event, EnvelopeDelivered):
            await self._step(outcome, AgreementStatus.VIEWED, TransitionCause(
                actor=StatusActor.WEBHOOK,
                note="Envelope delivered to prospect",
                occurred_at=event.occurred_at,
            ))
        elif isinstance(event, EnvelopeCompleted):
            await self._handle_completed(event, outcome)
        elif isinstance(event, EnvelopeDeclined):
            await self._handle_cancelled(event, outcome, "Agreement declined by prospect", notify_owner=True)
        elif isinstance(event, EnvelopeVoided):
            await self._handle_cancelled(event, outcome, "Agreement voided", notify_owner=False)
        else:
            logger.info(
                "Unhandled DocuSign status %r for agreement %s", getattr(event, "raw_status", ""), agreement.id
            )
            outcome.action = "unhandled"

        return outcome

    async def _step(
        self, outcome: WebhookOutcome, target: AgreementStatus, cause: TransitionCause
    ) -> Optional[Agreement]:
        """Apply one transition; rejections from replayed/out-of-order events are logged and swallowed."""
        before = await self.store.get(outcome.agreement_id, fresh=True)
        previous = before.status if before is not None else None
        try:
            agreement = await transition(self.db, outcome.agreement_id, target, cause)
        except InvalidTransitionError as e:
            logger.info("Ignoring DocuSign transition for agreement %s: %s", outcome.agreement_id, e)
            outcome.warnings.append(str(e))
            if outcome.action == "processed":
                outcome.action = "ignored"
            return None
        if previous != agreement.status:
            outcome.transitions.append(agreement.status)
        return agreement

    async def _handle_completed(self, event: EnvelopeCompleted, outcome: WebhookOutcome) -> None:
        current = await self.store.get(outcome.agreement_id, fresh=True)

        if current.status != AgreementStatus.COMPLETED.value:
            document_url = self.document_resolver(event.envelope_id) if self.document_resolver else None
            signed = await self._step(outcome, AgreementStatus.SIGNED, TransitionCause(
                actor=StatusActor.WEBHOOK,
                note="Envelope completed and signed",
                occurred_at=event.occurred_at,
                envelope_id=event.envelope_id,
                document_url=document_url,
            ))
            if signed is None:
                return
            completed = await self._step(outcome, AgreementStatus.COMPLETED, TransitionCause(
                actor=StatusActor.WEBHOOK,
                note="Agreement completed",
                occurred_at=event.occurred_at,
            ))
            if completed is None:
                return

        self._cancel_reminders_later(outcome.agreement_id, "Agreement completed and signed")

        # Provisioning failures never undo the completion
        try:
            agreement = await self.store.get(outcome.agreement_id, fresh=True)
            result = await TenantIntegrationService(self.db).process_completion(agreement)
        except Exception as e:
            await self.db.rollback()
            logger.exception("Tenant provisioning failed for agreement %s", outcome.agreement_id)
            outcome.warnings.append(f"Tenant provisioning failed: {e}")
            return

        outcome.warnings.extend(result.warnings)
        if result.tenant is not None:
            outcome.tenant_id = result.tenant.id
        if result.created and self.notifier is not None:
            message = build_completion_message(agreement)
            self._notify_later("completion_notice", agreement.prospect_email, message, agreement.id)

    async def _handle_cancelled(
        self, event: EnvelopeEvent, outcome: WebhookOutcome, note: str, notify_owner: bool
    ) -> None:
        reason = getattr(event, "reason", None)
        agreement = await self._step(outcome, AgreementStatus.CANCELLED, TransitionCause(
            actor=StatusActor.WEBHOOK,
            note=note,
            occurred_at=event.occurred_at,
            data={"reason": reason} if reason else None,
        ))
        if agreement is None:
            return

        self._cancel_reminders_later(agreement.id, note)

        # Only the delivery that performed the cancellation notifies the owner
        just_cancelled = AgreementStatus.CANCELLED.value in outcome.transitions
        if notify_owner and just_cancelled and self.notifier is not None:
            if agreement.owner_email:
                self._notify_later(
                    "owner_decline_notice", agreement.owner_email, build_owner_decline_notice(agreement, reason),
                    agreement.id,
                )
            else:
                logger.warning("Agreement %s declined but has no owner email to notify", agreement.id)

    # -- background side effects -------------------------------------------

    def _cancel_reminders_later(self, agreement_id: str, reason: str) -> None:
        async def _cancel():
            async with self.session_factory() as session:
                await cancel_reminders(session, agreement_id, reason)

        self.side_effects.submit("cancel_reminders", _cancel, agreement_id=agreement_id)

    def _notify_later(self, name: str, recipient: str, message, agreement_id: str) -> None:
        notifier = self.notifier

        async def _send():
            if not await notifier.send(recipient, message.subject, message.body):
                raise RuntimeError(f"notification to {recipient} was not delivered")

        self.side_effects.submit(name, _send, agreement_id=agreement_id)
