"""Agreement state machine: legal transitions and the atomic transition write.

Both webhook events and operator actions go through ``transition()``. The
agreement row carries a version counter, so two writers that validated
against the same status cannot both commit; the loser re-reads and is
validated again against whatever won.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from coliving_platform.domain.enums import AgreementStatus, StatusActor
from coliving_platform.domain.errors import (
    AgreementNotFoundError,
    ConcurrentModificationError,
    InvalidTransitionError,
)
from coliving_platform.domain.models import Agreement, AgreementStatusHistory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transition map: from_status -> allowed to_statuses
# ---------------------------------------------------------------------------

S = AgreementStatus

TRANSITION_MAP: dict[AgreementStatus, set[AgreementStatus]] = {
    S.DRAFT: {S.SENT},
    # "completed" can arrive from the provider without a prior "delivered"
    S.SENT: {S.VIEWED, S.SIGNED, S.CANCELLED},
    S.VIEWED: {S.SIGNED, S.CANCELLED},
    S.SIGNED: {S.COMPLETED, S.CANCELLED},
}

TERMINAL_STATES: set[AgreementStatus] = {S.COMPLETED, S.CANCELLED}

# Statuses in which the prospect still has to act; expiry and reminders apply
REMINDABLE_STATES: set[AgreementStatus] = {S.SENT, S.VIEWED}

# Milestone timestamp set when entering each status
MILESTONE_FIELDS: dict[AgreementStatus, str] = {
    S.SENT: "sent_date",
    S.VIEWED: "viewed_date",
    S.SIGNED: "signed_date",
    S.COMPLETED: "completed_date",
    S.CANCELLED: "cancelled_date",
}

MAX_TRANSITION_ATTEMPTS = 3


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AgreementStateMachine:
    """Validates agreement status transitions."""

    def validate_transition(
        self,
        current_status: AgreementStatus,
        target_status: AgreementStatus,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"{current_status.value} is a terminal state",
            )

        allowed_targets = TRANSITION_MAP.get(current_status, set())
        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )
        return True

    def get_allowed_transitions(self, current_status: AgreementStatus) -> list[AgreementStatus]:
        """Return the statuses reachable from current_status."""
        return sorted(TRANSITION_MAP.get(current_status, set()), key=lambda s: s.value)

    def is_terminal(self, status: AgreementStatus) -> bool:
        return status in TERMINAL_STATES

    def is_expired(self, agreement, now: Optional[datetime] = None) -> bool:
        """Expiry is derived, never stored: past the deadline while still awaiting a signature."""
        expiration = ensure_utc(agreement.expiration_date)
        if expiration is None:
            return False
        now = now or datetime.now(timezone.utc)
        return AgreementStatus(agreement.status) in REMINDABLE_STATES and now > expiration


state_machine = AgreementStateMachine()


@dataclass
class TransitionCause:
    """Who/what requested a transition, plus provider context to record with it."""

    actor: StatusActor = StatusActor.SYSTEM
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None
    envelope_id: Optional[str] = None
    document_url: Optional[str] = None
    data: Optional[dict] = None


async def load_agreement(db: AsyncSession, agreement_id: str) -> Optional[Agreement]:
    """Read the agreement, overwriting any copy already in the session's identity map."""
    result = await db.execute(
        select(Agreement)
        .where(Agreement.id == agreement_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _apply(
    agreement: Agreement,
    previous: AgreementStatus,
    target: AgreementStatus,
    cause: TransitionCause,
    now: datetime,
) -> AgreementStatusHistory:
    agreement.status = target.value
    setattr(agreement, MILESTONE_FIELDS[target], ensure_utc(cause.occurred_at) or now)

    if cause.envelope_id:
        agreement.docusign_envelope_id = cause.envelope_id
    if cause.document_url:
        agreement.signed_document_url = cause.document_url

    data = dict(cause.data or {})
    if cause.envelope_id:
        data.setdefault("envelope_id", cause.envelope_id)
    return AgreementStatusHistory(
        agreement_id=agreement.id,
        previous_status=previous.value,
        new_status=target.value,
        note=cause.note,
        actor=cause.actor.value,
        data=data or None,
        created_at=now,
    )


async def transition(
    db: AsyncSession,
    agreement_id: str,
    new_status: AgreementStatus,
    cause: Optional[TransitionCause] = None,
) -> Agreement:
    """Move an agreement to new_status and append a status history entry.

    Re-applying the current status is a successful no-op with no history
    entry. Illegal transitions raise InvalidTransitionError and write
    nothing. A lost optimistic-version race is retried against the fresh
    row; ConcurrentModificationError is raised if it keeps losing.
    """
    cause = cause or TransitionCause()

    for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
        agreement = await load_agreement(db, agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(agreement_id)

        current = AgreementStatus(agreement.status)
        if current == new_status:
            return agreement

        state_machine.validate_transition(current, new_status)

        now = datetime.now(timezone.utc)
        db.add(_apply(agreement, current, new_status, cause, now))
        try:
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.warning(
                "Agreement %s changed concurrently during %s -> %s (attempt %d/%d)",
                agreement_id, current.value, new_status.value, attempt, MAX_TRANSITION_ATTEMPTS,
            )
            continue

        logger.info(
            "Agreement %s: %s -> %s (actor=%s)",
            agreement_id, current.value, new_status.value, cause.actor.value,
        )
        return agreement

    raise ConcurrentModificationError(
        f"Agreement {agreement_id} kept changing while applying {new_status.value}",
        {"agreement_id": agreement_id},
    )
