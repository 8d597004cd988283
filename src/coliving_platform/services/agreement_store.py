"""Agreement persistence: records, envelope correlation and status history."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.domain.enums import AgreementStatus, StatusActor
from coliving_platform.domain.models import (
    Agreement,
    AgreementEnvelope,
    AgreementStatusHistory,
    utcnow,
)
from coliving_platform.services.agreement_state_machine import REMINDABLE_STATES, load_agreement

logger = logging.getLogger(__name__)


class AgreementStore:
    """Agreement CRUD plus the append-only status history log."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, agreement_id: str, fresh: bool = False) -> Optional[Agreement]:
        if fresh:
            return await load_agreement(self.db, agreement_id)
        return await self.db.get(Agreement, agreement_id)

    async def get_by_envelope_id(self, envelope_id: str) -> Optional[Agreement]:
        """Resolve a provider envelope id to its agreement.

        The envelope index is authoritative; the agreement's current envelope
        column covers rows written before the index existed.
        """
        result = await self.db.execute(
            select(AgreementEnvelope.agreement_id).where(AgreementEnvelope.envelope_id == envelope_id)
        )
        agreement_id = result.scalar_one_or_none()
        if agreement_id is not None:
            return await load_agreement(self.db, agreement_id)

        result = await self.db.execute(
            select(Agreement)
            .where(Agreement.docusign_envelope_id == envelope_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_agreements(
        self,
        status: Optional[AgreementStatus] = None,
        property_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Agreement]:
        query = select(Agreement)
        if status is not None:
            query = query.where(Agreement.status == status.value)
        if property_id:
            query = query.where(Agreement.property_id == property_id)
        query = query.order_by(Agreement.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def reminder_candidates(self, now: datetime, max_attempts: int) -> list[Agreement]:
        """Agreements awaiting a signature, unexpired, not cancelled and under the attempt cap."""
        result = await self.db.execute(
            select(Agreement)
            .where(
                and_(
                    Agreement.status.in_([s.value for s in REMINDABLE_STATES]),
                    Agreement.expiration_date.is_not(None),
                    Agreement.expiration_date >= now,
                    Agreement.reminders_cancelled_at.is_(None),
                    or_(Agreement.reminders_sent.is_(None), Agreement.reminders_sent < max_attempts),
                )
            )
            .order_by(Agreement.expiration_date)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def add(
        self,
        agreement: Agreement,
        actor: StatusActor = StatusActor.OPERATOR,
        note: Optional[str] = "Agreement created",
    ) -> Agreement:
        """Persist a new agreement together with its creation history entry."""
        self.db.add(agreement)
        await self.db.flush()
        self.db.add(
            AgreementStatusHistory(
                agreement_id=agreement.id,
                previous_status=None,
                new_status=agreement.status,
                note=note,
                actor=actor.value,
                created_at=utcnow(),
            )
        )
        await self.db.commit()
        logger.info("Agreement %s created for %s", agreement.id, agreement.prospect_email)
        return agreement

    async def register_envelope(self, agreement_id: str, envelope_id: str) -> None:
        """Index an envelope id so webhook events can be correlated to the agreement."""
        existing = await self.db.get(AgreementEnvelope, envelope_id)
        if existing is not None:
            if existing.agreement_id != agreement_id:
                logger.error(
                    "Envelope %s already registered to agreement %s, not %s",
                    envelope_id, existing.agreement_id, agreement_id,
                )
            return
        self.db.add(AgreementEnvelope(envelope_id=envelope_id, agreement_id=agreement_id))
        await self.db.commit()

    async def history(self, agreement_id: str) -> list[AgreementStatusHistory]:
        result = await self.db.execute(
            select(AgreementStatusHistory)
            .where(AgreementStatusHistory.agreement_id == agreement_id)
            .order_by(AgreementStatusHistory.created_at, AgreementStatusHistory.id)
        )
        return list(result.scalars().all())
