"""Provision a tenant record from a completed agreement, exactly once.

Idempotency holds at two levels: the agreement's ``tenant_id`` short-circuits
repeat calls, and the tenant table is unique on ``agreement_id`` so a retry
after a failed write-back reuses the tenant instead of creating a second one.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.domain.enums import AgreementStatus, TenantStatus
from coliving_platform.domain.errors import AgreementNotCompletedError, AgreementNotFoundError
from coliving_platform.domain.models import Agreement, Tenant
from coliving_platform.services.agreement_state_machine import load_agreement

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    tenant: Optional[Tenant]
    created: bool = False
    warnings: list[str] = field(default_factory=list)


class SqlTenantStore:
    """Tenant persistence keyed idempotently on agreement id."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, tenant_id: str) -> Optional[Tenant]:
        return await self.db.get(Tenant, tenant_id)

    async def get_by_agreement_id(self, agreement_id: str) -> Optional[Tenant]:
        result = await self.db.execute(select(Tenant).where(Tenant.agreement_id == agreement_id))
        return result.scalar_one_or_none()

    async def create_tenant(self, fields: dict[str, Any]) -> tuple[Tenant, bool]:
        """Insert a tenant; returns (tenant, created). An existing row for the agreement wins."""
        tenant = Tenant(**fields)
        self.db.add(tenant)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_by_agreement_id(fields["agreement_id"])
            if existing is None:
                raise
            return existing, False
        return tenant, True


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------


def _lookup(data: dict, *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_money_cents(value: Any) -> Optional[int]:
    """'$1,250.00' -> 125000. None when the value is not a number."""
    if value is None:
        return None
    cleaned = re.sub(r"[^0-9.\-]", "", str(value))
    try:
        return int(round(float(cleaned) * 100))
    except ValueError:
        return None


def _parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _add_year(start: datetime) -> datetime:
    try:
        return start.replace(year=start.year + 1)
    except ValueError:  # Feb 29
        return start + timedelta(days=365)


def derive_tenant_fields(agreement: Agreement, now: datetime) -> tuple[dict[str, Any], list[str]]:
    """Map agreement data and prospect contact onto tenant fields, collecting warnings."""
    data = agreement.agreement_data or {}
    warnings: list[str] = []

    name_parts = (agreement.prospect_name or "").strip().split()
    first_name = name_parts[0] if name_parts else "Tenant"
    last_name = " ".join(name_parts[1:]) or None
    if last_name is None:
        warnings.append("Prospect name has no last name; last name left empty")

    email = agreement.prospect_email or _lookup(data, "tenant_email", "tenantEmail")
    phone = agreement.prospect_phone or _lookup(data, "tenant_phone", "tenantPhone")
    if not phone:
        warnings.append("No phone number on agreement; tenant phone left empty")

    raw_start = _lookup(data, "lease_start_date", "leaseStartDate", "move_in_date", "moveInDate")
    lease_start = _parse_date(raw_start) if raw_start is not None else None
    if lease_start is None:
        if raw_start is not None:
            warnings.append(f"Unparseable lease start date {raw_start!r}; defaulted to today")
        else:
            warnings.append("No lease start date; defaulted to today")
        lease_start = now

    raw_end = _lookup(data, "lease_end_date", "leaseEndDate")
    lease_end = _parse_date(raw_end) if raw_end is not None else None
    if lease_end is None:
        warnings.append("No lease end date; defaulted to one year after start")
        lease_end = _add_year(lease_start)

    raw_rent = _lookup(data, "monthly_rent", "monthlyRent")
    rent_cents = parse_money_cents(raw_rent)
    if rent_cents is None:
        warnings.append("Monthly rent missing or invalid; rent left unset")

    raw_deposit = _lookup(data, "security_deposit", "securityDeposit", "deposit")
    deposit_cents = parse_money_cents(raw_deposit)
    if deposit_cents is None:
        warnings.append("Security deposit missing or invalid; deposit left unset")

    room_number = _lookup(data, "room_number", "roomNumber")
    if room_number is None:
        warnings.append("No room number; room assignment must be done manually")

    emergency_contact = None
    contact_name = _lookup(data, "emergency_contact_name", "emergencyContactName")
    contact_phone = _lookup(data, "emergency_contact_phone", "emergencyContactPhone")
    if contact_name and contact_phone:
        emergency_contact = {
            "name": contact_name,
            "phone": contact_phone,
            "relationship": _lookup(data, "emergency_contact_relationship", "emergencyContactRelationship")
            or "Emergency Contact",
            "email": _lookup(data, "emergency_contact_email", "emergencyContactEmail"),
        }

    fields = {
        "agreement_id": agreement.id,
        "property_id": agreement.property_id,
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "phone": phone,
        "status": TenantStatus.ACTIVE.value,
        "room_number": str(room_number) if room_number is not None else None,
        "lease_start_date": lease_start,
        "lease_end_date": lease_end,
        "monthly_rent_cents": rent_cents,
        "deposit_cents": deposit_cents,
        "emergency_contact": emergency_contact,
        "signed_document_url": agreement.signed_document_url,
    }
    return fields, warnings


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TenantIntegrationService:
    """Converts a completed agreement into a tenant record."""

    def __init__(self, db: AsyncSession, tenant_store: Optional[SqlTenantStore] = None):
        self.db = db
        self.tenant_store = tenant_store or SqlTenantStore(db)

    async def process_completion(self, agreement: Agreement) -> CompletionResult:
        """Provision the tenant for a completed agreement.

        Raises AgreementNotCompletedError if the agreement is not completed.
        Everything after the tenant insert is best effort and reported in
        ``warnings``.
        """
        agreement_id = agreement.id
        agreement = await load_agreement(self.db, agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(agreement_id)
        if agreement.status != AgreementStatus.COMPLETED.value:
            raise AgreementNotCompletedError(
                f"Agreement {agreement_id} is {agreement.status}, not completed",
                {"agreement_id": agreement_id, "status": agreement.status},
            )

        if agreement.tenant_id:
            tenant = await self.tenant_store.get(agreement.tenant_id)
            logger.info("Agreement %s already linked to tenant %s", agreement_id, agreement.tenant_id)
            return CompletionResult(tenant=tenant, created=False)

        warnings: list[str] = []
        tenant = await self.tenant_store.get_by_agreement_id(agreement_id)
        created = False
        if tenant is not None:
            logger.warning("Tenant %s exists for agreement %s without write-back; retrying link", tenant.id, agreement_id)
        else:
            fields, warnings = derive_tenant_fields(agreement, datetime.now(timezone.utc))
            tenant, created = await self.tenant_store.create_tenant(fields)
            if created:
                logger.info("Tenant %s created from agreement %s", tenant.id, agreement_id)

        warning = await self._link_tenant(agreement_id, tenant.id)
        if warning:
            warnings.append(warning)

        for w in warnings:
            logger.info("Tenant provisioning warning for agreement %s: %s", agreement_id, w)
        return CompletionResult(tenant=tenant, created=created, warnings=warnings)

    async def _link_tenant(self, agreement_id: str, tenant_id: str) -> Optional[str]:
        """Write tenant_id onto the agreement once. Returns a warning on failure."""
        try:
            result = await self.db.execute(
                update(Agreement)
                .where(Agreement.id == agreement_id, Agreement.tenant_id.is_(None))
                .values(tenant_id=tenant_id, row_version=Agreement.row_version + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to link tenant %s to agreement %s: %s", tenant_id, agreement_id, e)
            return f"Tenant {tenant_id} created but agreement link failed: {e}"

        if result.rowcount == 0:
            current = await load_agreement(self.db, agreement_id)
            if current is not None and current.tenant_id not in (None, tenant_id):
                return f"Agreement already linked to tenant {current.tenant_id}"
        return None
