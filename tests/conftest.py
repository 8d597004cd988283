"""Shared test infrastructure for the coliving agreement engine test suite.

Provides:
- session_factory / db_session: async SQLite (file in tmp_path) with all tables created
- notifier: recording NotificationSender capturing outbound messages
- side_effects: SideEffectRunner with no retries or backoff
- make_template: factory for AgreementTemplate rows
- make_agreement: factory for Agreement rows in any status
"""

from datetime import datetime, timedelta, timezone

import pytest

from coliving_platform.domain.enums import AgreementStatus
from coliving_platform.domain.models import Agreement, AgreementEnvelope, AgreementTemplate
from coliving_platform.infra.database import Base, build_engine, create_tables, session_factory_for
from coliving_platform.services.background_tasks import SideEffectRunner

TEMPLATE_CONTENT = (
    "Lease agreement between {{tenant_name}} and the property owner of {{property_name}}. "
    "Room {{room_number}}. Monthly rent: {{monthly_rent}}. Security deposit: {{security_deposit}}. "
    "Lease start date: {{lease_start_date}}."
)

TEMPLATE_VARIABLES = [
    {"name": "tenant_name", "label": "Tenant Name", "type": "text", "required": True},
    {"name": "property_name", "label": "Property Name", "type": "text", "required": False,
     "default_value": "Maple House"},
    {"name": "room_number", "label": "Room Number", "type": "text", "required": False},
    {"name": "monthly_rent", "label": "Monthly Rent", "type": "number", "required": True},
    {"name": "security_deposit", "label": "Security Deposit", "type": "number", "required": False},
    {"name": "lease_start_date", "label": "Lease Start Date", "type": "date", "required": False},
]


# ---------------------------------------------------------------------------
# Database session fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file with all tables created.

    A file (not :memory:) so background side effects opening their own
    sessions see the same database.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'agreements.db'}")
    await create_tables(engine)

    yield session_factory_for(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    """Async session with all tables created; rolled back at teardown."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Notification sender
# ---------------------------------------------------------------------------

class RecordingNotifier:
    """NotificationSender that records every message.

    Set ``fail = True`` to report delivery failure, or ``raises`` to an
    exception instance to make send() raise it.
    """

    def __init__(self):
        self.sent = []
        self.fail = False
        self.raises = None

    async def send(self, recipient, subject, body, urgency=None):
        if self.raises is not None:
            raise self.raises
        self.sent.append({"recipient": recipient, "subject": subject, "body": body, "urgency": urgency})
        return not self.fail

    def to(self, recipient):
        return [m for m in self.sent if m["recipient"] == recipient]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def side_effects():
    return SideEffectRunner(timeout_seconds=5.0, max_retries=0, backoff_seconds=0)


# ---------------------------------------------------------------------------
# Template factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_template(db_session):
    """Factory that creates an AgreementTemplate row.

    Usage:
        template = await make_template(property_id="prop-1")
    """
    async def _factory(
        property_id: str = "prop-1",
        name: str = "Standard Room Lease",
        content: str = TEMPLATE_CONTENT,
        variables: list | None = None,
        is_active: bool = True,
    ) -> AgreementTemplate:
        template = AgreementTemplate(
            property_id=property_id,
            name=name,
            category="Standard Lease",
            content=content,
            variables=list(TEMPLATE_VARIABLES if variables is None else variables),
            is_active=is_active,
            version=1,
        )
        db_session.add(template)
        await db_session.commit()
        return template

    return _factory


# ---------------------------------------------------------------------------
# Agreement factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_agreement(db_session, make_template):
    """Factory that creates an Agreement in the given status.

    Usage:
        agreement = await make_agreement(status=AgreementStatus.SENT, expires_in=timedelta(days=3))

    ``envelope_id`` also writes the envelope index row used by webhook correlation.
    """
    async def _factory(
        status: AgreementStatus = AgreementStatus.SENT,
        expires_in: timedelta | None = timedelta(days=7),
        now: datetime | None = None,
        prospect_name: str = "Jamie Rivera",
        prospect_email: str = "jamie@example.com",
        prospect_phone: str | None = "+15551234567",
        owner_email: str | None = "owner@example.com",
        envelope_id: str | None = None,
        agreement_data: dict | None = None,
        reminders_sent: int = 0,
        last_reminder_date: datetime | None = None,
    ) -> Agreement:
        now = now or datetime.now(timezone.utc)
        template = await make_template()
        agreement = Agreement(
            template_id=template.id,
            template_version=template.version,
            property_id=template.property_id,
            prospect_name=prospect_name,
            prospect_email=prospect_email,
            prospect_phone=prospect_phone,
            owner_name="Pat Owner",
            owner_email=owner_email,
            status=status.value,
            sent_date=now if status != AgreementStatus.DRAFT else None,
            expiration_date=now + expires_in if expires_in is not None else None,
            docusign_envelope_id=envelope_id,
            agreement_data=agreement_data if agreement_data is not None else {
                "tenant_name": prospect_name,
                "property_name": "Maple House",
                "room_number": "4B",
                "monthly_rent": "1250",
                "security_deposit": "1250",
                "lease_start_date": "2026-11-01",
            },
            rendered_content="Lease agreement for Maple House",
            reminders_sent=reminders_sent,
            last_reminder_date=last_reminder_date,
        )
        db_session.add(agreement)
        await db_session.flush()
        if envelope_id:
            db_session.add(AgreementEnvelope(envelope_id=envelope_id, agreement_id=agreement.id))
        await db_session.commit()
        return agreement

    return _factory
