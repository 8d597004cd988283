"""Tests for reminder urgency classification and the scheduler pass."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from coliving_platform.domain.enums import AgreementStatus, ReminderChannel, ReminderUrgency
from coliving_platform.domain.errors import AgreementNotFoundError
from coliving_platform.domain.models import AgreementReminderLog
from coliving_platform.domain.schemas import ReminderConfig
from coliving_platform.services.agreement_store import AgreementStore
from coliving_platform.services.rate_limiter import RecipientRateLimiter
from coliving_platform.services.reminder_config import ReminderConfigStore
from coliving_platform.services.reminder_scheduler import (
    ReminderScheduler,
    cancel_reminders,
    classify_urgency,
    days_until_expiry,
    reminder_milestone,
    within_send_window,
)

from conftest import RecordingNotifier

S = AgreementStatus
U = ReminderUrgency
NOW = datetime(2026, 10, 14, 15, 0, tzinfo=timezone.utc)  # a Wednesday


# ===========================================================================
# Tier 1: classification, no database
# ===========================================================================


class TestClassifyUrgency:
    """Defaults: initial=5, followup=(20, 10), urgent=3, final=1."""

    CONFIG = ReminderConfig()

    @pytest.mark.parametrize("days,expected", [
        (0, U.FINAL),
        (1, U.FINAL),
        (2, U.URGENT),
        (3, U.URGENT),
        (4, U.STANDARD),
        (5, U.STANDARD),
        (6, None),
        (9, None),
        (10, U.STANDARD),
        (15, None),
        (20, U.STANDARD),
        (21, None),
    ])
    def test_default_schedule(self, days, expected):
        assert classify_urgency(days, self.CONFIG) == expected

    @pytest.mark.parametrize("config", [
        ReminderConfig(),
        ReminderConfig(initial=10, urgent=5, final=2, followup=(30, 14)),
        ReminderConfig(initial=2, urgent=7, final=3),
    ])
    def test_urgency_never_decreases_as_expiry_nears(self, config):
        ranks = [
            classify_urgency(days, config).rank
            for days in range(60, -1, -1)
            if classify_urgency(days, config) is not None
        ]
        assert ranks == sorted(ranks)

    def test_every_day_inside_initial_window_is_due(self):
        config = ReminderConfig(initial=7)
        assert all(classify_urgency(d, config) is not None for d in range(0, 8))

    @pytest.mark.parametrize("days,milestone", [
        (1, "final"),
        (3, "urgent"),
        (2, "urgent"),
        (5, "initial"),
        (4, "initial"),
        (10, "followup_10"),
        (20, "followup_20"),
        (12, None),
    ])
    def test_milestones(self, days, milestone):
        assert reminder_milestone(days, ReminderConfig()) == milestone


class TestDaysUntilExpiry:

    @pytest.mark.parametrize("remaining,expected", [
        (timedelta(days=1), 1),
        (timedelta(hours=5), 1),
        (timedelta(hours=25), 2),
        (timedelta(days=7), 7),
        (timedelta(0), 0),
    ])
    def test_rounds_up(self, remaining, expected):
        assert days_until_expiry(NOW + remaining, NOW) == expected

    def test_naive_expiry(self):
        naive = (NOW + timedelta(days=2)).replace(tzinfo=None)
        assert days_until_expiry(naive, NOW) == 2


class TestSendWindow:

    def test_unrestricted_by_default(self):
        assert within_send_window(datetime(2026, 10, 18, 3, 0, tzinfo=timezone.utc), ReminderConfig())

    def test_business_hours(self):
        config = ReminderConfig(business_hours_only=True)
        assert within_send_window(NOW, config)
        assert not within_send_window(NOW.replace(hour=20), config)

    def test_weekends_excluded(self):
        config = ReminderConfig(exclude_weekends=True)
        saturday = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
        assert not within_send_window(saturday, config)
        assert within_send_window(NOW, config)


# ===========================================================================
# Tier 2: scheduler against the database
# ===========================================================================


@pytest.fixture
def config_store():
    return ReminderConfigStore()


@pytest.fixture
def rate_limiter():
    return RecipientRateLimiter(limit=3, window=timedelta(hours=1))


@pytest.fixture
def sms_sender():
    return RecordingNotifier()


@pytest.fixture
def scheduler(db_session, config_store, notifier, rate_limiter, sms_sender):
    return ReminderScheduler(db_session, config_store, notifier, rate_limiter, sms_sender=sms_sender)


async def _fresh(db_session, agreement_id):
    return await AgreementStore(db_session).get(agreement_id, fresh=True)


async def _logs(db_session, agreement_id, channel=ReminderChannel.EMAIL):
    result = await db_session.execute(
        select(AgreementReminderLog)
        .where(AgreementReminderLog.agreement_id == agreement_id, AgreementReminderLog.channel == channel.value)
        .order_by(AgreementReminderLog.sent_at)
    )
    return list(result.scalars().all())


class TestTick:

    @pytest.mark.asyncio
    async def test_final_reminder_sent(self, scheduler, db_session, notifier, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=1))

        stats = await scheduler.tick(NOW)

        assert stats["sent"] == 1
        fresh = await _fresh(db_session, agreement.id)
        assert fresh.reminders_sent == 1
        assert fresh.last_reminder_date == NOW
        assert notifier.sent[0]["urgency"] == U.FINAL
        assert notifier.sent[0]["subject"].startswith("URGENT: Final Reminder")
        logs = await _logs(db_session, agreement.id)
        assert [(log.urgency, log.milestone, log.success) for log in logs] == [("final", "final", True)]

    @pytest.mark.asyncio
    async def test_final_reminder_also_texts(self, scheduler, db_session, sms_sender, make_agreement):
        agreement = await make_agreement(status=S.VIEWED, now=NOW, expires_in=timedelta(hours=20))

        await scheduler.tick(NOW)

        assert [m["recipient"] for m in sms_sender.sent] == ["+15551234567"]
        assert len(await _logs(db_session, agreement.id, ReminderChannel.SMS)) == 1
        assert (await _fresh(db_session, agreement.id)).reminders_sent == 1

    @pytest.mark.asyncio
    async def test_standard_reminder_has_no_sms(self, scheduler, sms_sender, notifier, make_agreement):
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=5))

        await scheduler.tick(NOW)

        assert notifier.sent[0]["urgency"] == U.STANDARD
        assert sms_sender.sent == []

    @pytest.mark.asyncio
    async def test_second_pass_same_day_sends_nothing(self, scheduler, db_session, notifier, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2))

        await scheduler.tick(NOW)
        stats = await scheduler.tick(NOW + timedelta(hours=6))

        assert stats["sent"] == 0
        assert stats["skip_reasons"] == {"already_reminded_today": 1}
        assert len(notifier.sent) == 1
        assert (await _fresh(db_session, agreement.id)).reminders_sent == 1

    @pytest.mark.asyncio
    async def test_reminded_every_day_while_due(self, scheduler, db_session, notifier, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=5))

        day = [await scheduler.tick(NOW + timedelta(days=n)) for n in range(5)]

        assert [d["sent"] for d in day] == [1, 1, 1, 1, 1]
        assert [m["urgency"] for m in notifier.sent] == [U.STANDARD, U.STANDARD, U.URGENT, U.URGENT, U.FINAL]
        assert (await _fresh(db_session, agreement.id)).reminders_sent == 5

        logs = await _logs(db_session, agreement.id)
        assert [log.milestone for log in logs] == ["initial", "initial", "urgent", "urgent", "final"]

    @pytest.mark.asyncio
    async def test_daily_reminders_stop_at_cap(self, scheduler, config_store, db_session, notifier, make_agreement):
        config_store.update({"max_attempts": 3})
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=5))

        day = [await scheduler.tick(NOW + timedelta(days=n)) for n in range(5)]

        assert [d["sent"] for d in day] == [1, 1, 1, 0, 0]
        assert len(notifier.sent) == 3
        assert (await _fresh(db_session, agreement.id)).reminders_sent == 3

    @pytest.mark.asyncio
    async def test_not_due(self, scheduler, notifier, make_agreement):
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=15))

        stats = await scheduler.tick(NOW)

        assert stats["skip_reasons"] == {"not_due": 1}
        assert notifier.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [S.DRAFT, S.SIGNED, S.COMPLETED, S.CANCELLED])
    async def test_only_agreements_awaiting_signature(self, scheduler, notifier, make_agreement, status):
        await make_agreement(status=status, now=NOW, expires_in=timedelta(days=1))

        stats = await scheduler.tick(NOW)

        assert stats["processed"] == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_expired_agreements_skipped(self, scheduler, notifier, make_agreement):
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(hours=-1))

        stats = await scheduler.tick(NOW)

        assert stats["processed"] == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_attempt_cap(self, scheduler, config_store, notifier, make_agreement):
        config_store.update({"max_attempts": 2})
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=1), reminders_sent=2)

        stats = await scheduler.tick(NOW)

        assert stats["sent"] == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_disabled(self, scheduler, config_store, notifier, make_agreement):
        config_store.update({"enabled": False})
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=1))

        stats = await scheduler.tick(NOW)

        assert stats == {"processed": 0, "sent": 0, "skipped": 0, "failed": 0, "skip_reasons": {}}

    @pytest.mark.asyncio
    async def test_outside_business_hours(self, scheduler, config_store, db_session, make_agreement):
        config_store.update({"business_hours_only": True})
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=1))

        stats = await scheduler.tick(NOW.replace(hour=22))

        assert stats["skip_reasons"] == {"outside_send_window": 1}
        assert (await _fresh(db_session, agreement.id)).reminders_sent == 0


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_recipient_over_limit_skipped_then_retried(self, db_session, config_store, notifier, make_agreement):
        limiter = RecipientRateLimiter(limit=2, window=timedelta(hours=1))
        scheduler = ReminderScheduler(db_session, config_store, notifier, limiter)
        for _ in range(3):
            await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2), prospect_email="busy@example.com")

        first = await scheduler.tick(NOW)
        later = await scheduler.tick(NOW + timedelta(hours=2))

        assert first["sent"] == 2
        assert first["skip_reasons"] == {"rate_limited": 1}
        assert later["sent"] == 1
        assert len(notifier.to("busy@example.com")) == 3

    @pytest.mark.asyncio
    async def test_limit_is_per_recipient(self, db_session, config_store, notifier, make_agreement):
        limiter = RecipientRateLimiter(limit=1, window=timedelta(hours=1))
        scheduler = ReminderScheduler(db_session, config_store, notifier, limiter)
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2), prospect_email="a@example.com")
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2), prospect_email="b@example.com")

        stats = await scheduler.tick(NOW)

        assert stats["sent"] == 2


class TestDeliveryFailure:

    @pytest.mark.asyncio
    async def test_failed_send_releases_claim(self, scheduler, db_session, notifier, rate_limiter, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2))
        notifier.fail = True

        stats = await scheduler.tick(NOW)

        assert stats["failed"] == 1
        fresh = await _fresh(db_session, agreement.id)
        assert fresh.reminders_sent == 0
        assert fresh.last_reminder_date is None
        assert rate_limiter.remaining("jamie@example.com", NOW) == 3
        logs = await _logs(db_session, agreement.id)
        assert len(logs) == 1 and logs[0].success is False

        notifier.fail = False
        retry = await scheduler.tick(NOW + timedelta(hours=1))

        assert retry["sent"] == 1
        assert (await _fresh(db_session, agreement.id)).reminders_sent == 1

    @pytest.mark.asyncio
    async def test_raising_sender_counts_as_failure(self, scheduler, notifier, make_agreement):
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2))
        notifier.raises = ConnectionError("sendgrid unreachable")

        stats = await scheduler.tick(NOW)

        assert stats["failed"] == 1
        assert stats["sent"] == 0


class TestConcurrentWorkers:

    @pytest.mark.asyncio
    async def test_stale_worker_loses_claim(self, session_factory, config_store, notifier, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2))
        limiter = RecipientRateLimiter(limit=10, window=timedelta(hours=1))

        async with session_factory() as session_a, session_factory() as session_b:
            worker_a = ReminderScheduler(session_a, config_store, notifier, limiter)
            worker_b = ReminderScheduler(session_b, config_store, notifier, limiter)
            # B read the agreement before A sent
            stale = (await AgreementStore(session_b).reminder_candidates(NOW, 5))[0]

            await worker_a.tick(NOW)
            outcome = await worker_b._claim_and_send(
                stale, config_store.get(), U.URGENT, "urgent", 2, NOW, manual=False
            )

            assert outcome.sent is False
            assert outcome.reason == "claimed_elsewhere"
            assert len(notifier.sent) == 1
            assert (await AgreementStore(session_b).get(agreement.id, fresh=True)).reminders_sent == 1


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_reminders_never_sent(self, scheduler, db_session, notifier, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=1))

        assert await cancel_reminders(db_session, agreement.id, "Agreement declined by prospect", now=NOW) is True
        stats = await scheduler.tick(NOW)

        assert stats["processed"] == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_first_reason_kept(self, scheduler, db_session, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW)

        await scheduler.cancel_reminders(agreement.id, "Agreement completed and signed")
        again = await scheduler.cancel_reminders(agreement.id, "Agreement voided")

        assert again is False
        fresh = await _fresh(db_session, agreement.id)
        assert fresh.reminders_cancel_reason == "Agreement completed and signed"


class TestManualReminders:

    @pytest.mark.asyncio
    async def test_manual_shares_counters(self, scheduler, db_session, notifier, make_agreement):
        agreement = await make_agreement(status=S.VIEWED, now=NOW, expires_in=timedelta(days=4))

        outcome = await scheduler.send_manual_reminder(agreement.id, now=NOW)
        stats = await scheduler.tick(NOW + timedelta(hours=1))

        assert outcome.sent is True
        assert outcome.urgency == U.STANDARD
        assert outcome.reminders_sent == 1
        assert stats["skip_reasons"] == {"already_reminded_today": 1}
        logs = await _logs(db_session, agreement.id)
        assert logs[0].manual is True
        assert logs[0].milestone is None

    @pytest.mark.asyncio
    async def test_manual_when_nothing_due_is_standard(self, scheduler, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=15))

        outcome = await scheduler.send_manual_reminder(agreement.id, now=NOW)

        assert outcome.sent is True
        assert outcome.urgency == U.STANDARD

    @pytest.mark.asyncio
    async def test_manual_after_scheduled_same_day(self, scheduler, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=2))

        await scheduler.tick(NOW)
        outcome = await scheduler.send_manual_reminder(agreement.id, now=NOW + timedelta(hours=2))

        assert outcome.sent is False
        assert outcome.reason == "already_reminded_today"

    @pytest.mark.asyncio
    async def test_manual_for_completed_agreement(self, scheduler, make_agreement):
        agreement = await make_agreement(status=S.COMPLETED, now=NOW)

        outcome = await scheduler.send_manual_reminder(agreement.id, now=NOW)

        assert outcome.reason == "not_awaiting_signature"

    @pytest.mark.asyncio
    async def test_manual_unknown_agreement(self, scheduler):
        with pytest.raises(AgreementNotFoundError):
            await scheduler.send_manual_reminder("missing", now=NOW)

    @pytest.mark.asyncio
    async def test_escalation_notifies_owner(self, scheduler, notifier, sms_sender, make_agreement):
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=6))

        outcome = await scheduler.send_manual_reminder(agreement.id, now=NOW, escalate=True)

        assert outcome.sent is True
        assert outcome.urgency == U.FINAL
        assert len(notifier.to("jamie@example.com")) == 1
        assert len(notifier.to("owner@example.com")) == 1
        assert len(sms_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_escalation_disabled(self, scheduler, config_store, notifier, make_agreement):
        config_store.update({"escalation_enabled": False})
        agreement = await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=6))

        outcome = await scheduler.send_manual_reminder(agreement.id, now=NOW, escalate=True)

        assert outcome.reason == "escalation_disabled"
        assert notifier.sent == []


class TestReminderStats:

    @pytest.mark.asyncio
    async def test_totals(self, scheduler, notifier, make_agreement):
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=1), prospect_phone=None)
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=3), prospect_email="b@example.com")
        await scheduler.tick(NOW)
        notifier.fail = True
        await make_agreement(status=S.SENT, now=NOW, expires_in=timedelta(days=5), prospect_email="c@example.com")
        await scheduler.tick(NOW)

        stats = await scheduler.reminder_stats(days=30, now=NOW)

        assert stats["total"] == 3
        assert stats["successful"] == 2
        assert stats["failed"] == 1
        assert stats["success_rate"] == 66.7
        assert stats["by_urgency"] == {"standard": 0, "urgent": 1, "final": 1}
        assert stats["by_channel"] == {"email": 2, "sms": 0}
