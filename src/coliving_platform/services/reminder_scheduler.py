"""Automated signing reminders.

Runs once per cadence (daily is enough). For each agreement still awaiting
a signature it classifies urgency from the days left until expiry, applies
the dedup rules, the per-agreement attempt cap and the per-recipient rate
limit, then claims the send with one conditional UPDATE before delivering.

The claim re-checks status, cancellation, the cap and "not already reminded
today" inside the UPDATE's WHERE clause, so concurrent workers (or a manual
reminder racing the scheduler) cannot both send for the same agreement on
the same day.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.domain.enums import AgreementStatus, ReminderChannel, ReminderUrgency
from coliving_platform.domain.errors import AgreementNotFoundError
from coliving_platform.domain.models import Agreement, AgreementReminderLog
from coliving_platform.domain.schemas import ReminderConfig
from coliving_platform.services.agreement_state_machine import (
    REMINDABLE_STATES,
    ensure_utc,
    load_agreement,
    state_machine,
)
from coliving_platform.services.agreement_store import AgreementStore
from coliving_platform.services.notifications import (
    NotificationSender,
    build_owner_escalation_notice,
    build_reminder_message,
    build_reminder_sms,
)
from coliving_platform.services.rate_limiter import RecipientRateLimiter
from coliving_platform.services.reminder_config import ReminderConfigStore

logger = logging.getLogger(__name__)

_REMINDABLE = [s.value for s in REMINDABLE_STATES]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def days_until_expiry(expiration: datetime, now: datetime) -> int:
    """Whole days left, rounded up: 0.2 days left counts as 1."""
    remaining = ensure_utc(expiration) - now
    return math.ceil(remaining.total_seconds() / 86400)


def classify_urgency(days: int, config: ReminderConfig) -> Optional[ReminderUrgency]:
    """Urgency tier for a reminder sent ``days`` before expiry, or None if none is due."""
    if days <= config.final:
        return ReminderUrgency.FINAL
    if days <= config.urgent:
        return ReminderUrgency.URGENT
    if days <= config.initial or days in config.followup:
        return ReminderUrgency.STANDARD
    return None


def reminder_milestone(days: int, config: ReminderConfig) -> Optional[str]:
    """Name of the configured schedule point that ``days`` falls into.

    Recorded on the reminder log for auditing. A window that spans several
    days (e.g. the initial window) is reminded once per day while it lasts.
    """
    urgency = classify_urgency(days, config)
    if urgency is None:
        return None
    if urgency == ReminderUrgency.FINAL:
        return "final"
    if urgency == ReminderUrgency.URGENT:
        return "urgent"
    if days in config.followup:
        return f"followup_{days}"
    return "initial"


def start_of_day(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def within_send_window(now: datetime, config: ReminderConfig) -> bool:
    """Business-hours and weekend restrictions (UTC)."""
    now = now.astimezone(timezone.utc)
    if config.exclude_weekends and now.weekday() >= 5:
        return False
    if config.business_hours_only and not (config.business_hours_start <= now.hour < config.business_hours_end):
        return False
    return True


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ReminderOutcome:
    agreement_id: str
    sent: bool
    urgency: Optional[ReminderUrgency] = None
    reason: Optional[str] = None
    reminders_sent: int = 0
    days_until_expiry: Optional[int] = None


@dataclass
class TickStats:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
            "skip_reasons": dict(self.skip_reasons),
        }


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


async def cancel_reminders(
    db: AsyncSession,
    agreement_id: str,
    reason: str,
    now: Optional[datetime] = None,
) -> bool:
    """Permanently stop reminders for an agreement. Idempotent; the first reason is kept."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        update(Agreement)
        .where(Agreement.id == agreement_id, Agreement.reminders_cancelled_at.is_(None))
        .values(
            reminders_cancelled_at=now,
            reminders_cancel_reason=reason[:255],
            row_version=Agreement.row_version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Reminders cancelled for agreement %s: %s", agreement_id, reason)
        return True
    return False


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ReminderScheduler:
    """Decides which agreements get a reminder and sends it."""

    def __init__(
        self,
        db: AsyncSession,
        config_store: ReminderConfigStore,
        notifier: NotificationSender,
        rate_limiter: RecipientRateLimiter,
        sms_sender: Optional[NotificationSender] = None,
    ):
        self.db = db
        self.config_store = config_store
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.sms_sender = sms_sender
        self.store = AgreementStore(db)

    # -- automated pass ----------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> dict:
        """Run one reminder pass. Returns processed/sent/skipped/failed counts."""
        now = now or datetime.now(timezone.utc)
        config = self.config_store.get()
        stats = TickStats()

        if not config.enabled:
            logger.info("Reminder scheduler disabled; skipping pass")
            return stats.as_dict()

        candidates = await self.store.reminder_candidates(now, config.max_attempts)
        for agreement in candidates:
            stats.processed += 1
            try:
                outcome = await self._remind_scheduled(agreement, config, now)
            except Exception:
                stats.failed += 1
                logger.exception("Reminder pass failed for agreement %s", agreement.id)
                await self.db.rollback()
                continue

            if outcome.sent:
                stats.sent += 1
            elif outcome.reason == "delivery_failed":
                stats.failed += 1
            else:
                stats.skip(outcome.reason or "not_due")

        logger.info("Reminder pass complete: %s", stats.as_dict())
        return stats.as_dict()

    async def _remind_scheduled(self, agreement: Agreement, config: ReminderConfig, now: datetime) -> ReminderOutcome:
        reason = self._ineligible_reason(agreement, config, now)
        if reason:
            return ReminderOutcome(agreement.id, sent=False, reason=reason, reminders_sent=agreement.reminders_sent)

        days = days_until_expiry(agreement.expiration_date, now)
        urgency = classify_urgency(days, config)
        if urgency is None:
            return ReminderOutcome(agreement.id, sent=False, reason="not_due", days_until_expiry=days)

        if not within_send_window(now, config):
            return ReminderOutcome(agreement.id, sent=False, urgency=urgency, reason="outside_send_window")

        milestone = reminder_milestone(days, config)
        return await self._claim_and_send(agreement, config, urgency, milestone, days, now, manual=False)

    # -- manual / escalation -----------------------------------------------

    async def send_manual_reminder(
        self,
        agreement_id: str,
        now: Optional[datetime] = None,
        escalate: bool = False,
    ) -> ReminderOutcome:
        """Operator-triggered reminder sharing the automated counters and dedup.

        Urgency follows the schedule (standard when nothing is due);
        ``escalate`` forces final wording and also notifies the owner.
        """
        now = now or datetime.now(timezone.utc)
        config = self.config_store.get()

        agreement = await load_agreement(self.db, agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(agreement_id)

        if escalate and not config.escalation_enabled:
            return ReminderOutcome(agreement_id, sent=False, reason="escalation_disabled",
                                   reminders_sent=agreement.reminders_sent)

        reason = self._ineligible_reason(agreement, config, now)
        if reason:
            return ReminderOutcome(agreement_id, sent=False, reason=reason, reminders_sent=agreement.reminders_sent)

        days = days_until_expiry(agreement.expiration_date, now) if agreement.expiration_date else None
        if escalate:
            urgency = ReminderUrgency.FINAL
        else:
            urgency = (classify_urgency(days, config) if days is not None else None) or ReminderUrgency.STANDARD

        outcome = await self._claim_and_send(agreement, config, urgency, None, days, now, manual=True)

        if outcome.sent and escalate and agreement.owner_email:
            notice = build_owner_escalation_notice(agreement, days if days is not None else 0)
            try:
                if not await self.notifier.send(agreement.owner_email, notice.subject, notice.body, urgency):
                    logger.warning("Escalation notice to owner failed for agreement %s", agreement_id)
            except Exception:
                logger.exception("Escalation notice to owner raised for agreement %s", agreement_id)
        return outcome

    # -- shared ------------------------------------------------------------

    def _ineligible_reason(self, agreement: Agreement, config: ReminderConfig, now: datetime) -> Optional[str]:
        if AgreementStatus(agreement.status) not in REMINDABLE_STATES:
            return "not_awaiting_signature"
        if state_machine.is_expired(agreement, now):
            return "expired"
        if agreement.reminders_cancelled_at is not None:
            return "reminders_cancelled"
        if (agreement.reminders_sent or 0) >= config.max_attempts:
            return "max_attempts_reached"
        last = ensure_utc(agreement.last_reminder_date)
        if last is not None and last >= start_of_day(now):
            return "already_reminded_today"
        return None

    async def _claim(self, agreement: Agreement, config: ReminderConfig, now: datetime) -> bool:
        """Atomically re-check eligibility and record the send. False if another writer won."""
        result = await self.db.execute(
            update(Agreement)
            .where(
                Agreement.id == agreement.id,
                Agreement.status.in_(_REMINDABLE),
                Agreement.reminders_cancelled_at.is_(None),
                Agreement.reminders_sent < config.max_attempts,
                or_(Agreement.expiration_date.is_(None), Agreement.expiration_date >= now),
                or_(Agreement.last_reminder_date.is_(None), Agreement.last_reminder_date < start_of_day(now)),
            )
            .values(
                reminders_sent=Agreement.reminders_sent + 1,
                last_reminder_date=now,
                row_version=Agreement.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _release_claim(self, agreement_id: str, previous_last: Optional[datetime], now: datetime) -> None:
        """Undo a claim whose delivery failed so the next pass retries."""
        await self.db.execute(
            update(Agreement)
            .where(Agreement.id == agreement_id, Agreement.last_reminder_date == now)
            .values(
                reminders_sent=Agreement.reminders_sent - 1,
                last_reminder_date=previous_last,
                row_version=Agreement.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )

    async def _claim_and_send(
        self,
        agreement: Agreement,
        config: ReminderConfig,
        urgency: ReminderUrgency,
        milestone: Optional[str],
        days: Optional[int],
        now: datetime,
        manual: bool,
    ) -> ReminderOutcome:
        recipient = agreement.prospect_email
        previous_last = agreement.last_reminder_date

        if not self.rate_limiter.try_acquire(recipient, now):
            return ReminderOutcome(agreement.id, sent=False, urgency=urgency, reason="rate_limited",
                                   reminders_sent=agreement.reminders_sent, days_until_expiry=days)

        if not await self._claim(agreement, config, now):
            self.rate_limiter.release(recipient, now)
            current = await load_agreement(self.db, agreement.id)
            return ReminderOutcome(agreement.id, sent=False, urgency=urgency, reason="claimed_elsewhere",
                                   reminders_sent=current.reminders_sent if current else 0, days_until_expiry=days)

        reminder_number = (agreement.reminders_sent or 0) + 1
        message = build_reminder_message(agreement, urgency, days if days is not None else 0)
        error = None
        try:
            delivered = await self.notifier.send(recipient, message.subject, message.body, urgency)
        except Exception as e:
            delivered = False
            error = repr(e)
            logger.exception("Reminder delivery raised for agreement %s", agreement.id)

        if not delivered:
            self.rate_limiter.release(recipient, now)
            await self._release_claim(agreement.id, previous_last, now)
        self.db.add(
            AgreementReminderLog(
                agreement_id=agreement.id,
                channel=ReminderChannel.EMAIL.value,
                urgency=urgency.value,
                milestone=milestone,
                recipient=recipient,
                reminder_number=reminder_number,
                manual=manual,
                success=delivered,
                error=None if delivered else (error or "notification sender reported failure"),
                sent_at=now,
            )
        )
        await self.db.commit()

        current = await load_agreement(self.db, agreement.id)
        reminders_sent = current.reminders_sent if current else reminder_number

        if not delivered:
            logger.warning("Reminder %s for agreement %s failed; will retry next pass", urgency.value, agreement.id)
            return ReminderOutcome(agreement.id, sent=False, urgency=urgency, reason="delivery_failed",
                                   reminders_sent=reminders_sent, days_until_expiry=days)

        logger.info(
            "Reminder #%d (%s%s) sent for agreement %s to %s",
            reminder_number, urgency.value, f", {milestone}" if milestone else "", agreement.id, recipient,
        )
        if urgency == ReminderUrgency.FINAL:
            await self._send_sms(agreement, days if days is not None else 0, reminder_number, manual, now)
        return ReminderOutcome(agreement.id, sent=True, urgency=urgency,
                               reminders_sent=reminders_sent, days_until_expiry=days)

    async def _send_sms(self, agreement: Agreement, days: int, reminder_number: int, manual: bool, now: datetime):
        """Last-chance SMS alongside the final email. Best effort; counters are unaffected."""
        if self.sms_sender is None or not agreement.prospect_phone:
            return
        body = build_reminder_sms(agreement, days)
        error = None
        try:
            delivered = await self.sms_sender.send(agreement.prospect_phone, "", body, ReminderUrgency.FINAL)
        except Exception as e:
            delivered = False
            error = repr(e)
            logger.exception("Reminder SMS raised for agreement %s", agreement.id)
        self.db.add(
            AgreementReminderLog(
                agreement_id=agreement.id,
                channel=ReminderChannel.SMS.value,
                urgency=ReminderUrgency.FINAL.value,
                milestone=None,
                recipient=agreement.prospect_phone,
                reminder_number=reminder_number,
                manual=manual,
                success=delivered,
                error=None if delivered else (error or "sms sender reported failure"),
                sent_at=now,
            )
        )
        await self.db.commit()

    # -- cancellation / stats ----------------------------------------------

    async def cancel_reminders(self, agreement_id: str, reason: str, now: Optional[datetime] = None) -> bool:
        return await cancel_reminders(self.db, agreement_id, reason, now)

    async def reminder_stats(self, days: int = 30, now: Optional[datetime] = None) -> dict:
        """Delivery totals from the reminder log over the last ``days`` days."""
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=days)
        result = await self.db.execute(
            select(
                AgreementReminderLog.urgency,
                AgreementReminderLog.channel,
                AgreementReminderLog.success,
                func.count(AgreementReminderLog.id),
            )
            .where(AgreementReminderLog.sent_at >= since)
            .group_by(AgreementReminderLog.urgency, AgreementReminderLog.channel, AgreementReminderLog.success)
        )

        total = successful = 0
        by_urgency = {u.value: 0 for u in ReminderUrgency}
        by_channel = {c.value: 0 for c in ReminderChannel}
        for urgency, channel, success, count in result.all():
            total += count
            if success:
                successful += count
                by_urgency[urgency] = by_urgency.get(urgency, 0) + count
                by_channel[channel] = by_channel.get(channel, 0) + count

        return {
            "period_days": days,
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": round(successful / total * 100, 1) if total else 0.0,
            "by_urgency": by_urgency,
            "by_channel": by_channel,
        }
