"""Reminder configuration routes and the scheduler cron endpoint."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.app.dependencies import (
    get_notifier,
    get_rate_limiter,
    get_reminder_config_store,
    get_sms_sender,
)
from coliving_platform.app.http_errors import to_http_exception
from coliving_platform.app.routes.auth import require_operator, verify_internal_token
from coliving_platform.domain.errors import ConfigValidationError
from coliving_platform.domain.schemas import ReminderConfigResponse, ReminderStats
from coliving_platform.infra.database import get_db
from coliving_platform.services.notifications import NotificationSender
from coliving_platform.services.rate_limiter import RecipientRateLimiter
from coliving_platform.services.reminder_config import ReminderConfigStore
from coliving_platform.services.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/agreements/reminders",
    tags=["reminders"],
    dependencies=[Depends(require_operator)],
)

internal_router = APIRouter(
    prefix="/api/internal/scheduler",
    tags=["reminder-scheduler"],
    dependencies=[Depends(verify_internal_token)],
)


def _scheduler(
    db: AsyncSession = Depends(get_db),
    config_store: ReminderConfigStore = Depends(get_reminder_config_store),
    notifier: NotificationSender = Depends(get_notifier),
    rate_limiter: RecipientRateLimiter = Depends(get_rate_limiter),
    sms_sender: NotificationSender = Depends(get_sms_sender),
) -> ReminderScheduler:
    return ReminderScheduler(db, config_store, notifier, rate_limiter, sms_sender=sms_sender)


@router.get("/config", response_model=ReminderConfigResponse)
async def get_reminder_config(
    days: int = 30,
    scheduler: ReminderScheduler = Depends(_scheduler),
):
    """Current schedule plus delivery stats for the last ``days`` days."""
    stats = await scheduler.reminder_stats(days=days)
    return ReminderConfigResponse(config=scheduler.config_store.get(), stats=ReminderStats(**stats))


@router.put("/config", response_model=ReminderConfigResponse)
async def update_reminder_config(
    changes: dict[str, Any] = Body(...),
    config_store: ReminderConfigStore = Depends(get_reminder_config_store),
):
    """Partial update; an out-of-range value rejects the whole change."""
    try:
        config = config_store.update(changes)
    except ConfigValidationError as e:
        raise to_http_exception(e)
    return ReminderConfigResponse(config=config)


@internal_router.post("/reminders-tick")
async def reminders_tick(scheduler: ReminderScheduler = Depends(_scheduler)):
    """Run one reminder pass.

    Called by the external cron in deployments that do not run the
    in-process scheduler loop.
    """
    results = await scheduler.tick()

    logger.info("Reminder scheduler tick: %s", results)
    return {"ok": True, "results": results}
