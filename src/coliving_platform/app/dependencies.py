"""Process-wide collaborators shared by routes and the scheduler loop.

Each is exposed through a FastAPI dependency so tests can swap it with
``app.dependency_overrides``.
"""

from datetime import timedelta
from functools import lru_cache

from coliving_platform.app.config import get_settings
from coliving_platform.services.background_tasks import SideEffectRunner, get_side_effect_runner
from coliving_platform.services.email_service import EmailNotificationSender
from coliving_platform.services.esign_client import DocuSignClient
from coliving_platform.services.rate_limiter import RecipientRateLimiter
from coliving_platform.services.reminder_config import ReminderConfigStore
from coliving_platform.services.sms_service import SMSService


@lru_cache
def get_reminder_config_store() -> ReminderConfigStore:
    return ReminderConfigStore()


@lru_cache
def get_rate_limiter() -> RecipientRateLimiter:
    settings = get_settings()
    return RecipientRateLimiter(
        limit=settings.reminder_rate_limit,
        window=timedelta(minutes=settings.reminder_rate_window_minutes),
    )


@lru_cache
def get_notifier() -> EmailNotificationSender:
    return EmailNotificationSender()


@lru_cache
def get_sms_sender() -> SMSService:
    return SMSService()


def get_esign_client() -> DocuSignClient:
    return DocuSignClient()


def get_side_effects() -> SideEffectRunner:
    return get_side_effect_runner()
