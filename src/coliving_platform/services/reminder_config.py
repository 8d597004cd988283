"""Owner of the runtime-mutable reminder schedule.

The scheduler holds a reference to a ReminderConfigStore and reads the
current ReminderConfig at the start of each pass. Updates are validated as a
whole and swapped in under a lock, so readers never see a half-applied change.
"""

import logging
import threading
from typing import Any

from pydantic import ValidationError

from coliving_platform.domain.errors import ConfigValidationError
from coliving_platform.domain.schemas import ReminderConfig

logger = logging.getLogger(__name__)

_RANGE_MESSAGES = {
    "initial": "Initial reminder must be between 1 and 30 days before expiry",
    "followup": "Follow-up reminder schedules must be between 1 and 60 days",
    "urgent": "Urgent reminder must be between 1 and 14 days before expiry",
    "final": "Final reminder must be between 1 and 7 days before expiry",
    "max_attempts": "Maximum attempts must be between 1 and 10",
    "business_hours_start": "Business hours start must be between 0 and 23",
    "business_hours_end": "Business hours end must be between 1 and 24",
}


def _describe(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        field = str(item["loc"][0]) if item.get("loc") else ""
        message = _RANGE_MESSAGES.get(field) or f"{field}: {item['msg']}"
        if message not in messages:
            messages.append(message)
    return "; ".join(messages)


class ReminderConfigStore:
    """Holds the current ReminderConfig; replaced atomically via update()."""

    def __init__(self, initial: ReminderConfig | None = None):
        self._config = initial or ReminderConfig()
        self._lock = threading.Lock()

    def get(self) -> ReminderConfig:
        return self._config

    def update(self, changes: dict[str, Any]) -> ReminderConfig:
        """Merge changes over the current config, validate, then swap.

        Raises ConfigValidationError and leaves the current config untouched
        if any value is out of range.
        """
        with self._lock:
            merged = self._config.model_dump()
            merged.update(changes)
            try:
                candidate = ReminderConfig.model_validate(merged)
            except ValidationError as e:
                raise ConfigValidationError(_describe(e)) from e
            if candidate.business_hours_start >= candidate.business_hours_end:
                raise ConfigValidationError("Business hours start must be before business hours end")
            self._config = candidate

        logger.info("Reminder config updated: %s", candidate.model_dump())
        return candidate

    def reset(self) -> ReminderConfig:
        with self._lock:
            self._config = ReminderConfig()
        return self._config
