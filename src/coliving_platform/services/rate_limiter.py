"""Per-recipient reminder rate limiter.

Simple in-memory sliding window keyed by recipient address. Caps outbound
reminder volume per address independently of the per-agreement attempt cap.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict

logger = logging.getLogger(__name__)


class RecipientRateLimiter:
    """In-memory sliding-window limiter: at most ``limit`` sends per ``window``."""

    def __init__(self, limit: int, window: timedelta):
        self.limit = limit
        self.window = window
        self._sent: Dict[str, Deque[datetime]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(recipient: str) -> str:
        return recipient.strip().lower()

    def _prune(self, events: Deque[datetime], now: datetime) -> None:
        cutoff = now - self.window
        while events and events[0] <= cutoff:
            events.popleft()

    def try_acquire(self, recipient: str, now: datetime) -> bool:
        """Reserve a send slot for recipient. Returns False if over the window limit."""
        key = self._key(recipient)
        with self._lock:
            events = self._sent.setdefault(key, deque())
            self._prune(events, now)
            if len(events) >= self.limit:
                logger.info("Reminder rate limit hit for %s (%d in window)", key, len(events))
                return False
            events.append(now)
            return True

    def release(self, recipient: str, at: datetime) -> None:
        """Give back a slot reserved at ``at`` whose send never happened."""
        key = self._key(recipient)
        with self._lock:
            events = self._sent.get(key)
            if events is None:
                return
            try:
                events.remove(at)
            except ValueError:
                pass

    def remaining(self, recipient: str, now: datetime) -> int:
        key = self._key(recipient)
        with self._lock:
            events = self._sent.get(key)
            if events is None:
                return self.limit
            self._prune(events, now)
            return max(self.limit - len(events), 0)

    def reset(self) -> None:
        with self._lock:
            self._sent.clear()
