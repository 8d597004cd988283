"""Bounded fire-and-forget side effects.

Webhook handling must return before slow downstream work (owner notices,
reminder cancellation) finishes. Work is scheduled as an asyncio task, each
attempt is capped by a timeout, failures are retried a few times with a
linear backoff, and every outcome is logged.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

SideEffectFactory = Callable[[], Awaitable[object]]


class SideEffectRunner:
    """Runs named side effects in the background with timeout and retry."""

    def __init__(self, timeout_seconds: float = 5.0, max_retries: int = 2, backoff_seconds: float = 0.5):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        # Hold references to background tasks so they don't get garbage collected
        self._tasks: set[asyncio.Task] = set()

    def submit(self, name: str, factory: SideEffectFactory, **context) -> asyncio.Task:
        """Schedule ``factory()`` in the background and return its task.

        ``factory`` is called once per attempt, so it must build a fresh
        awaitable each time.
        """
        task = asyncio.create_task(self._run(name, factory, context), name=f"side-effect:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: SideEffectFactory, context: dict) -> bool:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
                if attempt > 1:
                    logger.info("side_effect=%s status=ok attempt=%d %s", name, attempt, _fmt(context))
                return True
            except asyncio.TimeoutError:
                logger.warning(
                    "side_effect=%s status=timeout attempt=%d/%d timeout=%.1fs %s",
                    name, attempt, attempts, self.timeout_seconds, _fmt(context),
                )
            except Exception as e:
                logger.warning(
                    "side_effect=%s status=error attempt=%d/%d error=%r %s",
                    name, attempt, attempts, e, _fmt(context),
                )
            if attempt < attempts:
                await asyncio.sleep(self.backoff_seconds * attempt)

        logger.error("side_effect=%s status=gave_up attempts=%d %s", name, attempts, _fmt(context))
        return False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all outstanding side effects (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _fmt(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items())


_runner: Optional[SideEffectRunner] = None


def get_side_effect_runner() -> SideEffectRunner:
    """Process-wide runner configured from settings."""
    global _runner
    if _runner is None:
        from coliving_platform.app.config import get_settings

        settings = get_settings()
        _runner = SideEffectRunner(
            timeout_seconds=settings.side_effect_timeout_seconds,
            max_retries=settings.side_effect_max_retries,
        )
    return _runner
