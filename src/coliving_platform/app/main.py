"""FastAPI application entry point for the coliving agreement API."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coliving_platform.app.config import get_settings
from coliving_platform.app.dependencies import (
    get_notifier,
    get_rate_limiter,
    get_reminder_config_store,
    get_side_effects,
    get_sms_sender,
)
from coliving_platform.infra.database import async_session, init_db
from coliving_platform.services.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


async def reminder_scheduler_loop():
    """Run a reminder pass every ``reminder_interval_hours``."""
    interval = get_settings().reminder_interval_hours * 3600
    while True:
        try:
            async with async_session() as db:
                scheduler = ReminderScheduler(
                    db,
                    get_reminder_config_store(),
                    get_notifier(),
                    get_rate_limiter(),
                    sms_sender=get_sms_sender(),
                )
                results = await scheduler.tick()
                if results["sent"] or results["failed"]:
                    logger.info("Reminder scheduler: %s", results)
        except Exception as e:
            logger.error("Reminder scheduler error: %s", e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the reminder loop."""
    await init_db()

    scheduler_task = asyncio.create_task(reminder_scheduler_loop())
    yield
    scheduler_task.cancel()
    with suppress(asyncio.CancelledError):
        await scheduler_task
    await get_side_effects().drain()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Coliving Platform Agreements API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode for LAN/IP access
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
# Fixed /api/agreements/* prefixes must be registered before /api/agreements/{agreement_id}
from coliving_platform.app.routes.agreement_templates import router as agreement_templates_router
from coliving_platform.app.routes.reminders import router as reminders_router, internal_router as reminders_tick_router
from coliving_platform.app.routes.agreements import router as agreements_router
from coliving_platform.app.routes.docusign_webhook import router as docusign_webhook_router

app.include_router(agreement_templates_router)
app.include_router(reminders_router)
app.include_router(reminders_tick_router)
app.include_router(agreements_router)
app.include_router(docusign_webhook_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "coliving-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "coliving_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
