"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./coliving_platform.db"

    # Public URL of the web app (signing links)
    app_url: str = "http://localhost:3000"

    # Operator API / cron auth
    operator_api_token: str = "change-me"
    internal_token: str = "change-me-internal"

    # DocuSign
    docusign_base_url: str = "https://demo.docusign.net/restapi"
    docusign_account_id: str = ""
    docusign_access_token: str = ""
    docusign_webhook_secret: str = ""
    # Connect callback; empty means the account-level Connect configuration is used
    docusign_connect_url: str = ""

    # SendGrid
    sendgrid_api_key: str = ""
    notification_from_email: str = ""
    notification_from_name: str = "Coliving Leasing"

    # Aircall (final-tier SMS reminders)
    aircall_api_id: str = ""
    aircall_api_token: str = ""
    aircall_number_id: str = ""

    # Reminder scheduler
    reminder_interval_hours: float = 24
    reminder_rate_limit: int = 3
    reminder_rate_window_minutes: int = 60

    # Background side effects (owner notices, reminder cancellation)
    side_effect_timeout_seconds: float = 5.0
    side_effect_max_retries: int = 2

    # Agreements
    default_expiration_days: int = 7

    # CORS / general
    cors_origins: str = "http://localhost:3000"
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def docusign_configured(self) -> bool:
        return bool(self.docusign_account_id and self.docusign_access_token)


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
