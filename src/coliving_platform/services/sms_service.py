"""SMS delivery via the Aircall Public API.

Used for last-chance signing reminders. Endpoint:
- POST /v1/numbers/{number_id}/messages/send
"""

import asyncio
import base64
import logging
from typing import Optional

import httpx

from coliving_platform.app.config import get_settings
from coliving_platform.domain.enums import ReminderUrgency

logger = logging.getLogger(__name__)

MAX_SEND_ATTEMPTS = 3


class SMSService:
    """Send outbound SMS via Aircall."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.base_url = "https://api.aircall.io/v1"
        self._transport = transport

    def _basic_auth(self) -> str:
        credentials = f"{self.settings.aircall_api_id}:{self.settings.aircall_api_token}"
        return base64.b64encode(credentials.encode()).decode()

    @property
    def configured(self) -> bool:
        return bool(
            self.settings.aircall_api_id
            and self.settings.aircall_api_token
            and self.settings.aircall_number_id
        )

    async def send_sms(self, to_number: str, message: str) -> dict:
        """Send one SMS. Returns a dict with ``ok`` set; never raises."""
        if not self.configured:
            logger.warning("Aircall SMS not configured, message not sent to %s", to_number)
            return {"ok": False, "error": "aircall_not_configured"}

        url = f"{self.base_url}/numbers/{self.settings.aircall_number_id}/messages/send"
        headers = {
            "Authorization": f"Basic {self._basic_auth()}",
            "Accept": "application/json",
        }
        payload = {"to": to_number, "body": message}

        for attempt in range(1, MAX_SEND_ATTEMPTS + 1):
            try:
                async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                    resp = await client.post(url, json=payload, headers=headers)
            except httpx.TimeoutException:
                logger.error("Aircall timed out for %s (attempt %d/%d)", to_number, attempt, MAX_SEND_ATTEMPTS)
                continue
            except httpx.HTTPError as e:
                logger.error("Aircall request error for %s: %s", to_number, e)
                return {"ok": False, "error": str(e)}

            if 200 <= resp.status_code < 300:
                logger.info("SMS sent to %s via Aircall (status=%d)", to_number, resp.status_code)
                return {"ok": True, "status": resp.status_code}

            # Aircall's CDN intermittently answers 403/429; anything else is final
            if resp.status_code in (403, 429) and attempt < MAX_SEND_ATTEMPTS:
                wait = 2 * attempt
                logger.warning(
                    "Aircall %d, retrying in %ds (attempt %d/%d): %s",
                    resp.status_code, wait, attempt, MAX_SEND_ATTEMPTS, resp.text[:300],
                )
                await asyncio.sleep(wait)
                continue

            logger.error("Aircall SMS failed (%d): %s", resp.status_code, resp.text[:300])
            return {"ok": False, "error": f"http_{resp.status_code}", "status": resp.status_code}

        return {"ok": False, "error": "max_retries"}

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        urgency: Optional[ReminderUrgency] = None,
    ) -> bool:
        """NotificationSender interface: SMS has no subject, only the body goes out."""
        result = await self.send_sms(recipient, body)
        return bool(result.get("ok"))
