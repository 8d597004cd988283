"""DocuSign eSignature REST client (envelope creation and document references).

Authenticates with a pre-provisioned OAuth access token from settings.
"""

import base64
import logging
from typing import Optional

import httpx

from coliving_platform.app.config import Settings, get_settings
from coliving_platform.domain.errors import SigningProviderError
from coliving_platform.services.notifications import property_label

logger = logging.getLogger(__name__)

CONNECT_EVENTS = ("sent", "delivered", "completed", "declined", "voided")


class DocuSignClient:
    """Creates envelopes and builds document-retrieval references."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self.settings.docusign_configured

    @property
    def _account_url(self) -> str:
        return f"{self.settings.docusign_base_url.rstrip('/')}/v2.1/accounts/{self.settings.docusign_account_id}"

    def document_reference(self, envelope_id: str) -> str:
        """Downloadable combined-PDF reference for a completed envelope."""
        return f"{self._account_url}/envelopes/{envelope_id}/documents/combined"

    def _envelope_request(self, agreement) -> dict:
        prop = property_label(agreement)
        content = agreement.rendered_content or ""
        request = {
            "emailSubject": f"Lease Agreement - {prop}",
            "emailBlurb": f"Please review and sign your lease agreement for {prop}.",
            "status": "sent",
            "documents": [
                {
                    "documentBase64": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                    "documentId": "1",
                    "fileExtension": "txt",
                    "name": f"Lease Agreement - {prop}",
                }
            ],
            "recipients": {
                "signers": [
                    {
                        "email": agreement.prospect_email,
                        "name": agreement.prospect_name,
                        "recipientId": "1",
                        "routingOrder": "1",
                    }
                ]
            },
        }
        if self.settings.docusign_connect_url:
            request["eventNotification"] = {
                "url": self.settings.docusign_connect_url,
                "loggingEnabled": True,
                "requireAcknowledgment": True,
                "includeHMAC": bool(self.settings.docusign_webhook_secret),
                "envelopeEvents": [{"envelopeEventStatusCode": code} for code in CONNECT_EVENTS],
            }
        return request

    async def create_envelope(self, agreement) -> Optional[str]:
        """Send the agreement for signature. Returns the envelope id.

        Returns None (and logs) when DocuSign is not configured. Raises
        SigningProviderError when DocuSign rejects the request.
        """
        if not self.configured:
            logger.warning("DocuSign not configured, no envelope created for agreement %s", agreement.id)
            return None

        url = f"{self._account_url}/envelopes"
        headers = {
            "Authorization": f"Bearer {self.settings.docusign_access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                resp = await client.post(url, json=self._envelope_request(agreement), headers=headers)
        except httpx.HTTPError as e:
            raise SigningProviderError(f"DocuSign request failed: {e}", {"agreement_id": agreement.id}) from e

        if resp.status_code >= 300:
            try:
                message = resp.json().get("message") or resp.text
            except ValueError:
                message = resp.text
            raise SigningProviderError(
                f"DocuSign envelope creation failed ({resp.status_code}): {message[:300]}",
                {"agreement_id": agreement.id, "status": resp.status_code},
            )

        envelope_id = resp.json().get("envelopeId")
        if not envelope_id:
            raise SigningProviderError("DocuSign response missing envelopeId", {"agreement_id": agreement.id})
        logger.info("DocuSign envelope %s created for agreement %s", envelope_id, agreement.id)
        return envelope_id
