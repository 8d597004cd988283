"""DocuSign Connect webhook endpoint.

Verifies the HMAC signature on the raw body, decodes the envelope event and
hands it to the WebhookProcessor. Uses a manual async_session() context
manager so the processor controls commit timing; background side effects
open their own sessions from the same factory.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from coliving_platform.app.config import get_settings
from coliving_platform.app.dependencies import get_esign_client, get_notifier, get_side_effects
from coliving_platform.domain.envelope_events import MalformedEnvelopeEvent, parse_envelope_event
from coliving_platform.domain.errors import ConcurrentModificationError, WebhookSignatureError
from coliving_platform.infra.database import async_session
from coliving_platform.services.background_tasks import SideEffectRunner
from coliving_platform.services.esign_client import DocuSignClient
from coliving_platform.services.notifications import NotificationSender
from coliving_platform.services.webhook_processor import WebhookProcessor, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["docusign"])

SIGNATURE_HEADER_PREFIX = "x-docusign-signature-"


def _collect_signatures(request: Request) -> list[str]:
    """All X-DocuSign-Signature-N headers; DocuSign sends one per active HMAC key."""
    return [
        value for name, value in request.headers.items()
        if name.lower().startswith(SIGNATURE_HEADER_PREFIX)
    ]


@router.post("/api/docusign/webhook")
async def docusign_webhook(
    request: Request,
    side_effects: SideEffectRunner = Depends(get_side_effects),
    notifier: NotificationSender = Depends(get_notifier),
    esign_client: DocuSignClient = Depends(get_esign_client),
):
    """Apply a DocuSign Connect envelope event.

    401 on a bad signature. Malformed or unknown payloads are acknowledged
    with 200 so DocuSign does not keep redelivering them. Unexpected failures
    return 500 so the delivery is retried.
    """
    # Read raw body for signature validation
    body_bytes = await request.body()

    try:
        verified = verify_signature(body_bytes, _collect_signatures(request), get_settings().docusign_webhook_secret)
    except WebhookSignatureError as e:
        logger.warning("DocuSign webhook rejected: %s", e)
        raise HTTPException(status_code=401, detail=str(e))
    if not verified:
        logger.debug("DocuSign webhook secret not configured; signature check skipped")

    try:
        event = parse_envelope_event(json.loads(body_bytes))
    except (ValueError, MalformedEnvelopeEvent) as e:
        logger.warning("Malformed DocuSign payload ignored: %s", e)
        return JSONResponse({"ok": True, "action": "ignored_malformed"})

    logger.info("DocuSign webhook: envelope=%s event=%s", event.envelope_id, type(event).__name__)

    async with async_session() as db:
        processor = WebhookProcessor(
            db,
            side_effects=side_effects,
            session_factory=async_session,
            notifier=notifier,
            document_resolver=esign_client.document_reference,
        )
        try:
            outcome = await processor.process(event)
        except ConcurrentModificationError as e:
            logger.error("DocuSign event for envelope %s lost a concurrent update: %s", event.envelope_id, e)
            raise HTTPException(status_code=500, detail="Concurrent modification; retry delivery")
        except Exception:
            logger.exception("DocuSign webhook processing failed for envelope %s", event.envelope_id)
            raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"ok": True, **outcome.as_dict()}


@router.get("/api/docusign/webhook")
async def docusign_webhook_check():
    """Connect configuration check; DocuSign only needs a 200."""
    return {"ok": True, "service": "docusign-webhook"}
