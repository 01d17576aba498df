"""WhatsApp webhook route - Evolution API callbacks.

The endpoint acknowledges every event that was durably logged, whatever the
outcome of processing it. Only a failure to log answers 5xx, which makes the
provider redeliver.

Security:
- Shared secret in X-Webhook-Secret when EVOLUTION_WEBHOOK_SECRET is set
- Logs contain NO PII (no JIDs, phone numbers or message text)
"""

import hmac
import os
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.concurrency import run_in_threadpool

from konver.api.deps import get_bridge
from konver.observability.correlation import get_correlation_id
from konver.observability.logging import get_logger
from konver.observability.redaction import safe_log_context
from konver.services.bridge import WhatsAppBridge
from konver.whatsapp.errors import InvalidPayloadError
from konver.whatsapp.evolution_adapter import parse_envelope

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)


def _secret_ok(received: str | None) -> bool:
    """Check the shared secret (fail-closed in production when unset)."""
    expected = os.environ.get("EVOLUTION_WEBHOOK_SECRET", "")
    if not expected:
        if os.environ.get("APP_ENV", "development") == "production":
            logger.error("EVOLUTION_WEBHOOK_SECRET not configured - rejecting webhook")
            return False
        logger.warning("EVOLUTION_WEBHOOK_SECRET not set - skipping validation")
        return True
    return bool(received) and hmac.compare_digest(received, expected)


@router.post("/evolution")
async def evolution_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    bridge: WhatsAppBridge = Depends(get_bridge),
):
    """Receive one Evolution API event ``{event, instance, data}``.

    Returns:
        200 {"ok": true, "status": ...} once the event is logged.
        400 if the body is not a JSON object.
        401 if the shared secret does not match.
        500 if the event could not be logged.
    """
    correlation_id = get_correlation_id()

    if not _secret_ok(x_webhook_secret):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=401, content="unauthorized")

    try:
        payload: Any = await request.json()
        envelope = parse_envelope(payload)
    except (ValueError, InvalidPayloadError):
        logger.warning(
            "invalid webhook body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload")

    try:
        outcome = await run_in_threadpool(bridge.handle_webhook, envelope)
    except Exception:
        logger.exception(
            "webhook could not be logged",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, event=envelope.event
                )
            },
        )
        return Response(status_code=500, content="processing failed")

    return {"ok": True, "status": outcome.status}
