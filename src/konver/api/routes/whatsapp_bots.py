"""Bot-facing WhatsApp routes: pairing, status, disconnect, delete, send.

Pairing and status are triggered from the dashboard. If the operator closes
the dialog, the client disconnects; the request is then marked cancelled and
any provider answer still in flight is discarded instead of stored.
"""

import asyncio
import threading
from dataclasses import asdict
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from konver.api.deps import get_bridge
from konver.observability.logging import get_logger
from konver.observability.redaction import safe_log_context
from konver.services.bridge import WhatsAppBridge
from konver.whatsapp.errors import BotNotFound, OperationCancelled

router = APIRouter(prefix="/bots/{bot_id}/whatsapp", tags=["whatsapp"])

logger = get_logger(__name__)

DISCONNECT_POLL_SECONDS = 0.5

# Non-standard "client closed request"
STATUS_CLIENT_CLOSED = 499


class SendMessageRequest(BaseModel):
    phone_number: str = Field(min_length=1, max_length=32)
    text: str = Field(min_length=1, max_length=4096)


async def _run_cancellable(
    request: Request, func: Callable[..., Any], bot_id: str
) -> Any:
    """Run ``func(bot_id, cancel=event)`` on the threadpool, watching the client.

    Raises:
        OperationCancelled: If the client went away before the result was stored.
    """
    cancel = threading.Event()
    work = asyncio.ensure_future(run_in_threadpool(func, bot_id, cancel=cancel))

    while not work.done():
        await asyncio.wait({work}, timeout=DISCONNECT_POLL_SECONDS)
        if not work.done() and await request.is_disconnected():
            cancel.set()
            logger.info(
                "client disconnected, discarding provider result",
                extra={"extra_fields": safe_log_context(bot_id=bot_id)},
            )
            break

    # In-flight provider calls are allowed to finish
    return await work


@router.post("/connect")
async def connect(request: Request, bot_id: str, bridge: WhatsAppBridge = Depends(get_bridge)):
    """Start pairing and return the QR code to scan."""
    try:
        result = await _run_cancellable(request, bridge.connect, bot_id)
    except BotNotFound:
        raise HTTPException(status_code=404, detail="Bot not found")
    except OperationCancelled:
        return Response(status_code=STATUS_CLIENT_CLOSED)

    return {"ok": result.success, **asdict(result)}


@router.get("/status")
async def status(request: Request, bot_id: str, bridge: WhatsAppBridge = Depends(get_bridge)):
    """Reconcile with the provider and return the connection status.

    Never fails for provider or storage trouble: reports ``disconnected``.
    """
    try:
        report = await _run_cancellable(request, bridge.status, bot_id)
    except OperationCancelled:
        return Response(status_code=STATUS_CLIENT_CLOSED)
    except Exception:
        logger.exception(
            "status reconciliation failed",
            extra={"extra_fields": safe_log_context(bot_id=bot_id)},
        )
        return {"status": "disconnected"}

    return {k: v for k, v in asdict(report).items() if v is not None}


@router.post("/disconnect")
def disconnect(bot_id: str, bridge: WhatsAppBridge = Depends(get_bridge)) -> dict:
    try:
        result = bridge.disconnect(bot_id)
    except BotNotFound:
        raise HTTPException(status_code=404, detail="Bot not found")
    return {"ok": result.success, **asdict(result)}


@router.delete("")
def delete_instance(bot_id: str, bridge: WhatsAppBridge = Depends(get_bridge)) -> dict:
    try:
        result = bridge.delete(bot_id)
    except BotNotFound:
        raise HTTPException(status_code=404, detail="Bot not found")
    return {"ok": result.success, **asdict(result)}


@router.post("/messages")
def send_message(
    bot_id: str, req: SendMessageRequest, bridge: WhatsAppBridge = Depends(get_bridge)
) -> dict:
    """Send a text message from the bot's WhatsApp number."""
    result = bridge.send(bot_id, req.phone_number, req.text)
    if result.reason == "bot_not_found":
        raise HTTPException(status_code=404, detail="Bot not found")
    return {"ok": result.success, **asdict(result)}
