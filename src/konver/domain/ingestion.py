"""Webhook ingestion - log, dedupe and route provider events.

Order for every delivery:
1. log the raw event (processed = false) before any side effect
2. resolve the owning bot by instance name
3. dispatch by event kind
4. mark the log entry processed, with error text when step 2/3 failed

Only a failure in step 1 escapes ``ingest``; everything after it is contained
in the log entry so the webhook can always be acknowledged.
"""

from dataclasses import dataclass
from typing import Callable, Literal

from konver.infra.store import BridgeStore
from konver.infra.time import from_epoch
from konver.observability.logging import get_logger
from konver.observability.redaction import redact_string, safe_log_context
from konver.whatsapp.errors import UnknownBotForInstance, WhatsAppError
from konver.whatsapp.evolution_adapter import (
    EVENT_CONNECTION_UPDATE,
    EVENT_MESSAGES_UPSERT,
    EVENT_QRCODE_UPDATED,
    extract_connection_update,
    extract_inbound_message,
    extract_qr_code,
    is_group_or_broadcast,
)
from konver.whatsapp.models import Conversation, Message, WebhookEnvelope
from konver.whatsapp.normalizer import normalize_message

from .connection import ConnectionManager
from .conversations import ConversationResolver

logger = get_logger(__name__)

IngestStatus = Literal["processed", "duplicate", "ignored", "unknown_instance", "failed"]

MAX_ERROR_LENGTH = 500

# Called after an inbound message is stored (e.g. to trigger the bot reply)
MessageCallback = Callable[[str, Conversation, Message], None]


@dataclass(frozen=True)
class IngestOutcome:
    status: IngestStatus
    event_id: str | None = None
    error: str | None = None


def _describe_error(exc: Exception) -> str:
    """PII-free error text for the webhook log entry."""
    if isinstance(exc, WhatsAppError):
        text = f"{type(exc).__name__}: {redact_string(str(exc))}"
    else:
        text = type(exc).__name__
    return text[:MAX_ERROR_LENGTH]


def _is_echo(envelope: WebhookEnvelope) -> bool:
    """Messages the bot itself sent, echoed back by the provider."""
    if envelope.event != EVENT_MESSAGES_UPSERT:
        return False
    key = envelope.data.get("key")
    return isinstance(key, dict) and bool(key.get("fromMe"))


class WebhookIngestor:
    def __init__(
        self,
        store: BridgeStore,
        connections: ConnectionManager,
        conversations: ConversationResolver,
        *,
        on_message: MessageCallback | None = None,
    ) -> None:
        self._store = store
        self._connections = connections
        self._conversations = conversations
        self._on_message = on_message

    def ingest(self, envelope: WebhookEnvelope) -> IngestOutcome:
        """Process one provider event.

        Raises:
            Exception: Only if the event could not be logged (caller should
                answer non-2xx so the provider redelivers).
        """
        log_ctx = safe_log_context(event=envelope.event, instance=envelope.instance)

        if _is_echo(envelope):
            logger.info("own message echo ignored", extra={"extra_fields": log_ctx})
            return IngestOutcome(status="ignored")

        record = self._store.log_webhook_event(
            event_type=envelope.event,
            instance_name=envelope.instance,
            payload=envelope.raw,
            event_key=envelope.event_key,
        )
        log_ctx = {**log_ctx, "event_id": record.id}

        if record.duplicate:
            logger.info("duplicate webhook delivery ignored", extra={"extra_fields": log_ctx})
            return IngestOutcome(status="duplicate", event_id=record.id)

        status: IngestStatus
        error: str | None = None
        try:
            bot_id = (
                self._store.find_bot_id_by_instance(envelope.instance)
                if envelope.instance
                else None
            )
            if bot_id is None:
                raise UnknownBotForInstance(envelope.instance)
            status = self._dispatch(bot_id, envelope)
        except UnknownBotForInstance as exc:
            logger.warning("webhook for unknown instance dropped", extra={"extra_fields": log_ctx})
            status, error = "unknown_instance", _describe_error(exc)
        except Exception as exc:
            logger.exception("webhook processing failed", extra={"extra_fields": log_ctx})
            status, error = "failed", _describe_error(exc)

        try:
            self._store.mark_webhook_event_processed(record.id, error_message=error)
        except Exception:
            # Entry stays unprocessed; it remains visible for reprocessing
            logger.exception("could not mark webhook event processed", extra={"extra_fields": log_ctx})

        logger.info(
            "webhook event handled",
            extra={"extra_fields": {**log_ctx, "status": status}},
        )
        return IngestOutcome(status=status, event_id=record.id, error=error)

    def _dispatch(self, bot_id: str, envelope: WebhookEnvelope) -> IngestStatus:
        if envelope.event == EVENT_MESSAGES_UPSERT:
            return self._handle_message(bot_id, envelope)

        if envelope.event == EVENT_CONNECTION_UPDATE:
            reported = extract_connection_update(envelope.data)
            self._connections.apply_reported_state(bot_id, reported)
            return "processed"

        if envelope.event == EVENT_QRCODE_UPDATED:
            qr_code = extract_qr_code(envelope.data)
            if qr_code is None:
                return "ignored"
            self._connections.apply_qr_update(bot_id, qr_code)
            return "processed"

        logger.info(
            "unhandled webhook event",
            extra={"extra_fields": safe_log_context(event=envelope.event, bot_id=bot_id)},
        )
        return "ignored"

    def _handle_message(self, bot_id: str, envelope: WebhookEnvelope) -> IngestStatus:
        inbound = extract_inbound_message(envelope.data)

        if inbound.from_me or is_group_or_broadcast(inbound.remote_jid):
            return "ignored"

        normalized = normalize_message(inbound.message_type, inbound.message)

        conversation = self._conversations.resolve(
            bot_id=bot_id,
            user_name=inbound.push_name,
            phone_number=inbound.phone_number,
            platform_user_id=inbound.remote_jid,
        )

        metadata: dict = {
            "whatsapp_message_id": inbound.message_id,
            "message_type": inbound.message_type,
            "timestamp": inbound.timestamp,
        }
        sent_at = from_epoch(inbound.timestamp)
        if sent_at is not None:
            metadata["sent_at"] = sent_at.isoformat()
        if normalized.media is not None:
            metadata["media"] = normalized.media.to_dict()

        message = self._conversations.record_message(
            conversation,
            sender="user",
            content=normalized.text,
            metadata=metadata,
            provider_message_id=inbound.message_id,
        )
        if message is None:
            return "duplicate"

        if self._on_message is not None:
            try:
                self._on_message(bot_id, conversation, message)
            except Exception:
                logger.exception(
                    "inbound message callback failed",
                    extra={
                        "extra_fields": safe_log_context(
                            bot_id=bot_id, conversation_id=conversation.id
                        )
                    },
                )
        return "processed"
