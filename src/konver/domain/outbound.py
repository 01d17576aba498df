"""Outbound text messages through the bot's paired WhatsApp instance."""

from konver.infra.store import BridgeStore
from konver.observability.logging import get_logger
from konver.observability.redaction import safe_log_context, short_hash
from konver.whatsapp.errors import NotPaired, ProviderError
from konver.whatsapp.evolution_adapter import format_phone_number
from konver.whatsapp.models import SendResult
from konver.whatsapp.provider import ProviderClient

from .conversations import ConversationResolver

logger = get_logger(__name__)


class OutboundSender:
    def __init__(
        self,
        store: BridgeStore,
        provider: ProviderClient,
        conversations: ConversationResolver,
    ) -> None:
        self._store = store
        self._provider = provider
        self._conversations = conversations

    def send(self, bot_id: str, phone_number: str, text: str) -> SendResult:
        """Send ``text`` to ``phone_number`` from the bot's WhatsApp.

        Nothing is written and the provider is not called unless the bot is
        connected. Failures come back as ``SendResult(success=False, reason=...)``.
        """
        log_ctx = safe_log_context(
            bot_id=bot_id, to_hash=short_hash(phone_number), text_len=len(text)
        )

        bot = self._store.get_bot(bot_id)
        if bot is None:
            return SendResult(success=False, reason="bot_not_found", error="Bot not found")

        if bot.status != "connected" or not bot.instance_name:
            exc = NotPaired(bot_id, bot.status)
            logger.info("send refused, bot not paired", extra={"extra_fields": log_ctx})
            return SendResult(success=False, reason=exc.reason, error=str(exc))

        if not text.strip():
            return SendResult(success=False, reason="empty_text", error="Message text is empty")

        number = format_phone_number(phone_number)
        if not number:
            return SendResult(
                success=False, reason="invalid_phone_number", error="Invalid phone number"
            )

        try:
            message_id = self._provider.send_text(bot.instance_name, number, text)
        except ProviderError as exc:
            logger.warning(
                "send failed", extra={"extra_fields": {**log_ctx, "error_reason": exc.reason}}
            )
            return SendResult(success=False, reason=exc.reason, error=str(exc))

        self._record_sent(bot_id, number, text, message_id)
        return SendResult(success=True, message_id=message_id)

    def _record_sent(self, bot_id: str, number: str, text: str, message_id: str) -> None:
        """Append the sent text to the contact's conversation, if one exists."""
        try:
            conversation = self._store.find_conversation(bot_id=bot_id, phone_number=number)
            if conversation is None:
                return
            self._conversations.record_message(
                conversation,
                sender="bot",
                content=text,
                metadata={"whatsapp_message_id": message_id, "message_type": "conversation"},
                provider_message_id=message_id,
            )
        except Exception:
            # send result stays successful
            logger.exception(
                "could not record sent message",
                extra={"extra_fields": safe_log_context(bot_id=bot_id)},
            )
