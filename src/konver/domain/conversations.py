"""Conversation resolution - one conversation per (bot, phone number).

Creation is find-or-create against the store's unique (bot_id, phone_number)
key: concurrent first messages from the same contact all end up on the single
row that won the insert.
"""

from typing import Any

from konver.infra.store import BridgeStore
from konver.observability.logging import get_logger
from konver.observability.redaction import safe_log_context, short_hash
from konver.whatsapp.models import Conversation, Message, SenderKind

logger = get_logger(__name__)


class ConversationResolver:
    def __init__(self, store: BridgeStore) -> None:
        self._store = store

    def resolve(
        self,
        *,
        bot_id: str,
        user_name: str | None,
        phone_number: str,
        platform_user_id: str,
    ) -> Conversation:
        """Return the conversation for (bot_id, phone_number), creating it once.

        Args:
            bot_id: Owning bot.
            user_name: Contact display name; falls back to the phone number.
            phone_number: Contact phone (digits). NEVER logged.
            platform_user_id: Provider user id (JID), kept in metadata.
        """
        conversation, created = self._store.find_or_create_conversation(
            bot_id=bot_id,
            user_name=user_name or phone_number,
            phone_number=phone_number,
            platform_user_id=platform_user_id,
        )
        if created:
            logger.info(
                "conversation created",
                extra={
                    "extra_fields": safe_log_context(
                        bot_id=bot_id,
                        conversation_id=conversation.id,
                        contact_hash=short_hash(phone_number),
                    )
                },
            )
        return conversation

    def record_message(
        self,
        conversation: Conversation,
        *,
        sender: SenderKind,
        content: str,
        metadata: dict[str, Any],
        provider_message_id: str | None = None,
    ) -> Message | None:
        """Append a message; last_message_at moves only after the write.

        Returns None when the provider message id was already recorded.
        """
        message = self._store.append_message(
            conversation_id=conversation.id,
            message_type=sender,
            content=content,
            metadata=metadata,
            provider_message_id=provider_message_id,
        )
        if message is None:
            logger.info(
                "duplicate message ignored",
                extra={
                    "extra_fields": safe_log_context(
                        conversation_id=conversation.id, sender=sender
                    )
                },
            )
        return message
