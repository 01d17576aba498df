"""Persistence boundary of the WhatsApp bridge.

``BridgeStore`` is what the domain layer depends on; ``PostgresStore`` is the
production implementation on top of the raw-SQL repositories. Each method is
its own short transaction, except ``bot_session`` which keeps the bot row
locked for the whole ``with`` block.
"""

from contextlib import contextmanager
from typing import Any, Iterator, Protocol

from psycopg2.extensions import cursor as PgCursor

from konver.whatsapp.errors import BotNotFound
from konver.whatsapp.models import BotInstance, Conversation, Message, WebhookEventRecord

from .db import txn
from .repositories import (
    bots_repository,
    conversations_repository,
    messages_repository,
    webhook_events_repository,
)
from .time import utc_now


class BotSession:
    """A locked bot record. ``save`` writes inside the locking transaction."""

    def __init__(self, bot: BotInstance, cur: PgCursor | None = None) -> None:
        self.bot = bot
        self._cur = cur

    def save(self, bot: BotInstance) -> None:
        if bot.bot_id != self.bot.bot_id:
            raise ValueError("cannot save a different bot through this session")
        if self._cur is not None:
            bots_repository.save_bot(self._cur, bot)
        self.bot = bot


class BridgeStore(Protocol):
    def bot_session(self, bot_id: str) -> Any:
        """Context manager yielding a BotSession with the bot locked.

        Changes saved through the session are committed when the block exits
        normally and discarded if it raises. Raises BotNotFound.
        """
        ...

    def get_bot(self, bot_id: str) -> BotInstance | None: ...

    def find_bot_id_by_instance(self, instance_name: str) -> str | None: ...

    def log_webhook_event(
        self,
        *,
        event_type: str,
        instance_name: str,
        payload: dict[str, Any],
        event_key: str | None,
    ) -> WebhookEventRecord: ...

    def mark_webhook_event_processed(
        self, event_id: str, *, error_message: str | None = None
    ) -> None: ...

    def find_or_create_conversation(
        self, *, bot_id: str, user_name: str, phone_number: str, platform_user_id: str
    ) -> tuple[Conversation, bool]: ...

    def find_conversation(self, *, bot_id: str, phone_number: str) -> Conversation | None: ...

    def append_message(
        self,
        *,
        conversation_id: str,
        message_type: str,
        content: str,
        metadata: dict[str, Any],
        provider_message_id: str | None = None,
    ) -> Message | None:
        """Write a message, then advance the conversation's last_message_at.

        Returns None (and touches nothing) when the provider message id was
        already stored for the conversation.
        """
        ...


class PostgresStore:
    """BridgeStore backed by PostgreSQL (DATABASE_URL)."""

    @contextmanager
    def bot_session(self, bot_id: str) -> Iterator[BotSession]:
        with txn() as cur:
            bot = bots_repository.lock_bot(cur, bot_id)
            if bot is None:
                raise BotNotFound(bot_id)
            yield BotSession(bot, cur)

    def get_bot(self, bot_id: str) -> BotInstance | None:
        with txn() as cur:
            return bots_repository.get_bot(cur, bot_id)

    def find_bot_id_by_instance(self, instance_name: str) -> str | None:
        with txn() as cur:
            return bots_repository.find_bot_id_by_instance(cur, instance_name)

    def log_webhook_event(
        self,
        *,
        event_type: str,
        instance_name: str,
        payload: dict[str, Any],
        event_key: str | None,
    ) -> WebhookEventRecord:
        with txn() as cur:
            return webhook_events_repository.log_webhook_event(
                cur,
                event_type=event_type,
                instance_name=instance_name,
                payload=payload,
                event_key=event_key,
            )

    def mark_webhook_event_processed(
        self, event_id: str, *, error_message: str | None = None
    ) -> None:
        with txn() as cur:
            webhook_events_repository.mark_webhook_event_processed(
                cur, event_id, error_message=error_message
            )

    def find_or_create_conversation(
        self, *, bot_id: str, user_name: str, phone_number: str, platform_user_id: str
    ) -> tuple[Conversation, bool]:
        with txn() as cur:
            created = conversations_repository.insert_conversation_if_absent(
                cur,
                bot_id=bot_id,
                user_name=user_name,
                phone_number=phone_number,
                platform_user_id=platform_user_id,
            )
            if created is not None:
                return created, True

            # Lost the insert race (or the row already existed): use the winner
            existing = conversations_repository.get_conversation_by_phone(
                cur, bot_id=bot_id, phone_number=phone_number
            )
        if existing is None:
            raise RuntimeError("conversation vanished after insert conflict")
        return existing, False

    def find_conversation(self, *, bot_id: str, phone_number: str) -> Conversation | None:
        with txn() as cur:
            return conversations_repository.get_conversation_by_phone(
                cur, bot_id=bot_id, phone_number=phone_number
            )

    def append_message(
        self,
        *,
        conversation_id: str,
        message_type: str,
        content: str,
        metadata: dict[str, Any],
        provider_message_id: str | None = None,
    ) -> Message | None:
        with txn() as cur:
            message = messages_repository.insert_message(
                cur,
                conversation_id=conversation_id,
                message_type=message_type,
                content=content,
                metadata=metadata,
                provider_message_id=provider_message_id,
            )
            if message is None:
                return None
            conversations_repository.touch_last_message(cur, conversation_id, utc_now())
        return message
