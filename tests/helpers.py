"""Shared test doubles for the WhatsApp bridge tests.

These are NOT fixtures - they are regular classes/functions that tests and
conftest.py import.
"""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Iterator

from konver.infra.store import BotSession
from konver.infra.time import utc_now
from konver.observability.logging import JsonFormatter
from konver.whatsapp.errors import BotNotFound
from konver.whatsapp.models import (
    BotInstance,
    Conversation,
    Message,
    ProviderConnectionState,
    WebhookEventRecord,
)


class InMemoryStore:
    """BridgeStore kept in dicts, with the same locking and uniqueness rules.

    - bot_session holds a per-bot lock and commits only on normal exit
    - one conversation per (bot_id, phone_number)
    - provider message ids are unique per conversation
    - event keys are unique in the webhook log
    """

    def __init__(self) -> None:
        self.bots: dict[str, BotInstance] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: list[Message] = []
        self.provider_message_ids: set[tuple[str, str]] = set()
        self.webhook_events: dict[str, dict[str, Any]] = {}
        self.bot_writes = 0
        self.fail_webhook_log: Exception | None = None

        self._lock = threading.Lock()
        self._bot_locks: dict[str, threading.Lock] = {}
        self._ids = itertools.count(1)

    # -- test setup -----------------------------------------------------

    def add_bot(self, bot_id: str = "bot-1", **fields: Any) -> BotInstance:
        bot = BotInstance(bot_id=bot_id, **fields)
        with self._lock:
            self.bots[bot_id] = bot
            self._bot_locks.setdefault(bot_id, threading.Lock())
        return bot

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # -- BridgeStore ----------------------------------------------------

    @contextmanager
    def bot_session(self, bot_id: str) -> Iterator[BotSession]:
        with self._lock:
            bot_lock = self._bot_locks.get(bot_id)
        if bot_lock is None:
            raise BotNotFound(bot_id)

        with bot_lock:
            original = self.bots[bot_id]
            session = BotSession(original)
            yield session
            if session.bot is not original:
                with self._lock:
                    self.bots[bot_id] = session.bot
                    self.bot_writes += 1

    def get_bot(self, bot_id: str) -> BotInstance | None:
        with self._lock:
            return self.bots.get(bot_id)

    def find_bot_id_by_instance(self, instance_name: str) -> str | None:
        with self._lock:
            for bot in self.bots.values():
                if bot.instance_name == instance_name:
                    return bot.bot_id
        return None

    def log_webhook_event(
        self,
        *,
        event_type: str,
        instance_name: str,
        payload: dict[str, Any],
        event_key: str | None,
    ) -> WebhookEventRecord:
        if self.fail_webhook_log is not None:
            raise self.fail_webhook_log
        with self._lock:
            if event_key is not None:
                for event_id, row in self.webhook_events.items():
                    if row["event_key"] == event_key:
                        row["delivery_count"] += 1
                        return WebhookEventRecord(id=event_id, duplicate=True)
            event_id = self._next_id("evt")
            self.webhook_events[event_id] = {
                "event_type": event_type,
                "instance_name": instance_name,
                "event_key": event_key,
                "payload": payload,
                "processed": False,
                "error_message": None,
                "delivery_count": 1,
            }
            return WebhookEventRecord(id=event_id)

    def mark_webhook_event_processed(
        self, event_id: str, *, error_message: str | None = None
    ) -> None:
        with self._lock:
            row = self.webhook_events[event_id]
            row["processed"] = True
            row["error_message"] = error_message

    def find_or_create_conversation(
        self, *, bot_id: str, user_name: str, phone_number: str, platform_user_id: str
    ) -> tuple[Conversation, bool]:
        with self._lock:
            for conversation in self.conversations.values():
                if conversation.bot_id == bot_id and conversation.phone_number == phone_number:
                    return conversation, False
            conversation = Conversation(
                id=self._next_id("conv"),
                bot_id=bot_id,
                user_name=user_name,
                phone_number=phone_number,
                metadata={"whatsapp_jid": platform_user_id},
            )
            self.conversations[conversation.id] = conversation
            return conversation, True

    def find_conversation(self, *, bot_id: str, phone_number: str) -> Conversation | None:
        with self._lock:
            for conversation in self.conversations.values():
                if conversation.bot_id == bot_id and conversation.phone_number == phone_number:
                    return conversation
        return None

    def append_message(
        self,
        *,
        conversation_id: str,
        message_type: str,
        content: str,
        metadata: dict[str, Any],
        provider_message_id: str | None = None,
    ) -> Message | None:
        with self._lock:
            if provider_message_id is not None:
                if (conversation_id, provider_message_id) in self.provider_message_ids:
                    return None
                self.provider_message_ids.add((conversation_id, provider_message_id))
            now = utc_now()
            message = Message(
                id=self._next_id("msg"),
                conversation_id=conversation_id,
                message_type=message_type,  # type: ignore[arg-type]
                content=content,
                metadata=metadata,
                created_at=now,
            )
            self.messages.append(message)
            conversation = self.conversations[conversation_id]
            self.conversations[conversation_id] = replace(conversation, last_message_at=now)
            return message

    # -- assertions helpers ---------------------------------------------

    def messages_for(self, conversation_id: str) -> list[Message]:
        return [m for m in self.messages if m.conversation_id == conversation_id]


class FakeProvider:
    """ProviderClient double that records calls.

    ``errors`` maps a method name to an exception (or a list consumed one per
    call) raised instead of answering. ``hooks`` maps a method name to a
    callable run before the answer, e.g. to simulate slowness or cancellation.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.errors: dict[str, Any] = {}
        self.hooks: dict[str, Callable[[], None]] = {}
        self.state = ProviderConnectionState(state="close")
        self._qr_counter = itertools.count(1)
        self._msg_counter = itertools.count(1)
        self._lock = threading.Lock()

    def _call(self, method: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((method, args))
            error = self.errors.get(method)
            if isinstance(error, list):
                error = error.pop(0) if error else None
        hook = self.hooks.get(method)
        if hook is not None:
            hook()
        if error is not None:
            raise error

    def calls_to(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    def create_instance(self, name: str) -> str:
        self._call("create_instance", name)
        return f"data:image/png;base64,QR{next(self._qr_counter)}"

    def connect_instance(self, name: str) -> str:
        self._call("connect_instance", name)
        return f"data:image/png;base64,QR{next(self._qr_counter)}"

    def get_connection_state(self, name: str) -> ProviderConnectionState:
        self._call("get_connection_state", name)
        return self.state

    def send_text(self, name: str, phone_number: str, text: str) -> str:
        self._call("send_text", name, phone_number, text)
        return f"3EB0OUT{next(self._msg_counter)}"

    def logout(self, name: str) -> None:
        self._call("logout", name)

    def delete_instance(self, name: str) -> None:
        self._call("delete_instance", name)


class LogRecorder(logging.Handler):
    """Collects JSON-formatted log lines, as they would reach stdout."""

    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.setFormatter(JsonFormatter())
        self.lines: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(self.format(record))

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


@contextmanager
def record_logs(*logger_names: str) -> Iterator[LogRecorder]:
    """Attach a LogRecorder to the named konver loggers for the block."""
    recorder = LogRecorder()
    loggers = [logging.getLogger(name) for name in logger_names]
    for logger in loggers:
        logger.addHandler(recorder)
    try:
        yield recorder
    finally:
        for logger in loggers:
            logger.removeHandler(recorder)


def evolution_message(
    message_id: str = "3EB0A1B2C3D4",
    *,
    instance: str = "bot_abcdefghij",
    remote_jid: str = "5511999999999@s.whatsapp.net",
    push_name: str | None = "Maria",
    text: str = "Oi, quero agendar",
    from_me: bool = False,
) -> dict[str, Any]:
    """Build an Evolution ``messages.upsert`` webhook body."""
    data: dict[str, Any] = {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me},
        "messageType": "conversation",
        "message": {"conversation": text},
        "messageTimestamp": 1760000000,
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {"event": "messages.upsert", "instance": instance, "data": data}
