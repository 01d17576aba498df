"""PostgresStore against a migrated database (requires Postgres)."""

import os
import threading
import uuid

import pytest

from konver.infra.db import txn
from konver.infra.store import PostgresStore
from konver.whatsapp.errors import BotNotFound

pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping Postgres store tests",
)


@pytest.fixture
def pg_store():
    return PostgresStore()


@pytest.fixture
def bot_id():
    with txn() as cur:
        cur.execute("INSERT INTO bots (name) VALUES (%s) RETURNING id", ("test-bot",))
        new_id = str(cur.fetchone()[0])
    yield new_id
    with txn() as cur:
        cur.execute("DELETE FROM bots WHERE id = %s", (new_id,))


@pytest.fixture
def event_prefix():
    prefix = f"test-{uuid.uuid4().hex[:8]}"
    yield prefix
    with txn() as cur:
        cur.execute("DELETE FROM webhook_events WHERE event_key LIKE %s", (prefix + "%",))


class TestBots:
    def test_session_commits_saved_bot(self, pg_store, bot_id):
        instance = f"bot_{uuid.uuid4().hex[:10]}"
        with pg_store.bot_session(bot_id) as session:
            session.save(session.bot.start_pairing(instance, "QR"))

        bot = pg_store.get_bot(bot_id)
        assert bot.status == "connecting"
        assert bot.qr_code == "QR"
        assert pg_store.find_bot_id_by_instance(instance) == bot_id

    def test_session_rolls_back_on_error(self, pg_store, bot_id):
        with pytest.raises(RuntimeError):
            with pg_store.bot_session(bot_id) as session:
                session.save(session.bot.start_pairing("bot_rollback", "QR"))
                raise RuntimeError("cancelled")

        assert pg_store.get_bot(bot_id).status == "disconnected"

    def test_unknown_bot(self, pg_store):
        with pytest.raises(BotNotFound):
            with pg_store.bot_session(str(uuid.uuid4())):
                pass


class TestWebhookEvents:
    def test_duplicate_key_bumps_delivery_count(self, pg_store, event_prefix):
        key = f"{event_prefix}:MSG1"
        first = pg_store.log_webhook_event(
            event_type="messages.upsert", instance_name="bot_x", payload={"a": 1}, event_key=key
        )
        second = pg_store.log_webhook_event(
            event_type="messages.upsert", instance_name="bot_x", payload={"a": 1}, event_key=key
        )

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.id == first.id

        pg_store.mark_webhook_event_processed(first.id, error_message=None)
        with txn() as cur:
            cur.execute(
                "SELECT delivery_count, processed FROM webhook_events WHERE id = %s", (first.id,)
            )
            assert cur.fetchone() == (2, True)


class TestConversations:
    def test_concurrent_find_or_create(self, pg_store, bot_id):
        results = []

        def resolve():
            results.append(
                pg_store.find_or_create_conversation(
                    bot_id=bot_id,
                    user_name="Maria",
                    phone_number="5511999999999",
                    platform_user_id="5511999999999@s.whatsapp.net",
                )
            )

        threads = [threading.Thread(target=resolve) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({conversation.id for conversation, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1

    def test_append_message_dedupes_and_touches(self, pg_store, bot_id):
        conversation, _ = pg_store.find_or_create_conversation(
            bot_id=bot_id,
            user_name="Maria",
            phone_number="5511999999999",
            platform_user_id="5511999999999@s.whatsapp.net",
        )

        first = pg_store.append_message(
            conversation_id=conversation.id,
            message_type="user",
            content="Oi",
            metadata={"whatsapp_message_id": "M1"},
            provider_message_id="M1",
        )
        again = pg_store.append_message(
            conversation_id=conversation.id,
            message_type="user",
            content="Oi",
            metadata={"whatsapp_message_id": "M1"},
            provider_message_id="M1",
        )

        assert first is not None
        assert again is None
        found = pg_store.find_conversation(bot_id=bot_id, phone_number="5511999999999")
        assert found.last_message_at is not None
