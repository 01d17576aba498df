"""Conversations repository - one row per (bot, phone number).

Uses raw SQL with psycopg2 (no ORM). The unique index
uq_conversations_bot_phone makes creation race-free across processes.
"""

import json
from datetime import datetime

from psycopg2.extensions import cursor as PgCursor

from konver.whatsapp.models import Conversation

_COLUMNS = "id, bot_id, user_name, phone_number, status, last_message_at, metadata"


def _row_to_conversation(row: tuple) -> Conversation:
    metadata = row[6]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return Conversation(
        id=str(row[0]),
        bot_id=str(row[1]),
        user_name=row[2],
        phone_number=row[3],
        status=row[4],
        last_message_at=row[5],
        metadata=metadata or {},
    )


def insert_conversation_if_absent(
    cur: PgCursor,
    *,
    bot_id: str,
    user_name: str,
    phone_number: str,
    platform_user_id: str,
) -> Conversation | None:
    """Insert a conversation unless one exists for (bot_id, phone_number).

    Returns:
        The new conversation, or None if another writer created it first.
    """
    cur.execute(
        f"""
        INSERT INTO conversations (bot_id, user_name, phone_number, platform, status, metadata)
        VALUES (%s, %s, %s, 'whatsapp', 'active', %s)
        ON CONFLICT (bot_id, phone_number) DO NOTHING
        RETURNING {_COLUMNS}
        """,
        (bot_id, user_name, phone_number, json.dumps({"whatsapp_jid": platform_user_id})),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def get_conversation_by_phone(
    cur: PgCursor, *, bot_id: str, phone_number: str
) -> Conversation | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM conversations WHERE bot_id = %s AND phone_number = %s",
        (bot_id, phone_number),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def touch_last_message(cur: PgCursor, conversation_id: str, at: datetime) -> None:
    """Advance last_message_at; never moves it backwards."""
    cur.execute(
        """
        UPDATE conversations
        SET last_message_at = GREATEST(COALESCE(last_message_at, %s), %s),
            updated_at = now()
        WHERE id = %s
        """,
        (at, at, conversation_id),
    )
