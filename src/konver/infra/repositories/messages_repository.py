"""Conversation messages repository (append-only).

Uses raw SQL with psycopg2 (no ORM).
"""

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from konver.whatsapp.models import Message


def insert_message(
    cur: PgCursor,
    *,
    conversation_id: str,
    message_type: str,
    content: str,
    metadata: dict[str, Any],
    provider_message_id: str | None = None,
) -> Message | None:
    """Append a message to a conversation.

    A provider message id already stored for the conversation makes this a
    no-op (redelivered webhook).

    Returns:
        The stored message, or None if it was a duplicate.
    """
    cur.execute(
        """
        INSERT INTO conversation_messages (
            conversation_id, message_type, content, metadata, provider_message_id
        )
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (conversation_id, provider_message_id)
            WHERE provider_message_id IS NOT NULL
            DO NOTHING
        RETURNING id, created_at
        """,
        (conversation_id, message_type, content, json.dumps(metadata), provider_message_id),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return Message(
        id=str(row[0]),
        conversation_id=conversation_id,
        message_type=message_type,  # type: ignore[arg-type]
        content=content,
        metadata=metadata,
        created_at=row[1],
    )
