"""Webhook event log - audit trail and delivery dedupe.

Uses raw SQL with psycopg2 (no ORM).
"""

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from konver.whatsapp.models import WebhookEventRecord


def log_webhook_event(
    cur: PgCursor,
    *,
    event_type: str,
    instance_name: str,
    payload: dict[str, Any],
    event_key: str | None,
) -> WebhookEventRecord:
    """Insert an unprocessed log entry for a delivery.

    A delivery whose event_key is already logged only bumps delivery_count on
    the existing row and is reported as a duplicate.
    """
    cur.execute(
        """
        INSERT INTO webhook_events (event_type, instance_name, event_key, payload)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (event_key) DO UPDATE
            SET delivery_count = webhook_events.delivery_count + 1
        RETURNING id, (xmax = 0) AS inserted
        """,
        (event_type, instance_name, event_key, json.dumps(payload, default=str)),
    )
    event_id, inserted = cur.fetchone()
    return WebhookEventRecord(id=str(event_id), duplicate=not inserted)


def mark_webhook_event_processed(
    cur: PgCursor, event_id: str, *, error_message: str | None = None
) -> None:
    cur.execute(
        """
        UPDATE webhook_events
        SET processed = true, error_message = %s, processed_at = now()
        WHERE id = %s
        """,
        (error_message, event_id),
    )
