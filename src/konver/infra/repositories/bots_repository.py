"""Bots repository - WhatsApp pairing columns of the bots table.

Uses raw SQL with psycopg2 (no ORM). The bots table itself belongs to the
wider application; only the whatsapp_* columns are read and written here.
"""

from psycopg2.extensions import cursor as PgCursor

from konver.whatsapp.models import BotInstance

_SELECT_BOT = """
SELECT id, whatsapp_instance, whatsapp_status, whatsapp_qr_code,
       whatsapp_phone_number, whatsapp_profile_name, whatsapp_connected_at
FROM bots
WHERE id = %s
"""


def _row_to_bot(row: tuple) -> BotInstance:
    return BotInstance(
        bot_id=str(row[0]),
        instance_name=row[1],
        status=row[2],
        qr_code=row[3],
        phone_number=row[4],
        profile_name=row[5],
        connected_at=row[6],
    )


def get_bot(cur: PgCursor, bot_id: str) -> BotInstance | None:
    cur.execute(_SELECT_BOT, (bot_id,))
    row = cur.fetchone()
    return _row_to_bot(row) if row else None


def lock_bot(cur: PgCursor, bot_id: str) -> BotInstance | None:
    """Load a bot with a row lock held until the transaction ends.

    Pairing and reconciliation for the same bot serialize on this lock, across
    threads and across service processes.
    """
    cur.execute(_SELECT_BOT.rstrip() + " FOR UPDATE", (bot_id,))
    row = cur.fetchone()
    return _row_to_bot(row) if row else None


def find_bot_id_by_instance(cur: PgCursor, instance_name: str) -> str | None:
    cur.execute("SELECT id FROM bots WHERE whatsapp_instance = %s", (instance_name,))
    row = cur.fetchone()
    return str(row[0]) if row else None


def save_bot(cur: PgCursor, bot: BotInstance) -> None:
    """Persist every whatsapp_* column of the bot in one statement."""
    cur.execute(
        """
        UPDATE bots
        SET whatsapp_instance = %s,
            whatsapp_status = %s,
            whatsapp_qr_code = %s,
            whatsapp_phone_number = %s,
            whatsapp_profile_name = %s,
            whatsapp_connected_at = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (
            bot.instance_name,
            bot.status,
            bot.qr_code,
            bot.phone_number,
            bot.profile_name,
            bot.connected_at,
            bot.bot_id,
        ),
    )
