"""WhatsApp bridge schema (SQL-only).

Revision ID: 001_whatsapp_bridge
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from pathlib import Path

from alembic import op


revision = "001_whatsapp_bridge"
down_revision = None
branch_labels = None
depends_on = None


def _read_sql() -> str:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_whatsapp_bridge.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(_read_sql())


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
