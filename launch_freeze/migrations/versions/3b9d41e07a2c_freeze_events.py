"""freeze events log

Revision ID: 3b9d41e07a2c
Revises:
Create Date: 2026-10-12 09:14:03.518220
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3b9d41e07a2c"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(bind, name: str) -> bool:
    insp = sa.inspect(bind)
    return name in insp.get_table_names()


def _index_exists(bind, table: str, name: str) -> bool:
    insp = sa.inspect(bind)
    for ix in insp.get_indexes(table_name=table):
        if ix.get("name") in {name, op.f(name)}:
            return True
    return False


def upgrade() -> None:
    """Create the append-only freeze log if it doesn't already exist."""
    bind = op.get_bind()

    if not _table_exists(bind, "freeze_events"):
        op.create_table(
            "freeze_events",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("source", sa.String(length=64), nullable=False),
            sa.Column("event", sa.String(length=32), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=True),
            sa.Column("incident_key", sa.String(length=200), nullable=True),
            sa.Column("ref_id", sa.Integer(), nullable=True),
            sa.Column("actor", sa.String(length=255), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("dedupe_key", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id", name="freeze_events_pkey"),
            sa.UniqueConstraint("dedupe_key", name="freeze_events_dedupe_key_key"),
        )

    for name, cols in (
        ("ix_freeze_events_source", ["source"]),
        ("ix_freeze_events_incident_key", ["incident_key"]),
        ("ix_freeze_events_ref_id", ["ref_id"]),
        ("ix_freeze_events_created_at", ["created_at"]),
        ("ix_freeze_events_source_created", ["source", "created_at"]),
    ):
        if not _index_exists(bind, "freeze_events", name):
            op.create_index(op.f(name), "freeze_events", cols, unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    if _table_exists(bind, "freeze_events"):
        op.drop_table("freeze_events")
