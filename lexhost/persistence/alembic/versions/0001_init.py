"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "lexicons",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("lexicon_type", sa.String(), nullable=False),
        sa.Column("lexicon_json", postgresql.JSONB(), nullable=False),
        sa.Column("backfill", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("target_collection", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=True),
        sa.Column("script", sa.Text(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="manual"),
        sa.Column("authority_did", sa.String(), nullable=True),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_lexicons_source", "lexicons", ["source"])

    op.create_table(
        "records",
        # Insertion order drives cursor pagination.
        sa.Column("seq", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("uri", sa.String(), nullable=False, unique=True),
        sa.Column("did", sa.String(), nullable=False),
        sa.Column("collection", sa.String(), nullable=False),
        sa.Column("rkey", sa.String(), nullable=False),
        sa.Column("record", postgresql.JSONB(), nullable=False),
        sa.Column("cid", sa.String(), nullable=False),
        sa.Column("indexed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_records_collection_seq", "records", ["collection", "seq"])
    op.create_index("ix_records_collection_did_seq", "records", ["collection", "did", "seq"])

    op.create_table(
        "admins",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("api_key_hash", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_admins_api_key_hash", "admins", ["api_key_hash"], unique=True)

    op.create_table(
        "backfill_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("collection", sa.String(), nullable=True),
        sa.Column("did", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("total_repos", sa.Integer(), nullable=True),
        sa.Column("processed_repos", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_backfill_jobs_created_at", "backfill_jobs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_backfill_jobs_created_at", table_name="backfill_jobs")
    op.drop_table("backfill_jobs")
    op.drop_index("ix_admins_api_key_hash", table_name="admins")
    op.drop_table("admins")
    op.drop_index("ix_records_collection_did_seq", table_name="records")
    op.drop_index("ix_records_collection_seq", table_name="records")
    op.drop_table("records")
    op.drop_index("ix_lexicons_source", table_name="lexicons")
    op.drop_table("lexicons")
