from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    func,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
SeqType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Lexicon(Base):
    __tablename__ = "lexicons"
    __table_args__ = (
        Index("ix_lexicons_source", "source"),
    )

    # NSID of the document; one row per id holds the current revision.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Bumped by compare-and-swap on every put.
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    lexicon_type: Mapped[str] = mapped_column(String, nullable=False)
    # Store the document exactly as uploaded so reads round-trip structurally.
    lexicon_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    backfill: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    target_collection: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str | None] = mapped_column(String, nullable=True)
    script: Mapped[str | None] = mapped_column(Text, nullable=True)
    # manual | network
    source: Mapped[str] = mapped_column(String, nullable=False, default="manual")
    authority_did: Mapped[str | None] = mapped_column(String, nullable=True)
    last_fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StoredRecord(Base):
    __tablename__ = "records"
    __table_args__ = (
        Index("ix_records_collection_seq", "collection", "seq"),
        Index("ix_records_collection_did_seq", "collection", "did", "seq"),
    )

    # Monotonic insertion key used for stable cursor pagination.
    seq: Mapped[int] = mapped_column(SeqType, primary_key=True, autoincrement=True)
    uri: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    did: Mapped[str] = mapped_column(String, nullable=False)
    collection: Mapped[str] = mapped_column(String, nullable=False)
    rkey: Mapped[str] = mapped_column(String, nullable=False)
    record: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    cid: Mapped[str] = mapped_column(String, nullable=False)
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Admin(Base):
    __tablename__ = "admins"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Store only the hashed key to avoid plaintext credentials at rest.
    api_key_hash: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BackfillJob(Base):
    __tablename__ = "backfill_jobs"
    __table_args__ = (
        Index("ix_backfill_jobs_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    collection: Mapped[str | None] = mapped_column(String, nullable=True)
    did: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending | running | completed | failed
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    total_repos: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_repos: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
