from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import case, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.domain.models import StoredRecord
from lexhost.persistence.db import dialect_name


_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


async def get_by_uri(session: AsyncSession, uri: str) -> StoredRecord | None:
    result = await session.execute(select(StoredRecord).where(StoredRecord.uri == uri))
    return result.scalar_one_or_none()


async def get_by_uris(session: AsyncSession, uris: Iterable[str]) -> dict[str, StoredRecord]:
    wanted = set(uris)
    if not wanted:
        return {}
    result = await session.execute(select(StoredRecord).where(StoredRecord.uri.in_(wanted)))
    return {row.uri: row for row in result.scalars().all()}


async def upsert_record(
    session: AsyncSession,
    *,
    uri: str,
    did: str,
    collection: str,
    rkey: str,
    record: dict[str, Any],
    cid: str,
) -> None:
    # Single-statement upsert so concurrent writers to one URI serialize on the row.
    insert = _UPSERT_INSERTS.get(dialect_name(session))
    if insert is None:
        raise RuntimeError(f"record upsert is not supported on {dialect_name(session)}")
    stmt = insert(StoredRecord).values(
        uri=uri,
        did=did,
        collection=collection,
        rkey=rkey,
        record=record,
        cid=cid,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[StoredRecord.uri],
        set_={"record": stmt.excluded.record, "cid": stmt.excluded.cid, "indexed_at": func.now()},
    )
    await session.execute(stmt)


async def list_page(
    session: AsyncSession,
    *,
    collection: str,
    did: str | None = None,
    after_seq: int | None = None,
    offset: int | None = None,
    limit: int,
) -> list[StoredRecord]:
    # Ascending seq keeps pages stable while new rows land at the end.
    stmt = select(StoredRecord).where(StoredRecord.collection == collection)
    if did is not None:
        stmt = stmt.where(StoredRecord.did == did)
    if after_seq is not None:
        stmt = stmt.where(StoredRecord.seq > after_seq)
    stmt = stmt.order_by(StoredRecord.seq).limit(limit)
    if offset:
        stmt = stmt.offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_records(session: AsyncSession, *, collection: str | None = None, did: str | None = None) -> int:
    stmt = select(func.count()).select_from(StoredRecord)
    if collection is not None:
        stmt = stmt.where(StoredRecord.collection == collection)
    if did is not None:
        stmt = stmt.where(StoredRecord.did == did)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def counts_by_collection(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(StoredRecord.collection, func.count())
        .group_by(StoredRecord.collection)
        .order_by(StoredRecord.collection)
    )
    return {collection: int(count) for collection, count in result.all()}


async def search_field(
    session: AsyncSession,
    *,
    collection: str,
    field: str,
    query: str,
    limit: int,
) -> list[StoredRecord]:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    value = StoredRecord.record[field].as_string()
    # Exact matches first, then prefix matches, then any other substring hit.
    rank = case(
        (func.lower(value) == query.lower(), 0),
        (value.ilike(f"{escaped}%", escape="\\"), 1),
        else_=2,
    )
    result = await session.execute(
        select(StoredRecord)
        .where(
            StoredRecord.collection == collection,
            value.ilike(f"%{escaped}%", escape="\\"),
        )
        .order_by(rank, value, StoredRecord.seq)
        .limit(limit)
    )
    return list(result.scalars().all())


async def delete_by_uri(session: AsyncSession, uri: str) -> bool:
    result = await session.execute(delete(StoredRecord).where(StoredRecord.uri == uri))
    return result.rowcount > 0


async def delete_collection_batch(session: AsyncSession, *, collection: str, batch_size: int) -> int:
    # Bounded batches keep each transaction short; callers loop until zero.
    result = await session.execute(
        select(StoredRecord.seq)
        .where(StoredRecord.collection == collection)
        .order_by(StoredRecord.seq)
        .limit(batch_size)
    )
    seqs = list(result.scalars().all())
    if not seqs:
        return 0
    await session.execute(delete(StoredRecord).where(StoredRecord.seq.in_(seqs)))
    return len(seqs)
