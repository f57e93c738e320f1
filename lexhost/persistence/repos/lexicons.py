from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.domain.models import Lexicon


async def get_lexicon(session: AsyncSession, lexicon_id: str) -> Lexicon | None:
    # Refresh identity-mapped rows so revision reads are never stale within a session.
    result = await session.execute(
        select(Lexicon).where(Lexicon.id == lexicon_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_lexicons(session: AsyncSession, lexicon_ids: Iterable[str]) -> list[Lexicon]:
    ids = sorted(set(lexicon_ids))
    if not ids:
        return []
    result = await session.execute(select(Lexicon).where(Lexicon.id.in_(ids)).order_by(Lexicon.id))
    return list(result.scalars().all())


async def list_lexicons(session: AsyncSession, *, source: str | None = None) -> list[Lexicon]:
    # Order by id so admin listings are stable across calls.
    stmt = select(Lexicon).order_by(Lexicon.id)
    if source is not None:
        stmt = stmt.where(Lexicon.source == source)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_record_lexicons(session: AsyncSession, *, backfill_only: bool = False) -> list[Lexicon]:
    stmt = select(Lexicon).where(Lexicon.lexicon_type == "record").order_by(Lexicon.id)
    if backfill_only:
        stmt = stmt.where(Lexicon.backfill.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def insert_lexicon(session: AsyncSession, *, lexicon_id: str, values: dict[str, Any]) -> Lexicon:
    # Flush immediately so a concurrent first insert surfaces as IntegrityError here.
    row = Lexicon(id=lexicon_id, revision=1, **values)
    session.add(row)
    await session.flush()
    return row


async def swap_revision(
    session: AsyncSession,
    *,
    lexicon_id: str,
    expected_revision: int,
    values: dict[str, Any],
) -> bool:
    # Compare-and-swap on revision; zero rows means another writer got there first.
    result = await session.execute(
        update(Lexicon)
        .where(Lexicon.id == lexicon_id, Lexicon.revision == expected_revision)
        .values(revision=expected_revision + 1, updated_at=func.now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def delete_lexicon(session: AsyncSession, lexicon_id: str, *, source: str | None = None) -> bool:
    stmt = delete(Lexicon).where(Lexicon.id == lexicon_id)
    if source is not None:
        stmt = stmt.where(Lexicon.source == source)
    result = await session.execute(stmt)
    return result.rowcount > 0
