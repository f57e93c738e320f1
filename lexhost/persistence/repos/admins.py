from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.domain.models import Admin


async def get_by_key_hash(session: AsyncSession, key_hash: str) -> Admin | None:
    result = await session.execute(select(Admin).where(Admin.api_key_hash == key_hash))
    return result.scalar_one_or_none()


async def list_admins(session: AsyncSession) -> list[Admin]:
    result = await session.execute(select(Admin).order_by(Admin.created_at, Admin.id))
    return list(result.scalars().all())


async def count_admins(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Admin))
    return int(result.scalar_one())


async def insert_admin(session: AsyncSession, *, admin_id: str, name: str, api_key_hash: str) -> Admin:
    row = Admin(
        id=admin_id,
        name=name,
        api_key_hash=api_key_hash,
        created_at=datetime.now(timezone.utc),
    )
    session.add(row)
    await session.flush()
    return row


async def touch_last_used(session: AsyncSession, admin_id: str) -> None:
    await session.execute(
        update(Admin).where(Admin.id == admin_id).values(last_used_at=datetime.now(timezone.utc))
    )


async def delete_admin(session: AsyncSession, admin_id: str) -> bool:
    result = await session.execute(delete(Admin).where(Admin.id == admin_id))
    return result.rowcount > 0
