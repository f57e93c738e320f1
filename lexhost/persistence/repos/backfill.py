from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.domain.models import BackfillJob


async def get_job(session: AsyncSession, job_id: str) -> BackfillJob | None:
    result = await session.execute(select(BackfillJob).where(BackfillJob.id == job_id))
    return result.scalar_one_or_none()


async def list_jobs(session: AsyncSession, *, limit: int = 100) -> list[BackfillJob]:
    # Newest first; id breaks ties for jobs created in the same instant.
    result = await session.execute(
        select(BackfillJob).order_by(BackfillJob.created_at.desc(), BackfillJob.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def insert_job(session: AsyncSession, job: BackfillJob) -> BackfillJob:
    session.add(job)
    await session.flush()
    return job


async def delete_job(session: AsyncSession, job_id: str) -> bool:
    result = await session.execute(delete(BackfillJob).where(BackfillJob.id == job_id))
    return result.rowcount > 0
