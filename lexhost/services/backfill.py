from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.core.errors import ConflictError, InvalidInputError, NotFoundError
from lexhost.domain.identifiers import generate_tid, is_valid_did, is_valid_nsid
from lexhost.domain.models import BackfillJob
from lexhost.persistence.repos import backfill as backfill_repo
from lexhost.persistence.repos import lexicons as lexicons_repo


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

_ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_PENDING, STATUS_RUNNING, STATUS_FAILED},
    STATUS_RUNNING: {STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED},
}

NO_BACKFILL_LEXICONS = "no record lexicons have backfill enabled"


async def create_backfill_job(
    session: AsyncSession,
    *,
    collection: str | None = None,
    did: str | None = None,
) -> BackfillJob:
    """Queue a backfill for one collection, or every backfill-enabled record lexicon."""
    if collection is not None and not is_valid_nsid(collection):
        raise InvalidInputError(f"'{collection}' is not a valid collection NSID")
    if did is not None and not is_valid_did(did):
        raise InvalidInputError(f"'{did}' is not a valid DID")
    now = datetime.now(timezone.utc)
    job = BackfillJob(
        id=generate_tid(),
        collection=collection,
        did=did,
        status=STATUS_PENDING,
        processed_repos=0,
        total_records=0,
        created_at=now,
    )
    if collection is None and not await lexicons_repo.list_record_lexicons(session, backfill_only=True):
        # Recorded rather than rejected so operators see why nothing ran.
        job.status = STATUS_FAILED
        job.error = NO_BACKFILL_LEXICONS
        job.completed_at = now
    await backfill_repo.insert_job(session, job)
    await session.commit()
    logger.info("backfill_job_created id=%s collection=%s did=%s status=%s", job.id, collection, did, job.status)
    return job


async def list_backfill_jobs(session: AsyncSession, *, limit: int = 100) -> list[BackfillJob]:
    return await backfill_repo.list_jobs(session, limit=limit)


async def get_backfill_job(session: AsyncSession, job_id: str) -> BackfillJob:
    job = await backfill_repo.get_job(session, job_id)
    if job is None:
        raise NotFoundError(f"backfill job '{job_id}' not found")
    return job


async def delete_backfill_job(session: AsyncSession, job_id: str) -> None:
    deleted = await backfill_repo.delete_job(session, job_id)
    if not deleted:
        await session.rollback()
        raise NotFoundError(f"backfill job '{job_id}' not found")
    await session.commit()
    logger.info("backfill_job_deleted id=%s", job_id)


async def update_backfill_progress(
    session: AsyncSession,
    job_id: str,
    *,
    status: str | None = None,
    total_repos: int | None = None,
    processed_repos: int | None = None,
    total_records: int | None = None,
    error: str | None = None,
) -> BackfillJob:
    """Apply an ingestion progress report; terminal jobs are immutable."""
    job = await get_backfill_job(session, job_id)
    if job.status in TERMINAL_STATUSES:
        raise ConflictError(f"backfill job '{job_id}' is already {job.status}")
    target = status or job.status
    if target not in _ALLOWED_TRANSITIONS[job.status]:
        raise ConflictError(f"backfill job '{job_id}' cannot move from {job.status} to {target}")
    now = datetime.now(timezone.utc)
    if target == STATUS_RUNNING and job.started_at is None:
        job.started_at = now
    if target in TERMINAL_STATUSES:
        job.completed_at = now
    job.status = target
    if total_repos is not None:
        job.total_repos = total_repos
    if processed_repos is not None:
        job.processed_repos = processed_repos
    if total_records is not None:
        job.total_records = total_records
    if error is not None:
        job.error = error
    await session.commit()
    logger.info(
        "backfill_progress id=%s status=%s processed=%s/%s records=%s",
        job.id,
        job.status,
        job.processed_repos,
        job.total_repos,
        job.total_records,
    )
    return job
