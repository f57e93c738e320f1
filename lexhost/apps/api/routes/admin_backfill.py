from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.apps.api.deps import get_db, require_admin
from lexhost.apps.api.openapi import ADMIN_ERROR_RESPONSES
from lexhost.domain.models import BackfillJob
from lexhost.services import backfill


router = APIRouter(
    prefix="/admin/backfill",
    tags=["admin-backfill"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class BackfillRequest(BaseModel):
    collection: str | None = None
    did: str | None = None

    model_config = {"extra": "forbid"}


class BackfillJobResponse(BaseModel):
    id: str
    collection: str | None
    did: str | None
    status: str
    total_repos: int | None
    processed_repos: int
    total_records: int
    error: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None


class BackfillJobList(BaseModel):
    jobs: list[BackfillJobResponse]


def _to_response(job: BackfillJob) -> BackfillJobResponse:
    return BackfillJobResponse(
        id=job.id,
        collection=job.collection,
        did=job.did,
        status=job.status,
        total_repos=job.total_repos,
        processed_repos=job.processed_repos,
        total_records=job.total_records,
        error=job.error,
        started_at=job.started_at,
        completed_at=job.completed_at,
        created_at=job.created_at,
    )


@router.post("", response_model=BackfillJobResponse, status_code=status.HTTP_201_CREATED)
async def start_backfill(
    payload: BackfillRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> BackfillJobResponse:
    # An empty body backfills every backfill-enabled record lexicon.
    payload = payload or BackfillRequest()
    try:
        job = await backfill.create_backfill_job(db, collection=payload.collection, did=payload.did)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating backfill job") from exc
    return _to_response(job)


@router.get("/status", response_model=BackfillJobList)
async def backfill_status(
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> BackfillJobList:
    try:
        jobs = await backfill.list_backfill_jobs(db, limit=limit)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing backfill jobs") from exc
    return BackfillJobList(jobs=[_to_response(job) for job in jobs])


@router.get("/{job_id}", response_model=BackfillJobResponse)
async def get_backfill_job(job_id: str, db: AsyncSession = Depends(get_db)) -> BackfillJobResponse:
    try:
        job = await backfill.get_backfill_job(db, job_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching backfill job") from exc
    return _to_response(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_backfill_job(job_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    try:
        await backfill.delete_backfill_job(db, job_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting backfill job") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
