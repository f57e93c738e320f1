from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.apps.api.deps import get_db, require_admin
from lexhost.apps.api.openapi import ADMIN_ERROR_RESPONSES
from lexhost.services import record_store
from lexhost.services.telemetry import counters_snapshot, p95_latency


router = APIRouter(
    prefix="/admin/stats",
    tags=["admin-stats"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class CollectionCount(BaseModel):
    collection: str
    count: int


class StatsResponse(BaseModel):
    total_records: int
    collections: list[CollectionCount]


class TelemetryResponse(BaseModel):
    counters: dict[str, int]
    p95_latency_ms: dict[str, float | None]


@router.get("", response_model=StatsResponse)
async def get_stats(db: AsyncSession = Depends(get_db)) -> StatsResponse:
    try:
        stats = await record_store.collection_stats(db)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while computing stats") from exc
    return StatsResponse(
        total_records=stats["total_records"],
        collections=[CollectionCount(**item) for item in stats["collections"]],
    )


@router.get("/telemetry", response_model=TelemetryResponse)
async def get_telemetry() -> TelemetryResponse:
    # In-process counters only; they reset with the worker.
    window_s = 300
    return TelemetryResponse(
        counters=counters_snapshot(),
        p95_latency_ms={
            "xrpc": p95_latency(window_s, surface="xrpc"),
            "admin": p95_latency(window_s, surface="admin"),
        },
    )
