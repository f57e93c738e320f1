from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.apps.api.deps import get_db, require_admin
from lexhost.apps.api.openapi import ADMIN_ERROR_RESPONSES
from lexhost.services import record_store
from lexhost.services.record_store import RecordView


router = APIRouter(
    prefix="/admin/records",
    tags=["admin-records"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class RecordResponse(BaseModel):
    uri: str
    did: str
    collection: str
    rkey: str
    cid: str
    record: dict[str, Any]
    indexed_at: str | None


class RecordPageResponse(BaseModel):
    records: list[RecordResponse]
    cursor: str | None = None


class CollectionDeleteResponse(BaseModel):
    collection: str
    deleted: int


def _to_response(view: RecordView) -> RecordResponse:
    return RecordResponse(
        uri=view.uri,
        did=view.did,
        collection=view.collection,
        rkey=view.rkey,
        cid=view.cid,
        record=view.record,
        indexed_at=view.indexed_at.isoformat() if view.indexed_at else None,
    )


@router.get("", response_model=RecordPageResponse)
async def browse_records(
    collection: str = Query(..., min_length=1),
    did: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    offset: int | None = Query(default=None, ge=0),
    db: AsyncSession = Depends(get_db),
) -> RecordPageResponse:
    # Cursor pagination is canonical; offset stays for older dashboard builds.
    try:
        page = await record_store.query_records(
            db,
            collection=collection,
            did=did,
            limit=limit,
            cursor=cursor,
            offset=offset,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing records") from exc
    return RecordPageResponse(records=[_to_response(view) for view in page.records], cursor=page.cursor)


@router.delete("/collection", response_model=CollectionDeleteResponse)
async def delete_collection(
    collection: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> CollectionDeleteResponse:
    # Batched and committed per batch; re-issue after an interruption to finish.
    try:
        deleted = await record_store.delete_collection(db, collection)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting collection") from exc
    return CollectionDeleteResponse(collection=collection, deleted=deleted)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record(uri: str = Query(..., min_length=1), db: AsyncSession = Depends(get_db)) -> Response:
    try:
        await record_store.delete_record(db, uri)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting record") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
