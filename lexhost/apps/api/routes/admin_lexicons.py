from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.apps.api.deps import get_db, require_admin
from lexhost.apps.api.openapi import ADMIN_ERROR_RESPONSES
from lexhost.core.errors import SchemaValidationError
from lexhost.domain.models import Lexicon
from lexhost.lexicon.validator import parameter_names, record_fields
from lexhost.services import lexicon_store


router = APIRouter(
    prefix="/admin/lexicons",
    tags=["admin-lexicons"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class LexiconUploadRequest(BaseModel):
    lexicon_json: dict[str, Any]
    backfill: bool = False
    target_collection: str | None = None
    action: str | None = None
    script: str | None = None
    # Store a query/procedure without a script; built-in handlers serve it.
    defer_script: bool = False

    model_config = {"extra": "forbid"}


class LexiconPutResponse(BaseModel):
    id: str
    revision: int


class LexiconSummary(BaseModel):
    id: str
    revision: int
    lexicon_type: str
    backfill: bool
    target_collection: str | None
    action: str | None
    source: str
    has_script: bool
    updated_at: str | None


class RecordFieldResponse(BaseModel):
    name: str
    type: str
    description: str | None = None
    required: bool = False


class LexiconDetail(LexiconSummary):
    lexicon_json: dict[str, Any]
    script: str | None
    authority_did: str | None
    last_fetched_at: str | None
    created_at: str | None
    record_fields: list[RecordFieldResponse] = Field(default_factory=list)
    parameter_names: list[str] = Field(default_factory=list)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def to_summary(row: Lexicon) -> LexiconSummary:
    return LexiconSummary(
        id=row.id,
        revision=row.revision,
        lexicon_type=row.lexicon_type,
        backfill=row.backfill,
        target_collection=row.target_collection,
        action=row.action,
        source=row.source,
        has_script=row.script is not None,
        updated_at=_iso(row.updated_at),
    )


def to_detail(row: Lexicon) -> LexiconDetail:
    # Extraction metadata feeds editor completions in the admin UI.
    fields: list[RecordFieldResponse] = []
    params: list[str] = []
    try:
        document = lexicon_store.load_document(row)
    except SchemaValidationError:
        document = None
    if document is not None:
        fields = [
            RecordFieldResponse(name=f.name, type=f.type, description=f.description, required=f.required)
            for f in record_fields(document)
        ]
        params = parameter_names(document)
    return LexiconDetail(
        **to_summary(row).model_dump(),
        lexicon_json=row.lexicon_json,
        script=row.script,
        authority_did=row.authority_did,
        last_fetched_at=_iso(row.last_fetched_at),
        created_at=_iso(row.created_at),
        record_fields=fields,
        parameter_names=params,
    )


@router.get("", response_model=list[LexiconSummary])
async def list_lexicons(db: AsyncSession = Depends(get_db)) -> list[LexiconSummary]:
    try:
        rows = await lexicon_store.list_lexicons(db)
    except SQLAlchemyError as exc:
        # Shield clients from raw database errors while still returning a useful status.
        raise HTTPException(status_code=500, detail="Database error while listing lexicons") from exc
    return [to_summary(row) for row in rows]


@router.get("/{lexicon_id}", response_model=LexiconDetail)
async def get_lexicon(lexicon_id: str, db: AsyncSession = Depends(get_db)) -> LexiconDetail:
    try:
        row = await lexicon_store.get_lexicon(db, lexicon_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching lexicon") from exc
    return to_detail(row)


@router.post("", response_model=LexiconPutResponse)
async def upload_lexicon(
    payload: LexiconUploadRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> LexiconPutResponse:
    # First revision creates the lexicon; later uploads supersede it.
    try:
        result = await lexicon_store.put_lexicon(
            db,
            lexicon_json=payload.lexicon_json,
            backfill=payload.backfill,
            target_collection=payload.target_collection,
            action=payload.action,
            script=payload.script,
            defer_script=payload.defer_script,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while storing lexicon") from exc
    response.status_code = status.HTTP_201_CREATED if result.revision == 1 else status.HTTP_200_OK
    return LexiconPutResponse(id=result.id, revision=result.revision)


@router.delete("/{lexicon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_lexicon(lexicon_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    try:
        await lexicon_store.delete_lexicon(db, lexicon_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting lexicon") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
