from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.apps.api.deps import get_db, get_network_resolver, require_admin
from lexhost.apps.api.openapi import ADMIN_ERROR_RESPONSES
from lexhost.domain.models import Lexicon
from lexhost.services import lexicon_store
from lexhost.services.network_resolver import NetworkResolver


router = APIRouter(
    prefix="/admin/network-lexicons",
    tags=["admin-network-lexicons"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class NetworkLexiconRequest(BaseModel):
    nsid: str
    target_collection: str | None = None
    backfill: bool = False

    model_config = {"extra": "forbid"}


class NetworkLexiconResponse(BaseModel):
    nsid: str
    authority_did: str | None
    target_collection: str | None
    revision: int
    lexicon_type: str
    last_fetched_at: str | None
    created_at: str | None


class NetworkPutResponse(BaseModel):
    nsid: str
    authority_did: str
    revision: int


def _to_response(row: Lexicon) -> NetworkLexiconResponse:
    return NetworkLexiconResponse(
        nsid=row.id,
        authority_did=row.authority_did,
        target_collection=row.target_collection,
        revision=row.revision,
        lexicon_type=row.lexicon_type,
        last_fetched_at=row.last_fetched_at.isoformat() if row.last_fetched_at else None,
        created_at=row.created_at.isoformat() if row.created_at else None,
    )


@router.get("", response_model=list[NetworkLexiconResponse])
async def list_network_lexicons(db: AsyncSession = Depends(get_db)) -> list[NetworkLexiconResponse]:
    try:
        rows = await lexicon_store.list_network_lexicons(db)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing network lexicons") from exc
    return [_to_response(row) for row in rows]


@router.post("", response_model=NetworkPutResponse, status_code=status.HTTP_201_CREATED)
async def add_network_lexicon(
    payload: NetworkLexiconRequest,
    db: AsyncSession = Depends(get_db),
    resolver: NetworkResolver = Depends(get_network_resolver),
) -> NetworkPutResponse:
    # Unresolvable NSIDs surface as NotFound, never as upstream failures.
    result = await lexicon_store.add_network_lexicon(
        db,
        nsid=payload.nsid,
        resolver=resolver,
        target_collection=payload.target_collection,
        backfill=payload.backfill,
    )
    return NetworkPutResponse(nsid=result.nsid, authority_did=result.authority_did, revision=result.revision)


@router.post("/{nsid}/refresh", response_model=NetworkPutResponse)
async def refresh_network_lexicon(
    nsid: str,
    db: AsyncSession = Depends(get_db),
    resolver: NetworkResolver = Depends(get_network_resolver),
) -> NetworkPutResponse:
    result = await lexicon_store.refresh_network_lexicon(db, nsid=nsid, resolver=resolver)
    return NetworkPutResponse(nsid=result.nsid, authority_did=result.authority_did, revision=result.revision)


@router.delete("/{nsid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_network_lexicon(nsid: str, db: AsyncSession = Depends(get_db)) -> Response:
    try:
        await lexicon_store.delete_network_lexicon(db, nsid)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting network lexicon") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
