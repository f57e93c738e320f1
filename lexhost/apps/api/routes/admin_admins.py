from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.apps.api.deps import get_db, require_admin
from lexhost.apps.api.openapi import ADMIN_ERROR_RESPONSES
from lexhost.domain.models import Admin
from lexhost.services import admins


router = APIRouter(
    prefix="/admin/admins",
    tags=["admin-admins"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class AdminCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)

    model_config = {"extra": "forbid"}


class AdminResponse(BaseModel):
    id: str
    name: str
    created_at: datetime | None
    last_used_at: datetime | None


class AdminCreateResponse(AdminResponse):
    # Returned exactly once; only the hash is stored.
    api_key: str


def _to_response(row: Admin) -> AdminResponse:
    return AdminResponse(id=row.id, name=row.name, created_at=row.created_at, last_used_at=row.last_used_at)


@router.post("", response_model=AdminCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_admin(payload: AdminCreateRequest, db: AsyncSession = Depends(get_db)) -> AdminCreateResponse:
    try:
        created = await admins.create_admin(db, name=payload.name)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating admin") from exc
    return AdminCreateResponse(**_to_response(created.admin).model_dump(), api_key=created.api_key)


@router.get("", response_model=list[AdminResponse])
async def list_admins(db: AsyncSession = Depends(get_db)) -> list[AdminResponse]:
    try:
        rows = await admins.list_admins(db)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing admins") from exc
    return [_to_response(row) for row in rows]


@router.delete("/{admin_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_admin(admin_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    try:
        await admins.delete_admin(db, admin_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting admin") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
