from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.apps.api.deps import get_caller_did, get_db, get_script_runner
from lexhost.apps.api.openapi import XRPC_ERROR_RESPONSES
from lexhost.core.errors import InvalidInputError
from lexhost.scripting.runtime import ScriptRunner
from lexhost.services.dispatcher import dispatch_procedure, dispatch_query


router = APIRouter(prefix="/xrpc", tags=["xrpc"], responses=XRPC_ERROR_RESPONSES)


def _query_params(request: Request) -> dict[str, list[str]]:
    # Keep repeated keys so array parameters survive.
    params: dict[str, list[str]] = {}
    for key, value in request.query_params.multi_items():
        params.setdefault(key, []).append(value)
    return params


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise InvalidInputError("request body must be valid JSON") from exc


@router.get("/{method}")
async def xrpc_query(
    method: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    caller_did: str | None = Depends(get_caller_did),
    runner: ScriptRunner = Depends(get_script_runner),
) -> JSONResponse:
    # Queries are the public read path; the caller DID is passed through when present.
    result = await dispatch_query(
        db,
        method=method,
        raw_params=_query_params(request),
        runner=runner,
        caller_did=caller_did,
    )
    return JSONResponse(content=result)


@router.post("/{method}")
async def xrpc_procedure(
    method: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    caller_did: str | None = Depends(get_caller_did),
    runner: ScriptRunner = Depends(get_script_runner),
) -> JSONResponse:
    body = await _json_body(request)
    result = await dispatch_procedure(
        db,
        method=method,
        body=body,
        runner=runner,
        caller_did=caller_did,
        raw_params=_query_params(request),
    )
    return JSONResponse(content=result)
