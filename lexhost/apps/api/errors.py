from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lexhost.apps.api.response import error_response, is_xrpc_request, xrpc_error_response
from lexhost.core.errors import LexhostError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# XRPC error names for failures raised outside the lexhost error hierarchy.
_XRPC_ERROR_NAMES: dict[int, str] = {
    400: "InvalidRequest",
    401: "AuthenticationRequired",
    403: "Forbidden",
    404: "MethodNotFound",
    405: "MethodNotImplemented",
    500: "InternalServerError",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def lexhost_exception_handler(request: Request, exc: LexhostError) -> JSONResponse:
    # Domain errors carry their own status and stable name on both surfaces.
    if is_xrpc_request(request):
        payload = xrpc_error_response(error=exc.error_name, message=exc.message)
    else:
        payload = error_response(request=request, code=exc.error_name, message=exc.message, details=jsonable_encoder(exc.details))
    return JSONResponse(content=payload, status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Normalize HTTPExceptions into the surface-specific error body.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    if is_xrpc_request(request):
        name = _XRPC_ERROR_NAMES.get(exc.status_code, "InternalServerError")
        return JSONResponse(
            content=xrpc_error_response(error=name, message=message),
            status_code=exc.status_code,
            headers=exc.headers,
        )
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure Starlette-raised exceptions (unknown routes, bad methods) are wrapped consistently.
    return await http_exception_handler(
        request, HTTPException(status_code=exc.status_code, detail=exc.detail, headers=exc.headers)
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors with structured details for UI/SDK parsing.
    if is_xrpc_request(request):
        return JSONResponse(
            content=xrpc_error_response(error="InvalidRequest", message="Validation error"),
            status_code=400,
        )
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if is_xrpc_request(request):
        return JSONResponse(
            content=xrpc_error_response(error="InternalServerError", message="Internal server error"),
            status_code=500,
        )
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
