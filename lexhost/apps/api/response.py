from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


XRPC_PREFIX = "/xrpc"


class ResponseMeta(BaseModel):
    # Include request metadata for consistent client tracing.
    request_id: str


class ErrorDetail(BaseModel):
    # Standardize error codes/messages with optional structured details.
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    # Wrap admin error responses in a consistent envelope.
    error: ErrorDetail
    meta: ResponseMeta


class XrpcErrorBody(BaseModel):
    # XRPC callers branch on the stable error name, not the message.
    error: str
    message: str


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def is_xrpc_request(request: Request) -> bool:
    return request.url.path.startswith(f"{XRPC_PREFIX}/")


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Return the standard error envelope with request metadata.
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}


def xrpc_error_response(*, error: str, message: str) -> dict[str, Any]:
    return XrpcErrorBody(error=error, message=message).model_dump()
