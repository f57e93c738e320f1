from __future__ import annotations

from typing import Any

from lexhost.apps.api.response import ErrorEnvelope, XrpcErrorBody


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _admin_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


def _xrpc_response(description: str, name: str, message: str) -> dict[str, Any]:
    return {
        "model": XrpcErrorBody,
        "description": description,
        "content": {"application/json": {"example": {"error": name, "message": message}}},
    }


ADMIN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _admin_response("Bad request", "InvalidLexicon", "defs.extra.type: primary types are only allowed in main"),
    401: _admin_response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    404: _admin_response("Not found", "NotFound", "lexicon 'com.example.note' not found"),
    409: _admin_response("Conflict", "Conflict", "lexicon 'com.example.note' was modified concurrently; retry the upload"),
    500: _admin_response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}

XRPC_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _xrpc_response("Invalid params or input", "InvalidParams", "unknown parameter 'foo'"),
    401: _xrpc_response("Caller DID required", "AuthenticationRequired", "com.example.createNote requires an authenticated caller"),
    404: _xrpc_response("Unknown method", "MethodNotFound", "method not found: com.example.missing"),
    500: _xrpc_response("Script failure", "ScriptError", "handler:3: boom"),
    504: _xrpc_response("Script timeout", "ScriptTimeout", "script exceeded execution limit"),
}
