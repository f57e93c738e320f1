from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.core.config import get_settings
from lexhost.core.errors import AuthRequiredError
from lexhost.domain.identifiers import is_valid_did
from lexhost.persistence.db import get_session
from lexhost.scripting.runtime import ScriptRunner
from lexhost.services.admins import AdminPrincipal, authenticate
from lexhost.services.network_resolver import NetworkResolver


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for admin key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_admin(request: Request, db: AsyncSession = Depends(get_db)) -> AdminPrincipal:
    # Admin routes accept stored admin keys first, then the configured secret.
    settings = get_settings()
    token = _parse_bearer_token(request.headers.get(settings.admin_auth_header))
    if token is None:
        raise _auth_error("Missing or invalid bearer token")
    principal = await authenticate(db, token)
    if principal is None:
        logger.info("admin_auth_rejected path=%s", request.url.path)
        raise _auth_error("Invalid admin key")
    return principal


def get_caller_did(request: Request) -> str | None:
    # The upstream auth layer resolves the caller; this service only trusts the header.
    value = request.headers.get(get_settings().caller_did_header)
    if value is None or not value.strip():
        return None
    value = value.strip()
    if not is_valid_did(value):
        raise AuthRequiredError("caller DID header is not a valid DID")
    return value


def get_script_runner() -> ScriptRunner:
    return ScriptRunner()


def get_network_resolver() -> NetworkResolver:
    return NetworkResolver()
