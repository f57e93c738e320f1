from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.core.config import get_settings
from lexhost.core.errors import NotFoundError
from lexhost.domain.models import Admin
from lexhost.persistence.repos import admins as admins_repo


logger = logging.getLogger(__name__)

API_KEY_PREFIX = "lxa"
BOOTSTRAP_ADMIN_NAME = "bootstrap"


@dataclass(frozen=True)
class AdminPrincipal:
    admin_id: str | None
    name: str


@dataclass(frozen=True)
class CreatedAdmin:
    admin: Admin
    api_key: str


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, admin_id: str | None = None) -> tuple[str, str, str]:
    # Embed the admin id in the token so operators can trace secrets safely.
    resolved_id = admin_id or uuid4().hex
    raw_key = f"{API_KEY_PREFIX}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, hash_api_key(raw_key)


async def create_admin(session: AsyncSession, *, name: str, raw_key: str | None = None) -> CreatedAdmin:
    admin_id, generated_key, key_hash = generate_api_key()
    if raw_key is not None:
        generated_key, key_hash = raw_key, hash_api_key(raw_key)
    row = await admins_repo.insert_admin(session, admin_id=admin_id, name=name, api_key_hash=key_hash)
    await session.commit()
    logger.info("admin_created id=%s name=%s", admin_id, name)
    return CreatedAdmin(admin=row, api_key=generated_key)


async def list_admins(session: AsyncSession) -> list[Admin]:
    return await admins_repo.list_admins(session)


async def delete_admin(session: AsyncSession, admin_id: str) -> None:
    deleted = await admins_repo.delete_admin(session, admin_id)
    if not deleted:
        await session.rollback()
        raise NotFoundError(f"admin '{admin_id}' not found")
    await session.commit()
    logger.info("admin_deleted id=%s", admin_id)


async def authenticate(session: AsyncSession, raw_key: str) -> AdminPrincipal | None:
    """Match a bearer key against stored admin keys, then the configured secret."""
    if not raw_key:
        return None
    row = await admins_repo.get_by_key_hash(session, hash_api_key(raw_key))
    if row is not None:
        await admins_repo.touch_last_used(session, row.id)
        await session.commit()
        return AdminPrincipal(admin_id=row.id, name=row.name)
    secret = get_settings().admin_secret
    if secret and hmac.compare_digest(raw_key.encode("utf-8"), secret.encode("utf-8")):
        return AdminPrincipal(admin_id=None, name=BOOTSTRAP_ADMIN_NAME)
    return None


async def bootstrap_admin(session: AsyncSession) -> Admin | None:
    # Seed the first admin from admin_secret so a fresh deployment is manageable.
    secret = get_settings().admin_secret
    if not secret or await admins_repo.count_admins(session) > 0:
        return None
    created = await create_admin(session, name=BOOTSTRAP_ADMIN_NAME, raw_key=secret)
    logger.info("admin_bootstrapped id=%s", created.admin.id)
    return created.admin
