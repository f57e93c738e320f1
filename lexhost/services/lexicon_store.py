from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.core.config import get_settings
from lexhost.core.errors import (
    ConflictError,
    InvalidScriptError,
    MissingScriptError,
    NotFoundError,
    SchemaValidationError,
)
from lexhost.domain.identifiers import is_valid_nsid
from lexhost.domain.models import Lexicon
from lexhost.lexicon.schema import LexiconDocument
from lexhost.lexicon.validator import external_refs, lexicon_type, validate_lexicon
from lexhost.lexicon.values import RefResolver
from lexhost.persistence.repos import lexicons as lexicons_repo
from lexhost.scripting.sandbox import check_script
from lexhost.services.network_resolver import NetworkResolver


logger = logging.getLogger(__name__)

VALID_ACTIONS = ("create", "update", "delete", "upsert")
SCRIPTED_TYPES = frozenset({"query", "procedure"})
SOURCE_MANUAL = "manual"
SOURCE_NETWORK = "network"


@dataclass(frozen=True)
class PutResult:
    id: str
    revision: int


@dataclass(frozen=True)
class NetworkPutResult:
    nsid: str
    authority_did: str
    revision: int


def parse_action(action: str | None) -> str | None:
    if action is None or action == "":
        return None
    if action not in VALID_ACTIONS:
        raise SchemaValidationError(
            f"invalid action '{action}': must be create, update, delete, or upsert",
            path="action",
        )
    return action


def load_document(row: Lexicon) -> LexiconDocument:
    # Stored documents were validated on put; re-parse to get the typed form.
    return validate_lexicon(row.lexicon_json)


async def ref_resolver(session: AsyncSession, document: LexiconDocument) -> RefResolver:
    """Resolver for ``document`` with every directly referenced stored lexicon loaded."""
    others: dict[str, LexiconDocument] = {}
    for row in await lexicons_repo.get_lexicons(session, external_refs(document)):
        try:
            others[row.id] = load_document(row)
        except SchemaValidationError:
            logger.warning("lexicon_ref_unparseable id=%s", row.id)
    return RefResolver(document=document, others=others)


async def put_lexicon(
    session: AsyncSession,
    *,
    lexicon_json: dict[str, Any],
    backfill: bool = False,
    target_collection: str | None = None,
    action: str | None = None,
    script: str | None = None,
    defer_script: bool = False,
    source: str = SOURCE_MANUAL,
    authority_did: str | None = None,
) -> PutResult:
    """Validate and store a lexicon as the next revision of its id.

    The revision bump is a compare-and-swap on the current revision; losers of
    a race retry against the fresh row up to ``lexicon_put_max_attempts``
    before surfacing ConflictError.
    """
    document = validate_lexicon(lexicon_json)
    kind = lexicon_type(document)
    action = parse_action(action)
    if target_collection is not None and not is_valid_nsid(target_collection):
        raise SchemaValidationError(f"'{target_collection}' is not a valid NSID", path="target_collection")
    script = script if script and script.strip() else None
    if kind in SCRIPTED_TYPES:
        if script is None and not defer_script:
            raise MissingScriptError(f"{kind} lexicon '{document.id}' requires a script")
        if script is not None:
            await check_script(script)
    elif script is not None:
        raise InvalidScriptError(f"{kind} lexicons cannot carry a script")

    values: dict[str, Any] = {
        "lexicon_type": kind,
        "lexicon_json": lexicon_json,
        "backfill": backfill,
        "target_collection": target_collection,
        "action": action,
        "script": script,
        "source": source,
        "authority_did": authority_did if source == SOURCE_NETWORK else None,
        "last_fetched_at": datetime.now(timezone.utc) if source == SOURCE_NETWORK else None,
    }
    max_attempts = max(1, get_settings().lexicon_put_max_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            current = await lexicons_repo.get_lexicon(session, document.id)
            if current is None:
                await lexicons_repo.insert_lexicon(session, lexicon_id=document.id, values=values)
                revision = 1
            else:
                swapped = await lexicons_repo.swap_revision(
                    session,
                    lexicon_id=document.id,
                    expected_revision=current.revision,
                    values=values,
                )
                if not swapped:
                    await session.rollback()
                    logger.info("lexicon_put_conflict id=%s attempt=%s", document.id, attempt)
                    continue
                revision = current.revision + 1
            await session.commit()
        except (IntegrityError, OperationalError) as exc:
            # A concurrent first insert or lock contention; retry against the fresh row.
            await session.rollback()
            logger.info(
                "lexicon_put_retry id=%s attempt=%s error=%s", document.id, attempt, type(exc).__name__
            )
            continue
        logger.info("lexicon_put id=%s revision=%s type=%s source=%s", document.id, revision, kind, source)
        return PutResult(id=document.id, revision=revision)
    raise ConflictError(f"lexicon '{document.id}' was modified concurrently; retry the upload")


async def get_lexicon(session: AsyncSession, lexicon_id: str) -> Lexicon:
    row = await lexicons_repo.get_lexicon(session, lexicon_id)
    if row is None:
        raise NotFoundError(f"lexicon '{lexicon_id}' not found")
    return row


async def list_lexicons(session: AsyncSession) -> list[Lexicon]:
    return await lexicons_repo.list_lexicons(session)


async def delete_lexicon(session: AsyncSession, lexicon_id: str) -> None:
    deleted = await lexicons_repo.delete_lexicon(session, lexicon_id)
    if not deleted:
        await session.rollback()
        raise NotFoundError(f"lexicon '{lexicon_id}' not found")
    await session.commit()
    logger.info("lexicon_deleted id=%s", lexicon_id)


async def add_network_lexicon(
    session: AsyncSession,
    *,
    nsid: str,
    resolver: NetworkResolver,
    target_collection: str | None = None,
    backfill: bool = False,
) -> NetworkPutResult:
    if not is_valid_nsid(nsid):
        raise SchemaValidationError(f"'{nsid}' is not a valid NSID", path="nsid")
    resolved = await resolver.resolve(nsid)
    if resolved is None:
        raise NotFoundError(f"lexicon '{nsid}' could not be resolved from the network")
    if resolved.document.get("id") != nsid:
        raise SchemaValidationError(f"fetched lexicon id does not match '{nsid}'", path="id")
    # Network documents never carry scripts; methods fall back to built-in handlers.
    result = await put_lexicon(
        session,
        lexicon_json=resolved.document,
        backfill=backfill,
        target_collection=target_collection,
        defer_script=True,
        source=SOURCE_NETWORK,
        authority_did=resolved.authority_did,
    )
    logger.info(
        "network_lexicon_stored nsid=%s authority=%s revision=%s", nsid, resolved.authority_did, result.revision
    )
    return NetworkPutResult(nsid=nsid, authority_did=resolved.authority_did, revision=result.revision)


async def refresh_network_lexicon(session: AsyncSession, *, nsid: str, resolver: NetworkResolver) -> NetworkPutResult:
    row = await lexicons_repo.get_lexicon(session, nsid)
    if row is None or row.source != SOURCE_NETWORK:
        raise NotFoundError(f"network lexicon '{nsid}' not found")
    return await add_network_lexicon(
        session,
        nsid=nsid,
        resolver=resolver,
        target_collection=row.target_collection,
        backfill=row.backfill,
    )


async def list_network_lexicons(session: AsyncSession) -> list[Lexicon]:
    return await lexicons_repo.list_lexicons(session, source=SOURCE_NETWORK)


async def delete_network_lexicon(session: AsyncSession, nsid: str) -> None:
    deleted = await lexicons_repo.delete_lexicon(session, nsid, source=SOURCE_NETWORK)
    if not deleted:
        await session.rollback()
        raise NotFoundError(f"network lexicon '{nsid}' not found")
    await session.commit()
    logger.info("network_lexicon_deleted nsid=%s", nsid)
