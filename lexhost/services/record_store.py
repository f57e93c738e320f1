from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.core.config import get_settings
from lexhost.core.errors import InvalidParamsError, NotFoundError, RecordValidationError
from lexhost.domain.identifiers import (
    AtUri,
    compute_cid,
    generate_tid,
    is_valid_did,
    is_valid_nsid,
    is_valid_record_key,
    is_valid_tid,
)
from lexhost.domain.models import StoredRecord
from lexhost.lexicon.schema import LexiconDocument, RecordDef
from lexhost.lexicon.values import DataValidationError, validate_record
from lexhost.persistence.repos import lexicons as lexicons_repo
from lexhost.persistence.repos import records as records_repo
from lexhost.services.cursor import CursorError, decode_records_cursor, encode_records_cursor
from lexhost.services.lexicon_store import load_document, ref_resolver


logger = logging.getLogger(__name__)

LITERAL_PREFIX = "literal:"
SEARCH_DEFAULT_LIMIT = 10


@dataclass(frozen=True)
class CollectionSchema:
    document: LexiconDocument
    key_type: str
    # Raw JSON of defs.main.record, handed to scripts as Record._schema.
    record_schema: dict[str, Any]

    @property
    def property_names(self) -> set[str]:
        return set(self.record_schema.get("properties") or {})


@dataclass(frozen=True)
class SavedRecord:
    uri: str
    cid: str
    rkey: str


@dataclass(frozen=True)
class RecordView:
    uri: str
    did: str
    collection: str
    rkey: str
    cid: str
    record: dict[str, Any]
    indexed_at: datetime | None

    def with_uri(self) -> dict[str, Any]:
        return {**self.record, "uri": self.uri}


@dataclass(frozen=True)
class RecordPage:
    records: list[RecordView]
    cursor: str | None


def _view(row: StoredRecord) -> RecordView:
    return RecordView(
        uri=row.uri,
        did=row.did,
        collection=row.collection,
        rkey=row.rkey,
        cid=row.cid,
        record=row.record,
        indexed_at=row.indexed_at,
    )


def is_valid_key_type(key_type: Any) -> bool:
    if key_type in {"tid", "any", "nsid"}:
        return True
    return isinstance(key_type, str) and key_type.startswith(LITERAL_PREFIX) and len(key_type) > len(LITERAL_PREFIX)


def assign_rkey(key_type: str, rkey: str | None) -> str:
    """Resolve the record key for a save according to the collection key type."""
    if key_type.startswith(LITERAL_PREFIX):
        literal = key_type[len(LITERAL_PREFIX):]
        # Singleton collections: every save for an authority lands on the same key.
        if rkey is not None and rkey != literal:
            raise RecordValidationError(f"record key must be '{literal}' for this collection")
        return literal
    if key_type == "tid":
        if rkey is None:
            return generate_tid()
        if not is_valid_tid(rkey):
            raise RecordValidationError(f"record key '{rkey}' is not a valid TID")
        return rkey
    if key_type == "any":
        resolved = rkey if rkey is not None else generate_tid()
        if not is_valid_record_key(resolved):
            raise RecordValidationError(f"record key '{resolved}' is not a valid record key")
        return resolved
    if key_type == "nsid":
        if rkey is None or not is_valid_nsid(rkey):
            raise RecordValidationError("record key must be a valid NSID for this collection")
        return rkey
    raise RecordValidationError(f"unsupported record key type '{key_type}'")


async def describe_collection(session: AsyncSession, collection: str) -> CollectionSchema | None:
    """Schema for a collection, or None when no lexicon declares it."""
    row = await lexicons_repo.get_lexicon(session, collection)
    if row is None:
        return None
    if row.lexicon_type != "record":
        raise RecordValidationError(f"'{collection}' is a {row.lexicon_type} lexicon, not a record collection")
    document = load_document(row)
    main = document.main
    if not isinstance(main, RecordDef):
        raise RecordValidationError(f"'{collection}' does not define a record")
    return CollectionSchema(
        document=document,
        key_type=main.key,
        record_schema=row.lexicon_json["defs"]["main"]["record"],
    )


async def save_record(
    session: AsyncSession,
    *,
    did: str,
    collection: str,
    record: dict[str, Any],
    rkey: str | None = None,
    key_type: str | None = None,
) -> SavedRecord:
    """Validate and upsert a record at ``at://did/collection/rkey``.

    The declared lexicon key type wins over ``key_type``; the hint only
    applies to collections without a record lexicon (default ``tid``).
    """
    if not is_valid_did(did):
        raise RecordValidationError(f"'{did}' is not a valid DID")
    if not is_valid_nsid(collection):
        raise RecordValidationError(f"'{collection}' is not a valid collection NSID")
    if not isinstance(record, dict):
        raise RecordValidationError("record must be an object")
    if key_type is not None and not is_valid_key_type(key_type):
        raise RecordValidationError(f"invalid key type '{key_type}'")
    schema = await describe_collection(session, collection)
    if schema is not None:
        resolver = await ref_resolver(session, schema.document)
        try:
            validate_record(record, schema.document, resolver)
        except DataValidationError as exc:
            raise RecordValidationError(str(exc), details={"path": exc.path}) from exc
    resolved_rkey = assign_rkey(schema.key_type if schema else (key_type or "tid"), rkey)
    uri = str(AtUri.build(did, collection, resolved_rkey))
    cid = compute_cid(record)
    try:
        await records_repo.upsert_record(
            session,
            uri=uri,
            did=did,
            collection=collection,
            rkey=resolved_rkey,
            record=record,
            cid=cid,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("record_saved uri=%s cid=%s", uri, cid)
    return SavedRecord(uri=uri, cid=cid, rkey=resolved_rkey)


async def get_record(session: AsyncSession, uri: str) -> RecordView:
    row = await records_repo.get_by_uri(session, uri)
    if row is None:
        raise NotFoundError(f"record '{uri}' not found")
    return _view(row)


async def get_records(session: AsyncSession, uris: list[str]) -> list[RecordView | None]:
    # Preserve the caller's order; missing URIs stay as None.
    found = await records_repo.get_by_uris(session, uris)
    return [_view(found[uri]) if uri in found else None for uri in uris]


def clamp_limit(limit: int | None) -> int:
    settings = get_settings()
    if limit is None:
        return settings.record_query_default_limit
    return max(1, min(int(limit), settings.record_query_max_limit))


async def query_records(
    session: AsyncSession,
    *,
    collection: str,
    did: str | None = None,
    limit: int | None = None,
    cursor: str | None = None,
    offset: int | None = None,
) -> RecordPage:
    """Page through a collection in insertion order.

    ``cursor`` is canonical and stable under concurrent writes. ``offset`` is
    accepted for older scripts; the returned cursor always uses the signed
    form so callers can switch over.
    """
    settings = get_settings()
    page_size = clamp_limit(limit)
    after_seq = None
    if cursor:
        try:
            after_seq = decode_records_cursor(
                cursor, collection=collection, did=did, secret=settings.cursor_secret
            )
        except CursorError as exc:
            raise InvalidParamsError(str(exc)) from exc
        offset = None
    if offset is not None and offset < 0:
        raise InvalidParamsError("offset must not be negative")
    rows = await records_repo.list_page(
        session,
        collection=collection,
        did=did,
        after_seq=after_seq,
        offset=offset,
        limit=page_size + 1,
    )
    has_more = len(rows) > page_size
    rows = rows[:page_size]
    next_cursor = None
    if has_more and rows:
        next_cursor = encode_records_cursor(
            collection=collection, did=did, last_seq=rows[-1].seq, secret=settings.cursor_secret
        )
    return RecordPage(records=[_view(row) for row in rows], cursor=next_cursor)


async def count_records(session: AsyncSession, *, collection: str, did: str | None = None) -> int:
    return await records_repo.count_records(session, collection=collection, did=did)


async def search_records(
    session: AsyncSession,
    *,
    collection: str,
    field: str,
    query: str,
    limit: int | None = None,
) -> list[RecordView]:
    rows = await records_repo.search_field(
        session,
        collection=collection,
        field=field,
        query=query,
        limit=clamp_limit(SEARCH_DEFAULT_LIMIT if limit is None else limit),
    )
    return [_view(row) for row in rows]


async def delete_record(session: AsyncSession, uri: str) -> None:
    deleted = await records_repo.delete_by_uri(session, uri)
    if not deleted:
        await session.rollback()
        raise NotFoundError(f"record '{uri}' not found")
    await session.commit()
    logger.info("record_deleted uri=%s", uri)


async def delete_collection(session: AsyncSession, collection: str, *, batch_size: int | None = None) -> int:
    """Delete every record in a collection, one committed batch at a time.

    Not atomic across the collection: if interrupted, re-issue to finish.
    """
    size = max(1, batch_size or get_settings().collection_delete_batch_size)
    total = 0
    while True:
        deleted = await records_repo.delete_collection_batch(session, collection=collection, batch_size=size)
        await session.commit()
        total += deleted
        if deleted < size:
            break
    logger.info("collection_deleted collection=%s deleted=%s", collection, total)
    return total


async def collection_stats(session: AsyncSession) -> dict[str, Any]:
    # Record lexicons are listed even when empty.
    counts = await records_repo.counts_by_collection(session)
    for row in await lexicons_repo.list_record_lexicons(session):
        counts.setdefault(row.id, 0)
    collections = [{"collection": name, "count": counts[name]} for name in sorted(counts)]
    return {"total_records": sum(counts.values()), "collections": collections}
