from __future__ import annotations

import asyncio

import pytest

from lexhost.core.errors import (
    InvalidScriptError,
    MissingScriptError,
    NotFoundError,
    SchemaValidationError,
)
from lexhost.persistence.db import SessionLocal
from lexhost.services import lexicon_store
from lexhost.services.network_resolver import NetworkResolver, ResolvedLexicon
from lexhost.tests.utils.lexicons import (
    procedure_lexicon,
    query_lexicon,
    record_lexicon,
    store_lexicon,
    wrap_handler,
)


class StaticResolver(NetworkResolver):
    def __init__(self, documents: dict[str, dict]) -> None:
        super().__init__()
        self.documents = documents
        self.calls: list[str] = []

    async def resolve(self, nsid: str) -> ResolvedLexicon | None:
        self.calls.append(nsid)
        document = self.documents.get(nsid)
        if document is None:
            return None
        return ResolvedLexicon(
            nsid=nsid, authority_did="did:plc:authority1", pds_endpoint="https://pds.test", document=document
        )


@pytest.mark.asyncio
async def test_put_creates_then_supersedes_revision() -> None:
    first = await store_lexicon(record_lexicon("com.example.note"))
    assert (first.id, first.revision) == ("com.example.note", 1)

    updated = record_lexicon("com.example.note", properties={"title": {"type": "string"}})
    second = await store_lexicon(updated, backfill=True)
    assert second.revision == 2

    async with SessionLocal() as session:
        row = await lexicon_store.get_lexicon(session, "com.example.note")
    assert row.revision == 2
    assert row.backfill is True
    assert row.lexicon_json == updated
    assert row.lexicon_type == "record"
    assert row.source == lexicon_store.SOURCE_MANUAL


@pytest.mark.asyncio
async def test_scripted_types_require_a_script_unless_deferred() -> None:
    with pytest.raises(MissingScriptError):
        await store_lexicon(query_lexicon("com.example.listNotes"))

    deferred = await store_lexicon(
        query_lexicon("com.example.listNotes"), defer_script=True, target_collection="com.example.note"
    )
    assert deferred.revision == 1
    async with SessionLocal() as session:
        row = await lexicon_store.get_lexicon(session, "com.example.listNotes")
    assert row.script is None
    assert row.target_collection == "com.example.note"


@pytest.mark.asyncio
async def test_scripts_are_compiled_at_upload() -> None:
    with pytest.raises(InvalidScriptError):
        await store_lexicon(procedure_lexicon("com.example.createNote"), script="function handle( end")
    with pytest.raises(InvalidScriptError):
        await store_lexicon(procedure_lexicon("com.example.createNote"), script="local x = 1")
    with pytest.raises(InvalidScriptError):
        await store_lexicon(record_lexicon("com.example.note"), script=wrap_handler("return {}"))

    stored = await store_lexicon(procedure_lexicon("com.example.createNote"), script=wrap_handler("return {}"))
    assert stored.revision == 1


@pytest.mark.asyncio
async def test_invalid_documents_and_options_are_rejected() -> None:
    with pytest.raises(SchemaValidationError):
        await store_lexicon({"lexicon": 1, "id": "com.example.note", "defs": {}})
    with pytest.raises(SchemaValidationError) as exc_info:
        await store_lexicon(record_lexicon("com.example.note"), action="merge")
    assert exc_info.value.path == "action"
    with pytest.raises(SchemaValidationError):
        await store_lexicon(record_lexicon("com.example.note"), target_collection="nope")


@pytest.mark.asyncio
async def test_concurrent_puts_produce_consecutive_revisions() -> None:
    results = await asyncio.gather(
        *(store_lexicon(record_lexicon("com.example.note", properties={f"f{i}": {"type": "string"}})) for i in range(3))
    )
    assert sorted(result.revision for result in results) == [1, 2, 3]
    async with SessionLocal() as session:
        row = await lexicon_store.get_lexicon(session, "com.example.note")
    assert row.revision == 3


@pytest.mark.asyncio
async def test_delete_lexicon() -> None:
    await store_lexicon(record_lexicon("com.example.note"))
    async with SessionLocal() as session:
        await lexicon_store.delete_lexicon(session, "com.example.note")
        with pytest.raises(NotFoundError):
            await lexicon_store.get_lexicon(session, "com.example.note")
        with pytest.raises(NotFoundError):
            await lexicon_store.delete_lexicon(session, "com.example.note")


@pytest.mark.asyncio
async def test_network_lexicon_add_refresh_and_delete() -> None:
    resolver = StaticResolver({"com.example.note": record_lexicon("com.example.note")})
    async with SessionLocal() as session:
        added = await lexicon_store.add_network_lexicon(
            session, nsid="com.example.note", resolver=resolver, backfill=True
        )
        assert added.authority_did == "did:plc:authority1"
        assert added.revision == 1

        refreshed = await lexicon_store.refresh_network_lexicon(session, nsid="com.example.note", resolver=resolver)
        assert refreshed.revision == 2

        rows = await lexicon_store.list_network_lexicons(session)
        assert [row.id for row in rows] == ["com.example.note"]
        assert rows[0].authority_did == "did:plc:authority1"
        assert rows[0].backfill is True

        await lexicon_store.delete_network_lexicon(session, "com.example.note")
        assert await lexicon_store.list_network_lexicons(session) == []
    assert resolver.calls == ["com.example.note", "com.example.note"]


@pytest.mark.asyncio
async def test_network_procedures_are_stored_without_scripts() -> None:
    resolver = StaticResolver({"com.example.createNote": procedure_lexicon("com.example.createNote")})
    async with SessionLocal() as session:
        await lexicon_store.add_network_lexicon(
            session, nsid="com.example.createNote", resolver=resolver, target_collection="com.example.note"
        )
        row = await lexicon_store.get_lexicon(session, "com.example.createNote")
    assert row.script is None
    assert row.source == lexicon_store.SOURCE_NETWORK


@pytest.mark.asyncio
async def test_unresolvable_network_lexicon_is_not_found() -> None:
    resolver = StaticResolver({})
    await store_lexicon(record_lexicon("com.example.note"))
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await lexicon_store.add_network_lexicon(session, nsid="com.example.missing", resolver=resolver)
        # Manual lexicons are not refreshable or deletable through the network surface.
        with pytest.raises(NotFoundError):
            await lexicon_store.refresh_network_lexicon(session, nsid="com.example.note", resolver=resolver)
        with pytest.raises(NotFoundError):
            await lexicon_store.delete_network_lexicon(session, "com.example.note")
