from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from lexhost.apps.api.deps import get_network_resolver
from lexhost.apps.api.main import create_app
from lexhost.persistence.db import SessionLocal
from lexhost.services import record_store
from lexhost.services.network_resolver import NetworkResolver
from lexhost.services.resilience import RetryPolicy
from lexhost.tests.utils.lexicons import (
    CALLER_DID,
    OTHER_DID,
    admin_headers,
    query_lexicon,
    record_lexicon,
    store_lexicon,
    wrap_handler,
)


NOTE = "com.example.note"
AUTHORITY_DID = "did:plc:authority1"


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _network_resolver() -> NetworkResolver:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "example.com" and request.url.path == "/.well-known/atproto-did":
            return httpx.Response(200, text=AUTHORITY_DID)
        if request.url.host == "plc.test":
            return httpx.Response(
                200,
                json={"id": AUTHORITY_DID, "service": [{"id": "#atproto_pds", "serviceEndpoint": "https://pds.test"}]},
            )
        if request.url.host == "pds.test" and request.url.params.get("rkey") == NOTE:
            return httpx.Response(200, json={"value": record_lexicon(NOTE)})
        return httpx.Response(404)

    return NetworkResolver(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        plc_url="https://plc.test",
        handle_resolver_url="https://resolver.test",
        policy=RetryPolicy(timeout_ms=1000, max_attempts=1, backoff_ms=1),
    )


@pytest.mark.asyncio
async def test_admin_routes_require_a_valid_key() -> None:
    app = create_app()
    async with _client(app) as client:
        missing = await client.get("/admin/lexicons")
        assert missing.status_code == 401
        payload = missing.json()
        assert payload["error"]["code"] == "AUTH_UNAUTHORIZED"
        assert payload["meta"]["request_id"]
        assert missing.headers["WWW-Authenticate"] == "Bearer"

        wrong = await client.get("/admin/lexicons", headers=admin_headers("lxa_nope"))
        assert wrong.status_code == 401
        assert wrong.json()["error"]["message"] == "Invalid admin key"

        malformed = await client.get("/admin/lexicons", headers={"Authorization": "Token abc"})
        assert malformed.status_code == 401

        traced = await client.get("/admin/lexicons", headers={"X-Request-Id": "req-123"})
        assert traced.headers["X-Request-Id"] == "req-123"
        assert traced.json()["meta"]["request_id"] == "req-123"


@pytest.mark.asyncio
async def test_lexicon_upload_lifecycle() -> None:
    app = create_app()
    headers = admin_headers()
    async with _client(app) as client:
        created = await client.post("/admin/lexicons", json={"lexicon_json": record_lexicon(NOTE)}, headers=headers)
        assert created.status_code == 201
        assert created.json() == {"id": NOTE, "revision": 1}

        again = await client.post(
            "/admin/lexicons",
            json={"lexicon_json": record_lexicon(NOTE), "backfill": True},
            headers=headers,
        )
        assert again.status_code == 200
        assert again.json()["revision"] == 2

        listed = await client.get("/admin/lexicons", headers=headers)
        assert listed.status_code == 200
        rows = listed.json()
        assert [row["id"] for row in rows] == [NOTE]
        assert rows[0]["backfill"] is True
        assert rows[0]["has_script"] is False
        assert rows[0]["lexicon_type"] == "record"

        detail = await client.get(f"/admin/lexicons/{NOTE}", headers=headers)
        assert detail.status_code == 200
        fields = {field["name"]: field["type"] for field in detail.json()["record_fields"]}
        assert fields == {"text": "string", "createdAt": "string"}
        assert detail.json()["lexicon_json"] == record_lexicon(NOTE)

        deleted = await client.delete(f"/admin/lexicons/{NOTE}", headers=headers)
        assert deleted.status_code == 204
        gone = await client.get(f"/admin/lexicons/{NOTE}", headers=headers)
        assert gone.status_code == 404
        assert gone.json()["error"]["code"] == "NotFound"


@pytest.mark.asyncio
async def test_query_lexicon_upload_exposes_script_and_parameters() -> None:
    app = create_app()
    headers = admin_headers()
    lexicon = query_lexicon("com.example.search", parameters={"q": {"type": "string"}, "limit": {"type": "integer"}})
    script = wrap_handler("return {}")
    async with _client(app) as client:
        missing_script = await client.post("/admin/lexicons", json={"lexicon_json": lexicon}, headers=headers)
        assert missing_script.status_code == 400
        assert missing_script.json()["error"]["code"] == "MissingScript"

        broken = await client.post(
            "/admin/lexicons", json={"lexicon_json": lexicon, "script": "function handle("}, headers=headers
        )
        assert broken.status_code == 400
        assert broken.json()["error"]["code"] == "InvalidScript"

        stored = await client.post("/admin/lexicons", json={"lexicon_json": lexicon, "script": script}, headers=headers)
        assert stored.status_code == 201
        detail = (await client.get("/admin/lexicons/com.example.search", headers=headers)).json()
        assert detail["script"] == script
        assert detail["has_script"] is True
        assert sorted(detail["parameter_names"]) == ["limit", "q"]


@pytest.mark.asyncio
async def test_lexicon_upload_validation_errors() -> None:
    app = create_app()
    headers = admin_headers()
    async with _client(app) as client:
        invalid = await client.post(
            "/admin/lexicons",
            json={"lexicon_json": {"lexicon": 1, "id": "not valid", "defs": {}}},
            headers=headers,
        )
        assert invalid.status_code == 400
        assert invalid.json()["error"]["code"] == "InvalidLexicon"

        extra = await client.post(
            "/admin/lexicons",
            json={"lexicon_json": record_lexicon(NOTE), "surprise": True},
            headers=headers,
        )
        assert extra.status_code == 422
        assert extra.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_admin_accounts_can_be_created_used_and_removed() -> None:
    app = create_app()
    async with _client(app) as client:
        created = await client.post("/admin/admins", json={"name": "ops"}, headers=admin_headers())
        assert created.status_code == 201
        payload = created.json()
        api_key = payload["api_key"]
        assert api_key.startswith("lxa_")

        listed = await client.get("/admin/admins", headers=admin_headers(api_key))
        assert listed.status_code == 200
        rows = listed.json()
        assert [row["name"] for row in rows] == ["ops"]
        assert "api_key" not in rows[0]

        removed = await client.delete(f"/admin/admins/{payload['id']}", headers=admin_headers())
        assert removed.status_code == 204
        rejected = await client.get("/admin/admins", headers=admin_headers(api_key))
        assert rejected.status_code == 401

        missing = await client.delete(f"/admin/admins/{payload['id']}", headers=admin_headers())
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_record_browsing_and_deletion() -> None:
    await store_lexicon(record_lexicon(NOTE))
    async with SessionLocal() as session:
        saved = [
            await record_store.save_record(session, did=did, collection=NOTE, record={"text": f"note {i}"})
            for i, did in enumerate([CALLER_DID, CALLER_DID, OTHER_DID])
        ]

    app = create_app()
    headers = admin_headers()
    async with _client(app) as client:
        first = await client.get("/admin/records", params={"collection": NOTE, "limit": 2}, headers=headers)
        assert first.status_code == 200
        page = first.json()
        assert [row["uri"] for row in page["records"]] == [saved[0].uri, saved[1].uri]
        second = await client.get(
            "/admin/records", params={"collection": NOTE, "cursor": page["cursor"]}, headers=headers
        )
        assert [row["did"] for row in second.json()["records"]] == [OTHER_DID]
        assert second.json()["cursor"] is None

        filtered = await client.get("/admin/records", params={"collection": NOTE, "did": OTHER_DID}, headers=headers)
        assert [row["uri"] for row in filtered.json()["records"]] == [saved[2].uri]

        bad_cursor = await client.get("/admin/records", params={"collection": NOTE, "cursor": "x"}, headers=headers)
        assert bad_cursor.status_code == 400
        assert bad_cursor.json()["error"]["code"] == "InvalidParams"

        removed = await client.delete("/admin/records", params={"uri": saved[0].uri}, headers=headers)
        assert removed.status_code == 204
        again = await client.delete("/admin/records", params={"uri": saved[0].uri}, headers=headers)
        assert again.status_code == 404

        wiped = await client.delete("/admin/records/collection", params={"collection": NOTE}, headers=headers)
        assert wiped.status_code == 200
        assert wiped.json() == {"collection": NOTE, "deleted": 2}

        stats = await client.get("/admin/stats", headers=headers)
        assert stats.json() == {"total_records": 0, "collections": [{"collection": NOTE, "count": 0}]}

        telemetry = await client.get("/admin/stats/telemetry", headers=headers)
        assert telemetry.status_code == 200
        assert telemetry.json()["p95_latency_ms"]["admin"] is not None


@pytest.mark.asyncio
async def test_backfill_job_endpoints() -> None:
    await store_lexicon(record_lexicon(NOTE))
    app = create_app()
    headers = admin_headers()
    async with _client(app) as client:
        nothing = await client.post("/admin/backfill", headers=headers)
        assert nothing.status_code == 201
        assert nothing.json()["status"] == "failed"
        assert nothing.json()["error"] == "no record lexicons have backfill enabled"

        scoped = await client.post("/admin/backfill", json={"collection": NOTE, "did": CALLER_DID}, headers=headers)
        assert scoped.status_code == 201
        job = scoped.json()
        assert job["status"] == "pending"
        assert job["did"] == CALLER_DID

        status = await client.get("/admin/backfill/status", headers=headers)
        assert [row["id"] for row in status.json()["jobs"]] == [job["id"], nothing.json()["id"]]

        fetched = await client.get(f"/admin/backfill/{job['id']}", headers=headers)
        assert fetched.json()["collection"] == NOTE

        rejected = await client.post("/admin/backfill", json={"collection": "nope"}, headers=headers)
        assert rejected.status_code == 400
        assert rejected.json()["error"]["code"] == "InvalidInput"

        deleted = await client.delete(f"/admin/backfill/{job['id']}", headers=headers)
        assert deleted.status_code == 204
        missing = await client.get(f"/admin/backfill/{job['id']}", headers=headers)
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_network_lexicon_endpoints() -> None:
    app = create_app()
    app.dependency_overrides[get_network_resolver] = _network_resolver
    headers = admin_headers()
    async with _client(app) as client:
        added = await client.post("/admin/network-lexicons", json={"nsid": NOTE}, headers=headers)
        assert added.status_code == 201
        assert added.json() == {"nsid": NOTE, "authority_did": AUTHORITY_DID, "revision": 1}

        listed = await client.get("/admin/network-lexicons", headers=headers)
        rows = listed.json()
        assert [row["nsid"] for row in rows] == [NOTE]
        assert rows[0]["authority_did"] == AUTHORITY_DID
        assert rows[0]["last_fetched_at"] is not None

        refreshed = await client.post(f"/admin/network-lexicons/{NOTE}/refresh", headers=headers)
        assert refreshed.status_code == 200
        assert refreshed.json()["revision"] == 2

        unknown = await client.post("/admin/network-lexicons", json={"nsid": "org.unknown.thing"}, headers=headers)
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "NotFound"

        removed = await client.delete(f"/admin/network-lexicons/{NOTE}", headers=headers)
        assert removed.status_code == 204
        assert (await client.get("/admin/network-lexicons", headers=headers)).json() == []


@pytest.mark.asyncio
async def test_health_and_openapi_security() -> None:
    app = create_app()
    async with _client(app) as client:
        health = await client.get("/health")
        assert health.status_code == 200
        assert health.json() == {"status": "ok"}

        schema = (await client.get("/openapi.json")).json()
        assert schema["components"]["securitySchemes"]["BearerAuth"]["scheme"] == "bearer"
        assert schema["paths"]["/admin/lexicons"]["get"]["security"] == [{"BearerAuth": []}]
        assert "security" not in schema["paths"]["/health"]["get"]
