from __future__ import annotations

from typing import Callable

import httpx
import pytest

from lexhost.services.network_resolver import NetworkResolver
from lexhost.services.resilience import RetryPolicy
from lexhost.tests.utils.lexicons import record_lexicon


AUTHORITY_DID = "did:plc:authority1"
NOTE_DOC = record_lexicon("com.example.note")


def _did_document() -> dict:
    return {
        "id": AUTHORITY_DID,
        "service": [
            {"id": "#atproto_pds", "type": "AtprotoPersonalDataServer", "serviceEndpoint": "https://pds.test/"}
        ],
    }


def _resolver(handler: Callable[[httpx.Request], httpx.Response]) -> NetworkResolver:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NetworkResolver(
        client=client,
        plc_url="https://plc.test",
        handle_resolver_url="https://resolver.test",
        policy=RetryPolicy(timeout_ms=1000, max_attempts=1, backoff_ms=1),
    )


def _pds_and_plc(request: httpx.Request) -> httpx.Response | None:
    if request.url.host == "plc.test" and request.url.path == f"/{AUTHORITY_DID}":
        return httpx.Response(200, json=_did_document())
    if request.url.host == "pds.test" and request.url.path == "/xrpc/com.atproto.repo.getRecord":
        assert request.url.params["collection"] == "com.atproto.lexicon.schema"
        assert request.url.params["repo"] == AUTHORITY_DID
        if request.url.params["rkey"] == "com.example.note":
            return httpx.Response(200, json={"uri": "at://x", "value": NOTE_DOC})
    return None


@pytest.mark.asyncio
async def test_resolves_through_well_known_did() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "example.com" and request.url.path == "/.well-known/atproto-did":
            return httpx.Response(200, text=f"{AUTHORITY_DID}\n")
        return _pds_and_plc(request) or httpx.Response(404)

    resolved = await _resolver(handler).resolve("com.example.note")
    assert resolved is not None
    assert resolved.authority_did == AUTHORITY_DID
    assert resolved.pds_endpoint == "https://pds.test"
    assert resolved.document == NOTE_DOC


@pytest.mark.asyncio
async def test_falls_back_to_handle_resolver() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "resolver.test":
            assert request.url.params["handle"] == "example.com"
            return httpx.Response(200, json={"did": AUTHORITY_DID})
        return _pds_and_plc(request) or httpx.Response(404)

    resolved = await _resolver(handler).resolve("com.example.note")
    assert resolved is not None
    assert resolved.authority_did == AUTHORITY_DID


@pytest.mark.asyncio
async def test_missing_record_resolves_to_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "example.com":
            return httpx.Response(200, text=AUTHORITY_DID)
        return _pds_and_plc(request) or httpx.Response(404)

    assert await _resolver(handler).resolve("com.example.other") is None


@pytest.mark.asyncio
async def test_transport_failures_resolve_to_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    assert await _resolver(handler).resolve("com.example.note") is None


@pytest.mark.asyncio
async def test_invalid_nsid_is_not_fetched() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert await _resolver(handler).resolve("not-an-nsid") is None
