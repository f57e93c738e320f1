from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from lexhost.core.config import get_settings
from lexhost.domain.identifiers import is_valid_did, is_valid_nsid, nsid_authority_domain
from lexhost.services.resilience import RetryPolicy, default_retry_policy, retry_async


logger = logging.getLogger(__name__)

LEXICON_SCHEMA_COLLECTION = "com.atproto.lexicon.schema"
PDS_SERVICE_ID = "#atproto_pds"


@dataclass(frozen=True)
class ResolvedLexicon:
    nsid: str
    authority_did: str
    pds_endpoint: str
    document: dict[str, Any]


class NetworkResolver:
    """Resolve an NSID to its authority's published lexicon document.

    The chain is: NSID -> authority domain -> DID (well-known file, then the
    handle resolver) -> DID document -> PDS endpoint -> lexicon schema record.
    Every step is best-effort: network, HTTP and decoding failures end the
    chain with ``None``. Cancellation is never swallowed, so an in-flight
    request stops as soon as the awaiting task is cancelled.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        plc_url: str | None = None,
        handle_resolver_url: str | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._plc_url = (plc_url or settings.plc_url).rstrip("/")
        self._handle_resolver_url = (handle_resolver_url or settings.handle_resolver_url).rstrip("/")
        self._policy = policy or default_retry_policy()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        # Injected clients are owned by the caller; ad-hoc clients live for one resolution.
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=self._policy.timeout_ms / 1000.0,
            follow_redirects=True,
        ) as client:
            yield client

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        params: dict[str, str] | None = None,
    ) -> httpx.Response | None:
        try:
            response = await retry_async(lambda: client.get(url, params=params), policy=self._policy)
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.debug("network_resolver_request_failed url=%s error=%s", url, type(exc).__name__)
            return None
        if response.status_code != 200:
            logger.debug("network_resolver_bad_status url=%s status=%s", url, response.status_code)
            return None
        return response

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        response = await self._get(client, url, params=params)
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.debug("network_resolver_invalid_json url=%s", url)
            return None
        return payload if isinstance(payload, dict) else None

    async def resolve_domain_did(self, client: httpx.AsyncClient, domain: str) -> str | None:
        response = await self._get(client, f"https://{domain}/.well-known/atproto-did")
        if response is not None:
            candidate = response.text.strip().splitlines()[0].strip() if response.text.strip() else ""
            if is_valid_did(candidate):
                return candidate
        payload = await self._get_json(
            client,
            f"{self._handle_resolver_url}/xrpc/com.atproto.identity.resolveHandle",
            params={"handle": domain},
        )
        did = payload.get("did") if payload else None
        return did if isinstance(did, str) and is_valid_did(did) else None

    async def resolve_pds(self, client: httpx.AsyncClient, did: str) -> str | None:
        if did.startswith("did:plc:"):
            url = f"{self._plc_url}/{did}"
        elif did.startswith("did:web:"):
            url = f"https://{did[len('did:web:'):]}/.well-known/did.json"
        else:
            return None
        document = await self._get_json(client, url)
        services = document.get("service") if document else None
        if not isinstance(services, list):
            return None
        for service in services:
            if not isinstance(service, dict):
                continue
            service_id = service.get("id")
            endpoint = service.get("serviceEndpoint")
            if isinstance(service_id, str) and service_id.endswith(PDS_SERVICE_ID) and isinstance(endpoint, str):
                return endpoint.rstrip("/")
        return None

    async def fetch_lexicon(
        self,
        client: httpx.AsyncClient,
        pds_endpoint: str,
        did: str,
        nsid: str,
    ) -> dict[str, Any] | None:
        payload = await self._get_json(
            client,
            f"{pds_endpoint}/xrpc/com.atproto.repo.getRecord",
            params={"repo": did, "collection": LEXICON_SCHEMA_COLLECTION, "rkey": nsid},
        )
        value = payload.get("value") if payload else None
        return value if isinstance(value, dict) else None

    async def resolve(self, nsid: str) -> ResolvedLexicon | None:
        domain = nsid_authority_domain(nsid) if is_valid_nsid(nsid) else None
        if domain is None:
            return None
        async with self._session() as client:
            did = await self.resolve_domain_did(client, domain)
            if did is None:
                logger.info("network_lexicon_unresolved nsid=%s step=did", nsid)
                return None
            pds_endpoint = await self.resolve_pds(client, did)
            if pds_endpoint is None:
                logger.info("network_lexicon_unresolved nsid=%s step=pds did=%s", nsid, did)
                return None
            document = await self.fetch_lexicon(client, pds_endpoint, did, nsid)
            if document is None:
                logger.info("network_lexicon_unresolved nsid=%s step=record pds=%s", nsid, pds_endpoint)
                return None
        return ResolvedLexicon(nsid=nsid, authority_did=did, pds_endpoint=pds_endpoint, document=document)
