from __future__ import annotations

from typing import Any

from lexhost.persistence.db import SessionLocal
from lexhost.services.lexicon_store import PutResult, put_lexicon


ADMIN_SECRET = "test-admin-secret"
CALLER_DID = "did:plc:alice123"
OTHER_DID = "did:plc:bob456"


def admin_headers(key: str = ADMIN_SECRET) -> dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


def caller_headers(did: str = CALLER_DID) -> dict[str, str]:
    return {"X-Caller-Did": did}


def record_lexicon(nsid: str, *, key: str = "tid", properties: dict[str, Any] | None = None,
                   required: list[str] | None = None) -> dict[str, Any]:
    record: dict[str, Any] = {
        "type": "object",
        "properties": properties
        if properties is not None
        else {
            "text": {"type": "string", "maxLength": 300},
            "createdAt": {"type": "string", "format": "datetime"},
        },
    }
    if required is not None:
        record["required"] = required
    return {
        "lexicon": 1,
        "id": nsid,
        "defs": {"main": {"type": "record", "key": key, "record": record}},
    }


def query_lexicon(nsid: str, *, parameters: dict[str, Any] | None = None,
                  output_schema: dict[str, Any] | None = None) -> dict[str, Any]:
    main: dict[str, Any] = {"type": "query"}
    if parameters is not None:
        main["parameters"] = {"type": "params", "properties": parameters}
    if output_schema is not None:
        main["output"] = {"encoding": "application/json", "schema": output_schema}
    return {"lexicon": 1, "id": nsid, "defs": {"main": main}}


def procedure_lexicon(nsid: str, *, input_schema: dict[str, Any] | None = None) -> dict[str, Any]:
    main: dict[str, Any] = {"type": "procedure"}
    if input_schema is not None:
        main["input"] = {"encoding": "application/json", "schema": input_schema}
    return {"lexicon": 1, "id": nsid, "defs": {"main": main}}


def wrap_handler(body: str) -> str:
    return f"function handle()\n{body}\nend\n"


async def store_lexicon(lexicon_json: dict[str, Any], **kwargs: Any) -> PutResult:
    # Each call gets its own session, like an admin upload request.
    async with SessionLocal() as session:
        return await put_lexicon(session, lexicon_json=lexicon_json, **kwargs)
