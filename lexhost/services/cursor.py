from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any


RECORDS_SCOPE = "records"


class CursorError(ValueError):
    # Raise for malformed or tampered cursor tokens.
    pass


def encode_cursor(payload: dict[str, Any], secret: str) -> str:
    # Sign cursor payloads to prevent client-side tampering.
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    encoded = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{encoded}.{signature}"


def decode_cursor(token: str, secret: str) -> dict[str, Any]:
    # Verify cursor signatures and return the decoded payload.
    try:
        encoded, signature = token.split(".", 1)
    except ValueError as exc:
        raise CursorError("Invalid cursor format") from exc
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise CursorError("Invalid cursor encoding") from exc
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise CursorError("Invalid cursor signature")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CursorError("Invalid cursor payload") from exc
    if not isinstance(payload, dict):
        raise CursorError("Invalid cursor payload")
    return payload


def encode_records_cursor(*, collection: str, did: str | None, last_seq: int, secret: str) -> str:
    # Bind the cursor to its collection/did filter so it cannot resume a different scan.
    return encode_cursor(
        {"scope": RECORDS_SCOPE, "collection": collection, "did": did, "seq": last_seq},
        secret,
    )


def decode_records_cursor(token: str, *, collection: str, did: str | None, secret: str) -> int:
    payload = decode_cursor(token, secret)
    if payload.get("scope") != RECORDS_SCOPE:
        raise CursorError("Cursor scope mismatch")
    if payload.get("collection") != collection or payload.get("did") != did:
        raise CursorError("Cursor does not match query filters")
    seq = payload.get("seq")
    if not isinstance(seq, int) or isinstance(seq, bool) or seq < 0:
        raise CursorError("Invalid cursor position")
    return seq
