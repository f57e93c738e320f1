from __future__ import annotations

import pytest

from lexhost.services.cursor import (
    CursorError,
    decode_cursor,
    decode_records_cursor,
    encode_cursor,
    encode_records_cursor,
)


def test_cursor_round_trip() -> None:
    token = encode_cursor({"seq": 42, "scope": "records"}, "secret")
    assert decode_cursor(token, "secret") == {"seq": 42, "scope": "records"}


def test_tampered_or_foreign_cursor_is_rejected() -> None:
    token = encode_cursor({"seq": 1}, "secret")
    encoded, signature = token.split(".", 1)
    forged = encode_cursor({"seq": 999}, "secret").split(".", 1)[0]
    with pytest.raises(CursorError):
        decode_cursor(f"{forged}.{signature}", "secret")
    with pytest.raises(CursorError):
        decode_cursor(token, "other-secret")
    with pytest.raises(CursorError):
        decode_cursor("no-separator", "secret")


def test_records_cursor_is_bound_to_filters() -> None:
    token = encode_records_cursor(collection="com.example.note", did=None, last_seq=7, secret="s")
    assert decode_records_cursor(token, collection="com.example.note", did=None, secret="s") == 7
    with pytest.raises(CursorError):
        decode_records_cursor(token, collection="com.example.other", did=None, secret="s")
    with pytest.raises(CursorError):
        decode_records_cursor(token, collection="com.example.note", did="did:plc:abc", secret="s")


def test_records_cursor_rejects_other_scopes() -> None:
    token = encode_cursor({"scope": "admins", "collection": "com.example.note", "did": None, "seq": 1}, "s")
    with pytest.raises(CursorError):
        decode_records_cursor(token, collection="com.example.note", did=None, secret="s")
