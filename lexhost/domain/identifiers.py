from __future__ import annotations

import base64
import hashlib
import json
import re
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any


NSID_MAX_LENGTH = 317
NSID_PATTERN = re.compile(
    r"^[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+"
    r"(\.[a-zA-Z]([a-zA-Z0-9]{0,62})?)$"
)
DID_PATTERN = re.compile(r"^did:[a-z]+:[a-zA-Z0-9._:%-]*[a-zA-Z0-9._-]$")
HANDLE_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)
RECORD_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9._:~-]{1,512}$")

TID_ALPHABET = "234567abcdefghijklmnopqrstuvwxyz"
TID_LENGTH = 13
TID_PATTERN = re.compile(r"^[234567abcdefghij][234567abcdefghijklmnopqrstuvwxyz]{12}$")

# CIDv1 prefix: version 1, dag-json codec (0x0129 as varint), sha2-256 multihash of 32 bytes.
_CID_PREFIX = bytes([0x01, 0xA9, 0x02, 0x12, 0x20])


def is_valid_nsid(value: str) -> bool:
    # NSIDs need an authority of at least two segments plus a name segment.
    if not isinstance(value, str) or len(value) > NSID_MAX_LENGTH:
        return False
    return NSID_PATTERN.match(value) is not None and value.count(".") >= 2


def nsid_authority_domain(nsid: str) -> str | None:
    # com.example.feed.post -> feed.example.com
    segments = nsid.split(".")
    if len(segments) < 3:
        return None
    return ".".join(reversed(segments[:-1]))


def is_valid_did(value: str) -> bool:
    return isinstance(value, str) and len(value) <= 2048 and DID_PATTERN.match(value) is not None


def is_valid_handle(value: str) -> bool:
    return isinstance(value, str) and len(value) <= 253 and HANDLE_PATTERN.match(value) is not None


def is_valid_record_key(value: str) -> bool:
    if not isinstance(value, str) or value in {".", ".."}:
        return False
    return RECORD_KEY_PATTERN.match(value) is not None


@dataclass(frozen=True)
class AtUri:
    """Parsed AT URI of the form ``at://<authority>/<collection>/<rkey>``."""

    authority: str
    collection: str
    rkey: str

    @classmethod
    def parse(cls, uri: str) -> AtUri:
        """Parse an AT URI string.

        Raises:
            ValueError: If the URI is not a three-part ``at://`` record URI.
        """
        if not isinstance(uri, str) or not uri.startswith("at://"):
            raise ValueError(f"Invalid AT URI: must start with 'at://': {uri}")
        parts = uri[5:].split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid AT URI: expected authority/collection/rkey: {uri}")
        return cls(authority=parts[0], collection=parts[1], rkey=parts[2])

    @classmethod
    def build(cls, authority: str, collection: str, rkey: str) -> AtUri:
        return cls(authority=authority, collection=collection, rkey=rkey)

    def __str__(self) -> str:
        return f"at://{self.authority}/{self.collection}/{self.rkey}"


def encode_tid(value: int) -> str:
    # Fixed-width base32-sortable so lexical order matches numeric order.
    if value < 0 or value >= 1 << 63:
        raise ValueError("TID value out of range")
    chars = []
    for _ in range(TID_LENGTH):
        chars.append(TID_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def decode_tid(tid: str) -> int:
    if not is_valid_tid(tid):
        raise ValueError(f"Invalid TID: {tid}")
    value = 0
    for char in tid:
        value = (value << 5) | TID_ALPHABET.index(char)
    return value


def is_valid_tid(value: str) -> bool:
    return isinstance(value, str) and TID_PATTERN.match(value) is not None


class TidClock:
    """Issues strictly increasing TIDs: microsecond timestamp plus a 10-bit clock id."""

    def __init__(self, clock_id: int | None = None) -> None:
        self._clock_id = (secrets.randbelow(1024) if clock_id is None else clock_id) & 0x3FF
        self._last_micros = 0
        self._lock = threading.Lock()

    def next_tid(self) -> str:
        micros = time.time_ns() // 1000
        with self._lock:
            # Two calls inside the same microsecond still get distinct, ordered ids.
            if micros <= self._last_micros:
                micros = self._last_micros + 1
            self._last_micros = micros
        return encode_tid((micros << 10) | self._clock_id)


_default_clock = TidClock()


def generate_tid() -> str:
    return _default_clock.next_tid()


def canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_cid(payload: Any) -> str:
    # Same payload -> same CID regardless of key order.
    digest = hashlib.sha256(canonical_json(payload)).digest()
    encoded = base64.b32encode(_CID_PREFIX + digest).decode("ascii").lower().rstrip("=")
    return f"b{encoded}"
