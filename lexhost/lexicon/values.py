from __future__ import annotations

import base64
import binascii
import fnmatch
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from lexhost.domain.identifiers import (
    is_valid_did,
    is_valid_handle,
    is_valid_nsid,
    is_valid_record_key,
    is_valid_tid,
)
from lexhost.lexicon.schema import (
    ArrayDef,
    BlobDef,
    BooleanDef,
    BytesDef,
    CidLinkDef,
    IntegerDef,
    LexiconDocument,
    ObjectDef,
    ParamArrayDef,
    ParamsDef,
    RecordDef,
    RefDef,
    StringDef,
    TokenDef,
    UnionDef,
    UnknownDef,
    XrpcBody,
)


_DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$")
_URI_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:\S+$")
_AT_URI_PATTERN = re.compile(r"^at://[^/\s]+(/[^/\s]+(/[^/\s]+)?)?$")
_CID_PATTERN = re.compile(r"^[a-zA-Z0-9+=]{8,256}$")
_LANGUAGE_PATTERN = re.compile(r"^(i|[a-z]{2,3})(-[a-zA-Z0-9]+)*$")
_INTEGER_PATTERN = re.compile(r"^-?\d+$")
_MAX_DEPTH = 64


class DataValidationError(ValueError):
    # Raised when a value does not satisfy a lexicon def; path is dotted from the root value.
    def __init__(self, reason: str, path: str = "") -> None:
        super().__init__(f"{path}: {reason}" if path else reason)
        self.reason = reason
        self.path = path


def normalize_ref(ref: str, base_id: str) -> str:
    # "#name" is local, a bare NSID means its main def.
    if ref.startswith("#"):
        return f"{base_id}{ref}"
    if "#" not in ref:
        return f"{ref}#main"
    return ref


@dataclass(frozen=True)
class RefResolver:
    """Resolves refs relative to one document, with other loaded documents as fallbacks."""

    document: LexiconDocument
    others: Mapping[str, LexiconDocument] = field(default_factory=dict)

    def resolve(self, ref: str, path: str) -> tuple[Any, RefResolver] | None:
        nsid, name = normalize_ref(ref, self.document.id).split("#", 1)
        if nsid == self.document.id:
            document = self.document
        else:
            document = self.others.get(nsid)
            if document is None:
                # Unloaded external documents are treated as unknown.
                return None
        definition = document.defs.get(name)
        if definition is None:
            raise DataValidationError(f"unresolvable ref '{ref}'", path)
        resolver = self if document is self.document else RefResolver(document, self.others)
        return definition, resolver


def _join(path: str, part: str | int) -> str:
    if isinstance(part, int):
        return f"{path}[{part}]"
    return f"{path}.{part}" if path else part


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _grapheme_length(value: str) -> int:
    # Approximation: combining marks attach to the preceding character.
    return sum(1 for char in value if not unicodedata.combining(char))


def _check_format(value: str, fmt: str, path: str) -> None:
    ok: bool
    if fmt == "datetime":
        ok = bool(_DATETIME_PATTERN.match(value))
        if ok:
            try:
                datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                ok = False
    elif fmt == "uri":
        ok = bool(_URI_PATTERN.match(value))
    elif fmt == "at-uri":
        ok = bool(_AT_URI_PATTERN.match(value))
    elif fmt == "did":
        ok = is_valid_did(value)
    elif fmt == "handle":
        ok = is_valid_handle(value)
    elif fmt == "at-identifier":
        ok = is_valid_did(value) or is_valid_handle(value)
    elif fmt == "nsid":
        ok = is_valid_nsid(value)
    elif fmt == "cid":
        ok = bool(_CID_PATTERN.match(value))
    elif fmt == "language":
        ok = bool(_LANGUAGE_PATTERN.match(value))
    elif fmt == "tid":
        ok = is_valid_tid(value)
    elif fmt == "record-key":
        ok = is_valid_record_key(value)
    else:
        ok = True
    if not ok:
        raise DataValidationError(f"must be a valid {fmt}", path)


def _check_length(length: int, minimum: int | None, maximum: int | None, unit: str, path: str) -> None:
    if minimum is not None and length < minimum:
        raise DataValidationError(f"must be at least {minimum} {unit}", path)
    if maximum is not None and length > maximum:
        raise DataValidationError(f"must be at most {maximum} {unit}", path)


def _validate_string(value: Any, schema: StringDef, path: str) -> None:
    if not isinstance(value, str):
        raise DataValidationError("expected a string", path)
    if schema.const is not None and value != schema.const:
        raise DataValidationError(f"must equal '{schema.const}'", path)
    if schema.enum is not None and value not in schema.enum:
        raise DataValidationError(f"must be one of {schema.enum}", path)
    _check_length(len(value.encode("utf-8")), schema.min_length, schema.max_length, "bytes", path)
    if schema.min_graphemes is not None or schema.max_graphemes is not None:
        _check_length(_grapheme_length(value), schema.min_graphemes, schema.max_graphemes, "graphemes", path)
    if schema.format is not None:
        _check_format(value, schema.format, path)


def _validate_integer(value: Any, schema: IntegerDef, path: str) -> None:
    if not _is_int(value):
        raise DataValidationError("expected an integer", path)
    if schema.const is not None and value != schema.const:
        raise DataValidationError(f"must equal {schema.const}", path)
    if schema.enum is not None and value not in schema.enum:
        raise DataValidationError(f"must be one of {schema.enum}", path)
    if schema.minimum is not None and value < schema.minimum:
        raise DataValidationError(f"must be >= {schema.minimum}", path)
    if schema.maximum is not None and value > schema.maximum:
        raise DataValidationError(f"must be <= {schema.maximum}", path)


def _validate_blob(value: Any, schema: BlobDef, path: str) -> None:
    if not isinstance(value, dict):
        raise DataValidationError("expected a blob object", path)
    if value.get("$type") == "blob":
        ref = value.get("ref")
        if not isinstance(ref, dict) or not isinstance(ref.get("$link"), str):
            raise DataValidationError("blob ref must be a cid-link", path)
        size = value.get("size")
        if not _is_int(size) or size < 0:
            raise DataValidationError("blob size must be a non-negative integer", path)
        if schema.max_size is not None and size > schema.max_size:
            raise DataValidationError(f"blob exceeds maxSize {schema.max_size}", path)
    elif not isinstance(value.get("cid"), str):
        raise DataValidationError("expected a blob object", path)
    mime_type = value.get("mimeType")
    if not isinstance(mime_type, str) or not mime_type:
        raise DataValidationError("blob mimeType is required", path)
    if schema.accept and not any(fnmatch.fnmatch(mime_type, pattern) for pattern in schema.accept):
        raise DataValidationError(f"blob mimeType '{mime_type}' is not accepted", path)


def _validate_bytes(value: Any, schema: BytesDef, path: str) -> None:
    encoded = value.get("$bytes") if isinstance(value, dict) else None
    if not isinstance(encoded, str):
        raise DataValidationError("expected a $bytes object", path)
    try:
        raw = base64.b64decode(encoded + "=" * (-len(encoded) % 4), validate=True)
    except (ValueError, binascii.Error) as exc:
        raise DataValidationError("invalid base64 in $bytes", path) from exc
    _check_length(len(raw), schema.min_length, schema.max_length, "bytes", path)


def _validate_object(value: Any, schema: ObjectDef, resolver: RefResolver | None, path: str, depth: int) -> None:
    if not isinstance(value, dict):
        raise DataValidationError("expected an object", path)
    nullable = set(schema.nullable or [])
    for name in schema.required or []:
        if name not in value or (value[name] is None and name not in nullable):
            raise DataValidationError(f"missing required field '{name}'", path)
    # Undeclared properties are allowed; objects are open for forward compatibility.
    for name, prop in schema.properties.items():
        if name not in value:
            continue
        item = value[name]
        if item is None:
            if name in nullable:
                continue
            raise DataValidationError("must not be null", _join(path, name))
        _validate(item, prop, resolver, _join(path, name), depth + 1)


def _validate_union(value: Any, schema: UnionDef, resolver: RefResolver | None, path: str, depth: int) -> None:
    if not isinstance(value, dict) or not isinstance(value.get("$type"), str):
        raise DataValidationError("union values must be objects with a $type", path)
    base_id = resolver.document.id if resolver is not None else ""
    declared = normalize_ref(value["$type"], base_id)
    for ref in schema.refs:
        if normalize_ref(ref, base_id) == declared:
            _validate_ref(value, ref, resolver, path, depth)
            return
    if schema.closed:
        raise DataValidationError(f"$type '{value['$type']}' is not allowed in this closed union", path)


def _validate_ref(value: Any, ref: str, resolver: RefResolver | None, path: str, depth: int) -> None:
    if resolver is None:
        return
    resolved = resolver.resolve(ref, path)
    if resolved is None:
        return
    definition, target = resolved
    _validate(value, definition, target, path, depth + 1)


def _validate(value: Any, schema: Any, resolver: RefResolver | None, path: str, depth: int) -> None:
    if depth > _MAX_DEPTH:
        raise DataValidationError("value nesting is too deep", path)
    if isinstance(schema, BooleanDef):
        if not isinstance(value, bool):
            raise DataValidationError("expected a boolean", path)
        if schema.const is not None and value != schema.const:
            raise DataValidationError(f"must equal {str(schema.const).lower()}", path)
    elif isinstance(schema, IntegerDef):
        _validate_integer(value, schema, path)
    elif isinstance(schema, StringDef):
        _validate_string(value, schema, path)
    elif isinstance(schema, TokenDef):
        if not isinstance(value, str):
            raise DataValidationError("expected a token string", path)
    elif isinstance(schema, UnknownDef):
        return
    elif isinstance(schema, BytesDef):
        _validate_bytes(value, schema, path)
    elif isinstance(schema, CidLinkDef):
        if not isinstance(value, dict) or not isinstance(value.get("$link"), str):
            raise DataValidationError("expected a $link object", path)
    elif isinstance(schema, BlobDef):
        _validate_blob(value, schema, path)
    elif isinstance(schema, (ArrayDef, ParamArrayDef)):
        if not isinstance(value, list):
            raise DataValidationError("expected an array", path)
        _check_length(len(value), schema.min_length, schema.max_length, "items", path)
        for index, item in enumerate(value):
            _validate(item, schema.items, resolver, _join(path, index), depth + 1)
    elif isinstance(schema, ObjectDef):
        _validate_object(value, schema, resolver, path, depth)
    elif isinstance(schema, RecordDef):
        _validate_object(value, schema.record, resolver, path, depth)
    elif isinstance(schema, RefDef):
        _validate_ref(value, schema.ref, resolver, path, depth)
    elif isinstance(schema, UnionDef):
        _validate_union(value, schema, resolver, path, depth)
    else:
        raise DataValidationError(f"definition type '{getattr(schema, 'type', schema)}' cannot describe a value", path)


def validate_value(value: Any, schema: Any, resolver: RefResolver | None = None, *, path: str = "") -> None:
    _validate(value, schema, resolver, path, 0)


def validate_record(payload: Any, document: LexiconDocument, resolver: RefResolver | None = None) -> None:
    main = document.main
    if not isinstance(main, RecordDef):
        raise DataValidationError(f"{document.id} is not a record lexicon")
    if not isinstance(payload, dict):
        raise DataValidationError("record must be an object")
    record_type = payload.get("$type")
    if record_type is not None and record_type != document.id:
        raise DataValidationError(f"$type must be '{document.id}'", "$type")
    validate_value(payload, main.record, resolver or RefResolver(document))


def validate_body(value: Any, body: XrpcBody | None, resolver: RefResolver | None, *, required: bool) -> None:
    """Validate a JSON request/response body against an XRPC body declaration."""
    if body is None:
        if required and value not in (None, {}):
            raise DataValidationError("this method does not accept a body")
        return
    if body.encoding != "application/json" or body.body_schema is None:
        return
    if value is None:
        raise DataValidationError("a JSON body is required")
    validate_value(value, body.body_schema, resolver)


def _coerce_scalar(raw: str, schema: Any, path: str) -> Any:
    if isinstance(schema, IntegerDef):
        if not _INTEGER_PATTERN.match(raw):
            raise DataValidationError("expected an integer", path)
        return int(raw)
    if isinstance(schema, BooleanDef):
        if raw not in {"true", "false"}:
            raise DataValidationError("expected true or false", path)
        return raw == "true"
    return raw


def coerce_params(raw: Mapping[str, list[str]], params: ParamsDef | None) -> dict[str, Any]:
    """Coerce query-string values to declared parameter types and validate them."""
    properties = params.properties if params is not None else {}
    unknown = sorted(name for name in raw if name not in properties)
    if unknown:
        raise DataValidationError(f"unknown parameter '{unknown[0]}'", unknown[0])
    coerced: dict[str, Any] = {}
    for name, schema in properties.items():
        values = raw.get(name) or []
        if not values:
            default = getattr(schema, "default", None)
            if default is not None:
                coerced[name] = default
            continue
        if isinstance(schema, ParamArrayDef):
            coerced[name] = [_coerce_scalar(v, schema.items, _join(name, i)) for i, v in enumerate(values)]
        elif len(values) > 1:
            raise DataValidationError("expects a single value", name)
        else:
            coerced[name] = _coerce_scalar(values[0], schema, name)
    for name in (params.required or []) if params is not None else []:
        if name not in coerced:
            raise DataValidationError(f"missing required parameter '{name}'", name)
    for name, value in coerced.items():
        validate_value(value, properties[name], path=name)
    return coerced
