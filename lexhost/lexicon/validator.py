from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from lexhost.core.errors import SchemaValidationError
from lexhost.domain.identifiers import is_valid_nsid
from lexhost.lexicon.schema import (
    PRIMARY_TYPES,
    ArrayDef,
    LexiconDocument,
    ObjectDef,
    ProcedureDef,
    QueryDef,
    RecordDef,
    RefDef,
    SubscriptionDef,
    UnionDef,
)


@dataclass(frozen=True)
class FieldInfo:
    name: str
    type: str
    description: str | None
    required: bool


def _format_loc(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc)


def validate_lexicon(document: Any) -> LexiconDocument:
    """Validate a candidate lexicon document and return its parsed form.

    Raises SchemaValidationError whose ``path`` points at the first offending
    node. Nothing is returned for a partially valid document.
    """
    if not isinstance(document, dict):
        raise SchemaValidationError("lexicon document must be a JSON object")
    try:
        parsed = LexiconDocument.model_validate(document)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        first = errors[0]
        raise SchemaValidationError(
            first["msg"],
            path=_format_loc(tuple(first["loc"])),
            details={"errors": [{"path": _format_loc(tuple(e["loc"])), "message": e["msg"]} for e in errors]},
        ) from exc
    if not is_valid_nsid(parsed.id):
        raise SchemaValidationError(f"'{parsed.id}' is not a valid NSID", path="id")
    for name, definition in parsed.defs.items():
        if name != "main" and definition.type in PRIMARY_TYPES:
            raise SchemaValidationError(
                f"primary type '{definition.type}' is only allowed under 'main'",
                path=f"defs.{name}.type",
            )
    return parsed


def lexicon_type(document: LexiconDocument) -> str:
    # Docs without an endpoint/record main are shared definition bundles.
    main = document.main
    if main is not None and main.type in PRIMARY_TYPES:
        return main.type
    return "definitions"


def record_def(document: LexiconDocument) -> RecordDef | None:
    main = document.main
    return main if isinstance(main, RecordDef) else None


def _type_label(definition: Any) -> str:
    if isinstance(definition, ArrayDef):
        return f"array<{_type_label(definition.items)}>"
    if isinstance(definition, RefDef):
        return f"ref<{definition.ref}>"
    if isinstance(definition, UnionDef):
        return "union"
    return definition.type


def object_fields(schema: ObjectDef) -> list[FieldInfo]:
    required = set(schema.required or [])
    return [
        FieldInfo(
            name=name,
            type=_type_label(prop),
            description=prop.description,
            required=name in required,
        )
        for name, prop in schema.properties.items()
    ]


def record_fields(document: LexiconDocument) -> list[FieldInfo]:
    """Ordered record properties with their declared type, for script completion."""
    record = record_def(document)
    if record is None:
        return []
    return object_fields(record.record)


def parameter_names(document: LexiconDocument) -> list[str]:
    main = document.main
    if isinstance(main, (QueryDef, ProcedureDef, SubscriptionDef)) and main.parameters is not None:
        return list(main.parameters.properties)
    return []


def external_refs(document: LexiconDocument) -> set[str]:
    """NSIDs of other documents referenced from this one."""
    found: set[str] = set()

    def _walk(node: Any) -> None:
        if isinstance(node, dict):
            ref = node.get("ref")
            refs = node.get("refs")
            for value in ([ref] if isinstance(ref, str) else []) + (refs if isinstance(refs, list) else []):
                if isinstance(value, str) and not value.startswith("#"):
                    found.add(value.split("#", 1)[0])
            for child in node.values():
                _walk(child)
        elif isinstance(node, list):
            for child in node:
                _walk(child)

    _walk(document.model_dump(by_alias=True, exclude_none=True))
    found.discard(document.id)
    return found
