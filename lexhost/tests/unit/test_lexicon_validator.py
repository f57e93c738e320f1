from __future__ import annotations

import pytest

from lexhost.core.errors import SchemaValidationError
from lexhost.lexicon.validator import (
    external_refs,
    lexicon_type,
    parameter_names,
    record_fields,
    validate_lexicon,
)
from lexhost.tests.utils.lexicons import query_lexicon, record_lexicon


def test_record_lexicon_is_accepted() -> None:
    document = validate_lexicon(record_lexicon("com.example.note", key="literal:self"))
    assert document.id == "com.example.note"
    assert lexicon_type(document) == "record"
    assert document.main.key == "literal:self"


def test_wrong_lexicon_version_points_at_version() -> None:
    doc = record_lexicon("com.example.note")
    doc["lexicon"] = 2
    with pytest.raises(SchemaValidationError) as exc_info:
        validate_lexicon(doc)
    assert exc_info.value.path == "lexicon"


def test_invalid_id_is_rejected() -> None:
    doc = record_lexicon("com.example.note")
    doc["id"] = "notansid"
    with pytest.raises(SchemaValidationError) as exc_info:
        validate_lexicon(doc)
    assert exc_info.value.path == "id"


def test_primary_type_outside_main_is_rejected() -> None:
    doc = query_lexicon("com.example.listNotes")
    doc["defs"]["extra"] = record_lexicon("com.example.other")["defs"]["main"]
    with pytest.raises(SchemaValidationError) as exc_info:
        validate_lexicon(doc)
    assert exc_info.value.path == "defs.extra.type"
    assert exc_info.value.message.startswith("defs.extra.type: ")


def test_unknown_def_type_is_rejected() -> None:
    doc = {"lexicon": 1, "id": "com.example.thing", "defs": {"main": {"type": "bogus"}}}
    with pytest.raises(SchemaValidationError) as exc_info:
        validate_lexicon(doc)
    assert exc_info.value.path.startswith("defs.main")


def test_unknown_field_is_rejected() -> None:
    doc = record_lexicon("com.example.note")
    doc["defs"]["main"]["keyy"] = "tid"
    with pytest.raises(SchemaValidationError):
        validate_lexicon(doc)


def test_invalid_record_key_type_is_rejected() -> None:
    with pytest.raises(SchemaValidationError):
        validate_lexicon(record_lexicon("com.example.note", key="random"))


def test_required_must_name_declared_properties() -> None:
    with pytest.raises(SchemaValidationError):
        validate_lexicon(record_lexicon("com.example.note", required=["missing"]))


def test_non_object_document_is_rejected() -> None:
    with pytest.raises(SchemaValidationError):
        validate_lexicon(["not", "an", "object"])


def test_definition_bundle_type() -> None:
    doc = {
        "lexicon": 1,
        "id": "com.example.defs",
        "defs": {"label": {"type": "object", "properties": {"name": {"type": "string"}}}},
    }
    assert lexicon_type(validate_lexicon(doc)) == "definitions"


def test_record_fields_extraction() -> None:
    doc = record_lexicon(
        "com.example.note",
        properties={
            "text": {"type": "string", "description": "Body"},
            "tags": {"type": "array", "items": {"type": "string"}},
            "reply": {"type": "ref", "ref": "#replyRef"},
        },
        required=["text"],
    )
    doc["defs"]["replyRef"] = {"type": "object", "properties": {"parent": {"type": "string"}}}
    fields = record_fields(validate_lexicon(doc))
    assert [f.name for f in fields] == ["text", "tags", "reply"]
    assert fields[0].required is True
    assert fields[0].description == "Body"
    assert fields[1].type == "array<string>"
    assert fields[2].type == "ref<#replyRef>"


def test_parameter_names_and_external_refs() -> None:
    doc = query_lexicon(
        "com.example.listNotes",
        parameters={"limit": {"type": "integer"}, "author": {"type": "string"}},
        output_schema={
            "type": "object",
            "properties": {
                "items": {"type": "array", "items": {"type": "ref", "ref": "com.example.defs#noteView"}},
                "local": {"type": "ref", "ref": "#other"},
            },
        },
    )
    document = validate_lexicon(doc)
    assert parameter_names(document) == ["limit", "author"]
    assert external_refs(document) == {"com.example.defs"}
