"""Lexicon v1 document grammar.

Every def kind is a pydantic model tagged by its ``type`` field; unions over
them are discriminated so an unknown or misplaced ``type`` is rejected rather
than coerced. ``extra="forbid"`` keeps typos in field names from being
silently accepted.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)


PRIMARY_TYPES = frozenset({"record", "query", "procedure", "subscription"})
RECORD_KEY_TYPES = frozenset({"tid", "any", "nsid"})
StringFormat = Literal[
    "at-identifier",
    "at-uri",
    "cid",
    "datetime",
    "did",
    "handle",
    "language",
    "nsid",
    "record-key",
    "tid",
    "uri",
]


class LexModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    description: StrictStr | None = None


class BooleanDef(LexModel):
    type: Literal["boolean"]
    default: StrictBool | None = None
    const: StrictBool | None = None


class IntegerDef(LexModel):
    type: Literal["integer"]
    default: StrictInt | None = None
    minimum: StrictInt | None = None
    maximum: StrictInt | None = None
    enum: list[StrictInt] | None = None
    const: StrictInt | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> IntegerDef:
        if self.minimum is not None and self.maximum is not None and self.minimum > self.maximum:
            raise ValueError("minimum must not exceed maximum")
        return self


class StringDef(LexModel):
    type: Literal["string"]
    format: StringFormat | None = None
    default: StrictStr | None = None
    const: StrictStr | None = None
    enum: list[StrictStr] | None = None
    known_values: list[StrictStr] | None = Field(default=None, alias="knownValues")
    min_length: StrictInt | None = Field(default=None, alias="minLength", ge=0)
    max_length: StrictInt | None = Field(default=None, alias="maxLength", ge=0)
    min_graphemes: StrictInt | None = Field(default=None, alias="minGraphemes", ge=0)
    max_graphemes: StrictInt | None = Field(default=None, alias="maxGraphemes", ge=0)


class UnknownDef(LexModel):
    type: Literal["unknown"]


class BytesDef(LexModel):
    type: Literal["bytes"]
    min_length: StrictInt | None = Field(default=None, alias="minLength", ge=0)
    max_length: StrictInt | None = Field(default=None, alias="maxLength", ge=0)


class CidLinkDef(LexModel):
    type: Literal["cid-link"]


class BlobDef(LexModel):
    type: Literal["blob"]
    accept: list[StrictStr] | None = None
    max_size: StrictInt | None = Field(default=None, alias="maxSize", ge=0)


class TokenDef(LexModel):
    type: Literal["token"]


class RefDef(LexModel):
    type: Literal["ref"]
    ref: StrictStr = Field(min_length=1)


class UnionDef(LexModel):
    type: Literal["union"]
    refs: list[StrictStr]
    closed: StrictBool | None = None

    @model_validator(mode="after")
    def _check_closed(self) -> UnionDef:
        if self.closed and not self.refs:
            raise ValueError("closed unions must list at least one ref")
        return self


ArrayItem = Annotated[
    Union[BooleanDef, IntegerDef, StringDef, UnknownDef, BytesDef, CidLinkDef, BlobDef, RefDef, UnionDef],
    Field(discriminator="type"),
]


class ArrayDef(LexModel):
    type: Literal["array"]
    items: ArrayItem
    min_length: StrictInt | None = Field(default=None, alias="minLength", ge=0)
    max_length: StrictInt | None = Field(default=None, alias="maxLength", ge=0)


ObjectProperty = Annotated[
    Union[
        BooleanDef,
        IntegerDef,
        StringDef,
        UnknownDef,
        BytesDef,
        CidLinkDef,
        BlobDef,
        RefDef,
        UnionDef,
        ArrayDef,
    ],
    Field(discriminator="type"),
]


def _check_subset(names: list[str] | None, properties: dict[str, object], label: str) -> None:
    for name in names or []:
        if name not in properties:
            raise ValueError(f"{label} field '{name}' is not a declared property")


class ObjectDef(LexModel):
    type: Literal["object"]
    properties: dict[str, ObjectProperty] = Field(default_factory=dict)
    required: list[StrictStr] | None = None
    nullable: list[StrictStr] | None = None

    @model_validator(mode="after")
    def _check_required(self) -> ObjectDef:
        _check_subset(self.required, self.properties, "required")
        _check_subset(self.nullable, self.properties, "nullable")
        return self


ParamItem = Annotated[
    Union[BooleanDef, IntegerDef, StringDef, UnknownDef],
    Field(discriminator="type"),
]


class ParamArrayDef(LexModel):
    type: Literal["array"]
    items: ParamItem
    min_length: StrictInt | None = Field(default=None, alias="minLength", ge=0)
    max_length: StrictInt | None = Field(default=None, alias="maxLength", ge=0)


ParamProperty = Annotated[
    Union[BooleanDef, IntegerDef, StringDef, UnknownDef, ParamArrayDef],
    Field(discriminator="type"),
]


class ParamsDef(LexModel):
    type: Literal["params"]
    properties: dict[str, ParamProperty] = Field(default_factory=dict)
    required: list[StrictStr] | None = None

    @model_validator(mode="after")
    def _check_required(self) -> ParamsDef:
        _check_subset(self.required, self.properties, "required")
        return self


BodySchema = Annotated[Union[ObjectDef, RefDef, UnionDef], Field(discriminator="type")]


class XrpcBody(LexModel):
    encoding: StrictStr = Field(min_length=1)
    body_schema: BodySchema | None = Field(default=None, alias="schema")


class XrpcError(LexModel):
    name: StrictStr = Field(min_length=1)


class RecordDef(LexModel):
    type: Literal["record"]
    key: StrictStr
    record: ObjectDef

    @field_validator("key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        if value in RECORD_KEY_TYPES:
            return value
        if value.startswith("literal:") and len(value) > len("literal:"):
            return value
        raise ValueError("key must be tid, any, nsid, or literal:<value>")


class QueryDef(LexModel):
    type: Literal["query"]
    parameters: ParamsDef | None = None
    output: XrpcBody | None = None
    errors: list[XrpcError] | None = None


class ProcedureDef(LexModel):
    type: Literal["procedure"]
    parameters: ParamsDef | None = None
    input: XrpcBody | None = None
    output: XrpcBody | None = None
    errors: list[XrpcError] | None = None


class SubscriptionMessage(LexModel):
    message_schema: UnionDef = Field(alias="schema")


class SubscriptionDef(LexModel):
    type: Literal["subscription"]
    parameters: ParamsDef | None = None
    message: SubscriptionMessage | None = None
    errors: list[XrpcError] | None = None


# Any def kind; only "main" may hold the primary kinds (checked by the validator).
LexiconDef = Annotated[
    Union[
        RecordDef,
        QueryDef,
        ProcedureDef,
        SubscriptionDef,
        ObjectDef,
        ArrayDef,
        TokenDef,
        BooleanDef,
        IntegerDef,
        StringDef,
        UnknownDef,
        BytesDef,
        CidLinkDef,
        BlobDef,
    ],
    Field(discriminator="type"),
]


class LexiconDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    # Present when the document was fetched as a com.atproto.lexicon.schema record.
    record_type: Literal["com.atproto.lexicon.schema"] | None = Field(default=None, alias="$type")
    lexicon: int
    id: StrictStr
    revision: StrictInt | None = None
    description: StrictStr | None = None
    defs: dict[str, LexiconDef] = Field(min_length=1)

    @field_validator("lexicon", mode="before")
    @classmethod
    def _check_version(cls, value: object) -> int:
        if type(value) is not int or value != 1:
            raise ValueError("lexicon version must be 1")
        return value

    @property
    def main(self) -> LexiconDef | None:
        return self.defs.get("main")
