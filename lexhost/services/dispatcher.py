from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.core.errors import (
    AuthRequiredError,
    InvalidInputError,
    InvalidParamsError,
    LexhostError,
    MethodNotFoundError,
    ScriptError,
)
from lexhost.domain.identifiers import AtUri, is_valid_nsid
from lexhost.domain.models import Lexicon
from lexhost.lexicon.schema import ProcedureDef, QueryDef
from lexhost.lexicon.values import DataValidationError, coerce_params, validate_body
from lexhost.persistence.repos import lexicons as lexicons_repo
from lexhost.scripting.context import InvocationContext
from lexhost.scripting.runtime import ScriptRunner
from lexhost.services import record_store
from lexhost.services.lexicon_store import load_document, ref_resolver
from lexhost.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Listing parameters the built-in query handler understands even when undeclared.
BUILTIN_QUERY_PARAMS = ("uri", "did", "limit", "cursor")


class CallState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


_TRANSITIONS = {
    CallState.RECEIVED: {CallState.VALIDATED, CallState.REJECTED},
    CallState.VALIDATED: {CallState.EXECUTING},
    CallState.EXECUTING: {CallState.COMPLETED, CallState.FAILED},
    CallState.COMPLETED: set(),
    CallState.REJECTED: set(),
    CallState.FAILED: set(),
}


@dataclass
class XrpcCall:
    method: str
    kind: str
    caller_did: str | None = None
    state: CallState = CallState.RECEIVED
    history: list[CallState] = field(default_factory=lambda: [CallState.RECEIVED])

    def advance(self, target: CallState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid call transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)


def _split_builtin_params(raw: Mapping[str, list[str]], declared: set[str]) -> tuple[dict[str, list[str]], dict[str, str]]:
    remaining: dict[str, list[str]] = {}
    extras: dict[str, str] = {}
    for name, values in raw.items():
        if name in BUILTIN_QUERY_PARAMS and name not in declared:
            if len(values) > 1:
                raise InvalidParamsError(f"{name}: expects a single value")
            extras[name] = values[0]
        else:
            remaining[name] = values
    return remaining, extras


def _int_param(value: Any, name: str) -> int | None:
    if value is None or isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidParamsError(f"{name}: expected an integer") from exc


async def _load_method(session: AsyncSession, call: XrpcCall) -> Lexicon:
    row = await lexicons_repo.get_lexicon(session, call.method) if is_valid_nsid(call.method) else None
    if row is None:
        raise MethodNotFoundError(f"method not found: {call.method}")
    if row.lexicon_type == "record":
        raise MethodNotFoundError(f"{call.method} is a record lexicon and cannot be invoked")
    if row.lexicon_type != call.kind:
        raise MethodNotFoundError(f"{call.method} is not a {call.kind} endpoint")
    return row


async def _builtin_query(session: AsyncSession, row: Lexicon, params: dict[str, Any]) -> dict[str, Any]:
    uri = params.get("uri")
    if uri:
        view = await record_store.get_record(session, uri)
        return {"record": view.with_uri()}
    if not row.target_collection:
        raise InvalidParamsError(f"{row.id} has no target_collection configured for list queries")
    page = await record_store.query_records(
        session,
        collection=row.target_collection,
        did=params.get("did"),
        limit=_int_param(params.get("limit"), "limit"),
        cursor=params.get("cursor"),
    )
    result: dict[str, Any] = {"records": [view.with_uri() for view in page.records]}
    if page.cursor:
        result["cursor"] = page.cursor
    return result


def _target_uri(row: Lexicon, body: dict[str, Any], caller_did: str) -> AtUri:
    uri = body.get("uri")
    if not isinstance(uri, str) or not uri:
        raise InvalidInputError("missing uri field")
    try:
        parsed = AtUri.parse(uri)
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc
    if parsed.collection != row.target_collection:
        raise InvalidInputError(f"{uri} is not in collection {row.target_collection}")
    if parsed.authority != caller_did:
        raise InvalidInputError(f"{uri} belongs to another authority")
    return parsed


async def _builtin_procedure(session: AsyncSession, row: Lexicon, body: Any, caller_did: str) -> dict[str, Any]:
    if not row.target_collection:
        raise InvalidInputError(f"{row.id} has no target_collection configured")
    if not isinstance(body, dict):
        raise InvalidInputError("input must be a JSON object")
    action = row.action or "upsert"
    if action == "upsert":
        action = "update" if isinstance(body.get("uri"), str) else "create"
    if action == "delete":
        target = _target_uri(row, body, caller_did)
        await record_store.delete_record(session, str(target))
        return {}
    rkey = None
    if action == "update":
        rkey = _target_uri(row, body, caller_did).rkey
    record = {key: value for key, value in body.items() if key != "uri"}
    record["$type"] = row.target_collection
    saved = await record_store.save_record(
        session,
        did=caller_did,
        collection=row.target_collection,
        record=record,
        rkey=rkey,
    )
    return {"uri": saved.uri, "cid": saved.cid}


async def _execute(
    session: AsyncSession,
    call: XrpcCall,
    row: Lexicon,
    main: QueryDef | ProcedureDef,
    resolver: Any,
    params: dict[str, Any],
    body: Any,
    runner: ScriptRunner,
) -> Any:
    call.advance(CallState.EXECUTING)
    try:
        if row.script is None:
            if call.kind == "query":
                return await _builtin_query(session, row, params)
            return await _builtin_procedure(session, row, body, call.caller_did or "")
        script = row.script
        collection = row.target_collection
        # Storage bindings open their own sessions; release this connection first.
        await session.rollback()
        context = InvocationContext(
            method=call.method,
            kind=call.kind,
            caller_did=call.caller_did,
            collection=collection,
            input=body if call.kind == "procedure" else None,
            params=params,
        )
        result = await runner.run(script, context)
        try:
            validate_body(result, main.output, resolver, required=False)
        except DataValidationError as exc:
            raise ScriptError(f"script output does not match the output schema: {exc}") from exc
        return result
    except LexhostError:
        call.advance(CallState.FAILED)
        raise


async def _dispatch(
    session: AsyncSession,
    call: XrpcCall,
    *,
    raw_params: Mapping[str, list[str]],
    body: Any,
    runner: ScriptRunner,
) -> Any:
    increment_counter("xrpc_calls_total")
    try:
        row = await _load_method(session, call)
        document = load_document(row)
        main = document.main
        if not isinstance(main, (QueryDef, ProcedureDef)):
            raise MethodNotFoundError(f"{call.method} is not a query or procedure")
        declared = set(main.parameters.properties) if main.parameters is not None else set()
        extras: dict[str, str] = {}
        if row.script is None and call.kind == "query":
            raw_params, extras = _split_builtin_params(raw_params, declared)
        try:
            params = coerce_params(raw_params, main.parameters)
        except DataValidationError as exc:
            raise InvalidParamsError(str(exc)) from exc
        params = {**extras, **params}
        resolver = await ref_resolver(session, document)
        if call.kind == "procedure":
            if not call.caller_did:
                raise AuthRequiredError(f"{call.method} requires an authenticated caller")
            try:
                validate_body(body, main.input, resolver, required=True)
            except DataValidationError as exc:
                raise InvalidInputError(str(exc)) from exc
    except LexhostError as exc:
        call.advance(CallState.REJECTED)
        logger.info("xrpc_rejected method=%s kind=%s error=%s", call.method, call.kind, exc.error_name)
        raise
    call.advance(CallState.VALIDATED)
    try:
        result = await _execute(session, call, row, main, resolver, params, body, runner)
    except LexhostError as exc:
        logger.info("xrpc_failed method=%s kind=%s error=%s", call.method, call.kind, exc.error_name)
        raise
    call.advance(CallState.COMPLETED)
    return result


async def dispatch_query(
    session: AsyncSession,
    *,
    method: str,
    raw_params: Mapping[str, list[str]],
    runner: ScriptRunner,
    caller_did: str | None = None,
) -> Any:
    call = XrpcCall(method=method, kind="query", caller_did=caller_did)
    return await _dispatch(session, call, raw_params=raw_params, body=None, runner=runner)


async def dispatch_procedure(
    session: AsyncSession,
    *,
    method: str,
    body: Any,
    runner: ScriptRunner,
    caller_did: str | None = None,
    raw_params: Mapping[str, list[str]] | None = None,
) -> Any:
    call = XrpcCall(method=method, kind="procedure", caller_did=caller_did)
    return await _dispatch(session, call, raw_params=raw_params or {}, body=body, runner=runner)
