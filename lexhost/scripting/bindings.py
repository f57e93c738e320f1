"""Host bindings installed into a script's Lua globals.

Every binding that touches storage hops back to the service event loop through
``LoopBridge``; Lua values are converted on the script thread before and after
the hop so the interpreter is only ever touched from one thread.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Any, Callable

from lupa.lua54 import lua_type
from sqlalchemy.ext.asyncio import AsyncSession

from lexhost.core.errors import LexhostError, NotFoundError, RecordValidationError, ScriptError
from lexhost.domain.identifiers import AtUri, is_valid_nsid
from lexhost.persistence.db import get_session
from lexhost.scripting.context import InvocationContext, LoopBridge
from lexhost.scripting.sandbox import Sandbox
from lexhost.services import record_store
from lexhost.services.record_store import CollectionSchema, is_valid_key_type


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Internal handle state lives in a weak-keyed side table so that every
# assignment to an internal name reaches __newindex and can be refused.
RECORD_PRELUDE = """
function(host, mark_array)
  local state = setmetatable({}, {__mode = "k"})
  local internal = {
    _collection = true, _uri = true, _cid = true,
    _schema = true, _key_type = true, _rkey = true,
  }
  local methods = {}
  local record_mt = {}

  record_mt.__index = function(self, key)
    local method = methods[key]
    if method ~= nil then return method end
    if internal[key] then return state[self][key] end
    return nil
  end
  record_mt.__newindex = function(self, key, value)
    if internal[key] then
      error("cannot assign to internal field '" .. key .. "'", 2)
    end
    rawset(self, key, value)
  end
  record_mt.__tostring = function(self)
    local s = state[self]
    if s._uri ~= nil then
      return "Record(" .. s._collection .. ") [uri=" .. s._uri .. "]"
    end
    return "Record(" .. s._collection .. ") [unsaved]"
  end

  local function handle_state(self, name)
    local s = type(self) == "table" and state[self] or nil
    if s == nil then
      error("Record:" .. name .. "() must be called on a record (use ':')", 3)
    end
    return s
  end

  local function make(fields, internals)
    local self = {}
    state[self] = internals
    if fields ~= nil then
      for k, v in pairs(fields) do
        if not internal[k] and k ~= "$type" then rawset(self, k, v) end
      end
    end
    return setmetatable(self, record_mt)
  end

  local function new(collection, fields)
    if type(collection) ~= "string" then
      error("Record() requires a collection name", 3)
    end
    if fields ~= nil and type(fields) ~= "table" then
      error("Record() fields must be a table", 3)
    end
    local schema, key_type = host.describe(collection, false)
    local self = make(fields, {_collection = collection, _schema = schema, _key_type = key_type})
    if schema ~= nil and type(schema.properties) == "table" then
      for name, prop in pairs(schema.properties) do
        if rawget(self, name) == nil and type(prop) == "table" and prop.default ~= nil
            and name:sub(1, 1) ~= "_" then
          rawset(self, name, prop.default)
        end
      end
    end
    return self
  end

  local function loaded(item)
    local schema, key_type = host.describe(item.collection, true)
    return make(item.record, {
      _collection = item.collection, _uri = item.uri, _cid = item.cid,
      _rkey = item.rkey, _schema = schema, _key_type = key_type,
    })
  end

  function methods.save(self)
    local s = handle_state(self, "save")
    s._uri, s._cid, s._rkey = host.save(s._collection, self, s._uri, s._rkey, s._key_type)
    return self
  end

  function methods.delete(self)
    local s = handle_state(self, "delete")
    if s._uri == nil then
      error("cannot delete a record that has not been saved", 2)
    end
    local deleted = host.delete(s._uri)
    s._uri, s._cid = nil, nil
    return deleted
  end

  function methods.set_key_type(self, key_type)
    local s = handle_state(self, "set_key_type")
    if not host.valid_key_type(key_type) then
      error("invalid key type '" .. tostring(key_type) .. "': expected tid, any, nsid, or literal:*", 2)
    end
    s._key_type = key_type
    return self
  end

  function methods.set_rkey(self, key)
    local s = handle_state(self, "set_rkey")
    if type(key) ~= "string" or key == "" then
      error("rkey must be a non-empty string", 2)
    end
    s._rkey = key
    return self
  end

  function methods.generate_rkey(self)
    local s = handle_state(self, "generate_rkey")
    local key_type = s._key_type
    local rkey
    if key_type == "tid" or key_type == "any" then
      rkey = host.tid()
    elseif type(key_type) == "string" and key_type:sub(1, 8) == "literal:" then
      rkey = key_type:sub(9)
    elseif key_type == "nsid" then
      error("cannot generate an rkey for the nsid key type; use set_rkey()", 2)
    else
      error("no key type set; call set_key_type() first", 2)
    end
    s._rkey = rkey
    return rkey
  end

  local Record = {}

  function Record.load(uri)
    local item = host.load(uri)
    if item == nil then return nil end
    return loaded(item)
  end

  function Record.load_all(uris)
    if type(uris) ~= "table" then
      error("Record.load_all expects a list of URIs", 2)
    end
    local found, n = host.load_all(uris)
    local out = {}
    for i = 1, n do
      local item = found[i]
      if item ~= nil then out[i] = loaded(item) end
    end
    return mark_array(out)
  end

  function Record.save_all(records)
    if type(records) ~= "table" then
      error("Record.save_all expects a list of records", 2)
    end
    local items, handles = {}, {}
    for i, record in ipairs(records) do
      local s = state[record]
      if s == nil then
        error("Record.save_all item " .. i .. " is not a record", 2)
      end
      handles[i] = record
      items[i] = {
        collection = s._collection, fields = record, uri = s._uri,
        rkey = s._rkey, key_type = s._key_type,
      }
    end
    local results = host.save_all(items, #items)
    for i, record in ipairs(handles) do
      local result = results[i]
      if result.error == nil then
        local s = state[record]
        s._uri, s._cid, s._rkey = result.uri, result.cid, result.rkey
      end
    end
    return results
  end

  return setmetatable(Record, {
    __call = function(_, collection, fields) return new(collection, fields) end,
  })
end
"""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class HostBindings:
    """Binds one invocation's context to the globals of one sandbox."""

    def __init__(
        self,
        sandbox: Sandbox,
        context: InvocationContext,
        bridge: LoopBridge,
        *,
        session_factory: SessionFactory = get_session,
    ) -> None:
        self.sandbox = sandbox
        self.context = context
        self.bridge = bridge
        self._session_factory = session_factory
        # Per-invocation only; a lexicon revision landing mid-call is seen by the next call.
        self._schemas: dict[str, tuple[CollectionSchema | None, Any]] = {}

    def install(self) -> None:
        sandbox = self.sandbox
        context = self.context
        sandbox.set_global("method", context.method)
        sandbox.set_global("collection", context.collection)
        sandbox.set_global("caller_did", context.caller_did)
        sandbox.set_global("input", sandbox.to_lua(context.input))
        sandbox.set_global("params", sandbox.to_lua(context.params or {}))
        sandbox.set_global("now", self.now)
        sandbox.set_global("log", self.log)
        sandbox.set_global("TID", self.context.tid)
        sandbox.set_global(
            "db",
            sandbox.table(query=self.db_query, get=self.db_get, count=self.db_count, search=self.db_search),
        )
        host = sandbox.table(
            describe=self._describe,
            valid_key_type=is_valid_key_type,
            tid=self.context.tid,
            save=self._save,
            delete=self._delete,
            load=self._load,
            load_all=self._load_all,
            save_all=self._save_all,
        )
        setup = sandbox.lua.eval(RECORD_PRELUDE)
        sandbox.set_global("Record", setup(host, sandbox.mark_array))

    # -- context values --

    def now(self) -> str:
        return self.context.clock().isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def log(self, *args: Any) -> None:
        self.context.logger.debug("script_log %s", self.sandbox.args_to_text(*args))

    # -- storage helpers --

    def _run(self, operation: Callable[[AsyncSession], Any]) -> Any:
        async def _with_session() -> Any:
            async with self._session_factory() as session:
                return await operation(session)

        return self.bridge.run(_with_session)

    def _require_writer(self) -> str:
        if self.context.read_only:
            raise ScriptError(f"{self.context.kind} scripts cannot write records")
        if not self.context.caller_did:
            raise ScriptError("writing records requires an authenticated caller")
        return self.context.caller_did

    def _owned_rkey(self, uri: str, collection: str, caller_did: str) -> str:
        try:
            parsed = AtUri.parse(uri)
        except ValueError as exc:
            raise ScriptError(str(exc)) from exc
        if parsed.authority != caller_did:
            raise ScriptError(f"cannot modify {uri}: record belongs to another authority")
        if parsed.collection != collection:
            raise ScriptError(f"cannot modify {uri}: record belongs to another collection")
        return parsed.rkey

    def _schema(self, collection: str) -> CollectionSchema | None:
        if collection not in self._schemas:
            schema = self._run(lambda session: record_store.describe_collection(session, collection))
            lua_schema = self.sandbox.to_lua(schema.record_schema) if schema is not None else None
            self._schemas[collection] = (schema, lua_schema)
        return self._schemas[collection][0]

    def _payload(self, collection: str, fields: Any) -> dict[str, Any]:
        """Plain record data from a handle: schema properties only, ``$type`` stamped."""
        schema = self._schema(collection)
        allowed = schema.property_names if schema is not None else None
        payload: dict[str, Any] = {}
        for key, value in fields.items():
            if not isinstance(key, str) or key.startswith("_"):
                continue
            if allowed is not None and key not in allowed:
                continue
            payload[key] = self.sandbox.from_lua(value)
        payload["$type"] = collection
        return payload

    def _view_item(self, view: record_store.RecordView) -> Any:
        return self.sandbox.to_lua(
            {
                "uri": view.uri,
                "collection": view.collection,
                "rkey": view.rkey,
                "cid": view.cid,
                "record": view.record,
            }
        )

    # -- Record host functions --

    def _describe(self, collection: Any, tolerant: bool) -> tuple[Any, Any]:
        if not isinstance(collection, str) or not is_valid_nsid(collection):
            raise ScriptError(f"'{collection}' is not a valid collection NSID")
        try:
            schema = self._schema(collection)
        except RecordValidationError as exc:
            if tolerant:
                self._schemas[collection] = (None, None)
                return None, None
            raise ScriptError(exc.message) from exc
        if schema is None:
            return None, None
        return self._schemas[collection][1], schema.key_type

    def _save(self, collection: str, fields: Any, uri: str | None, rkey: str | None, key_type: str | None):
        caller_did = self._require_writer()
        if uri is not None:
            rkey = self._owned_rkey(uri, collection, caller_did)
        payload = self._payload(collection, fields)
        saved = self._run(
            lambda session: record_store.save_record(
                session,
                did=caller_did,
                collection=collection,
                record=payload,
                rkey=rkey,
                key_type=key_type,
            )
        )
        self.context.logger.info("script_record_saved uri=%s", saved.uri)
        return saved.uri, saved.cid, saved.rkey

    def _delete(self, uri: str) -> bool:
        caller_did = self._require_writer()
        try:
            parsed = AtUri.parse(uri)
        except ValueError as exc:
            raise ScriptError(str(exc)) from exc
        self._owned_rkey(uri, parsed.collection, caller_did)

        async def _delete(session: AsyncSession) -> bool:
            try:
                await record_store.delete_record(session, uri)
            except NotFoundError:
                return False
            return True

        return self._run(_delete)

    def _load(self, uri: Any) -> Any:
        if not isinstance(uri, str):
            raise ScriptError("Record.load expects a URI string")

        async def _get(session: AsyncSession) -> record_store.RecordView | None:
            try:
                return await record_store.get_record(session, uri)
            except NotFoundError:
                return None

        view = self._run(_get)
        return self._view_item(view) if view is not None else None

    def _load_all(self, uris: Any) -> tuple[Any, int]:
        wanted = [uris[index] for index in range(1, len(uris) + 1)]
        if not all(isinstance(uri, str) for uri in wanted):
            raise ScriptError("Record.load_all expects a list of URI strings")
        views = self._run(lambda session: record_store.get_records(session, wanted))
        found = self.sandbox.lua.table()
        for index, view in enumerate(views, start=1):
            if view is not None:
                found[index] = self._view_item(view)
        return found, len(wanted)

    def _save_all(self, items: Any, count: int) -> Any:
        """Save a batch concurrently; each item reports its own outcome."""
        caller_did = self._require_writer()
        prepared: list[dict[str, Any] | ScriptError] = []
        for index in range(1, count + 1):
            item = items[index]
            collection = item["collection"]
            try:
                rkey = item["rkey"]
                if item["uri"] is not None:
                    rkey = self._owned_rkey(item["uri"], collection, caller_did)
                prepared.append(
                    {
                        "collection": collection,
                        "record": self._payload(collection, item["fields"]),
                        "rkey": rkey,
                        "key_type": item["key_type"],
                    }
                )
            except ScriptError as exc:
                prepared.append(exc)

        async def _save_one(entry: dict[str, Any]) -> record_store.SavedRecord:
            async with self._session_factory() as session:
                return await record_store.save_record(session, did=caller_did, **entry)

        async def _save_batch() -> list[Any]:
            pending = [_save_one(entry) for entry in prepared if not isinstance(entry, ScriptError)]
            return await asyncio.gather(*pending, return_exceptions=True)

        outcomes = iter(self.bridge.run(_save_batch))
        results: list[dict[str, Any]] = []
        for entry in prepared:
            outcome = entry if isinstance(entry, ScriptError) else next(outcomes)
            if isinstance(outcome, LexhostError):
                results.append({"error": outcome.message})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append({"uri": outcome.uri, "cid": outcome.cid, "rkey": outcome.rkey})
        failed = sum(1 for result in results if "error" in result)
        self.context.logger.info("script_save_all total=%s failed=%s", len(results), failed)
        return self.sandbox.to_lua(results)

    # -- db table --

    def _options(self, opts: Any, name: str) -> Any:
        if lua_type(opts) != "table":
            raise ScriptError(f"db.{name} expects an options table")
        collection = opts["collection"]
        if not isinstance(collection, str) or not collection:
            raise ScriptError(f"db.{name} requires a collection")
        return opts

    def db_query(self, opts: Any) -> Any:
        opts = self._options(opts, "query")
        collection = opts["collection"]
        limit = opts["limit"]
        offset = opts["offset"]
        cursor = opts["cursor"]
        did = opts["did"]
        if limit is not None and not _is_number(limit):
            raise ScriptError("db.query limit must be a number")
        if offset is not None and not _is_number(offset):
            raise ScriptError("db.query offset must be a number")
        if cursor is not None and not isinstance(cursor, str):
            raise ScriptError("db.query cursor must be a string")
        if did is not None and not isinstance(did, str):
            raise ScriptError("db.query did must be a string")
        page = self._run(
            lambda session: record_store.query_records(
                session,
                collection=collection,
                did=did,
                limit=int(limit) if limit is not None else None,
                cursor=cursor,
                offset=int(offset) if offset is not None else None,
            )
        )
        result: dict[str, Any] = {"records": [view.with_uri() for view in page.records]}
        if page.cursor:
            result["cursor"] = page.cursor
        return self.sandbox.to_lua(result)

    def db_get(self, uri: Any) -> Any:
        if not isinstance(uri, str):
            raise ScriptError("db.get expects a URI string")

        async def _get(session: AsyncSession) -> record_store.RecordView | None:
            try:
                return await record_store.get_record(session, uri)
            except NotFoundError:
                return None

        view = self._run(_get)
        return self.sandbox.to_lua(view.with_uri()) if view is not None else None

    def db_count(self, collection: Any, did: Any = None) -> int:
        if not isinstance(collection, str) or not collection:
            raise ScriptError("db.count requires a collection")
        if did is not None and not isinstance(did, str):
            raise ScriptError("db.count did must be a string")
        return self._run(lambda session: record_store.count_records(session, collection=collection, did=did))

    def db_search(self, opts: Any) -> Any:
        opts = self._options(opts, "search")
        collection = opts["collection"]
        field = opts["field"]
        query = opts["query"]
        limit = opts["limit"]
        if not isinstance(field, str) or not field:
            raise ScriptError("db.search requires a field")
        if not isinstance(query, str):
            raise ScriptError("db.search requires a query string")
        if limit is not None and not _is_number(limit):
            raise ScriptError("db.search limit must be a number")
        views = self._run(
            lambda session: record_store.search_records(
                session,
                collection=collection,
                field=field,
                query=query,
                limit=int(limit) if limit is not None else None,
            )
        )
        return self.sandbox.to_lua({"records": [view.with_uri() for view in views]})
