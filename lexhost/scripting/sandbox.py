"""Isolated Lua interpreter for one script invocation.

Each ``Sandbox`` owns a fresh ``LuaRuntime``. Before any user code runs the
prelude captures the few primitives the host needs (``debug.sethook`` and
``load``), installs the instruction-count hook, wraps ``pcall``/``xpcall``
and coroutines so budget exhaustion cannot be swallowed, and then removes
every global that reaches outside the interpreter.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Callable

from lupa.lua54 import LuaError, LuaMemoryError, LuaRuntime, lua_type

from lexhost.core.config import Settings, get_settings
from lexhost.core.errors import InvalidScriptError, ScriptError


BUDGET_SENTINEL = "script exceeded execution limit"
_MAX_DEPTH = 64

_PRELUDE = """
function(check_budget, interval, sentinel)
  local sethook = debug.sethook
  local raw_load, raw_pcall, raw_xpcall, raw_error = load, pcall, xpcall, error
  local co_create, co_resume = coroutine.create, coroutine.resume
  local pack, unpack = table.pack, table.unpack
  local setmt, getmt = setmetatable, getmetatable

  local function hook()
    if check_budget() then raw_error(sentinel, 0) end
  end
  sethook(hook, "", interval)

  local function rethrow_budget(ok, ...)
    if not ok and (...) == sentinel then raw_error(sentinel, 0) end
    return ok, ...
  end

  pcall = function(f, ...)
    return rethrow_budget(raw_pcall(f, ...))
  end
  xpcall = function(f, handler, ...)
    local function guarded(e)
      if e == sentinel then return e end
      return handler(e)
    end
    return rethrow_budget(raw_xpcall(f, guarded, ...))
  end
  coroutine.create = function(f)
    local co = co_create(f)
    sethook(co, hook, "", interval)
    return co
  end
  coroutine.resume = function(co, ...)
    return rethrow_budget(co_resume(co, ...))
  end
  coroutine.wrap = function(f)
    local co = coroutine.create(f)
    return function(...)
      local res = pack(co_resume(co, ...))
      if not res[1] then raw_error(res[2], 0) end
      return unpack(res, 2, res.n)
    end
  end

  local array_mt = {__name = "array"}
  toarray = function(t)
    local out = {}
    if t ~= nil then
      for i, v in ipairs(t) do out[i] = v end
    end
    return setmt(out, array_mt)
  end
  local function is_array(t) return getmt(t) == array_mt end
  local function mark_array(t) return setmt(t, array_mt) end
  local function compile(source)
    local chunk, err = raw_load(source, "=handler", "t", _G)
    if chunk == nil then raw_error(err, 0) end
    return chunk
  end

  for _, name in ipairs({
    "os", "io", "debug", "package", "require", "dofile", "loadfile", "load",
    "collectgarbage", "python", "print",
  }) do
    _G[name] = nil
  end
  string.dump = nil

  return is_array, mark_array, compile
end
"""


def _deny_attribute_access(obj: Any, attr_name: str, is_setting: bool) -> str:
    # Host callables are opaque to scripts; no attribute walk back into Python.
    raise AttributeError("attribute access is not available to scripts")


class ExecutionBudget:
    """Instruction and wall-clock budget shared by the hook and host bindings."""

    def __init__(
        self,
        *,
        instruction_limit: int,
        hook_interval: int,
        timeout_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.instruction_limit = instruction_limit
        self.hook_interval = max(1, hook_interval)
        self._clock = clock
        self._deadline = clock() + timeout_s
        self.instructions = 0
        self.exhausted = False

    def check(self) -> bool:
        # Called from the Lua count hook every hook_interval instructions.
        self.instructions += self.hook_interval
        if self.exhausted or self.instructions >= self.instruction_limit or self._clock() >= self._deadline:
            self.exhausted = True
        return self.exhausted

    def remaining_s(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def exhaust(self) -> None:
        self.exhausted = True


def clean_lua_error(exc: BaseException) -> str:
    message = str(exc).split("\nstack traceback:", 1)[0].strip()
    return message or "script failed"


class Sandbox:
    def __init__(self, budget: ExecutionBudget, *, max_memory_bytes: int | None = None) -> None:
        self.budget = budget
        self.lua = LuaRuntime(
            register_eval=False,
            register_builtins=False,
            unpack_returned_tuples=True,
            attribute_filter=_deny_attribute_access,
            max_memory=max_memory_bytes,
        )
        setup = self.lua.eval(_PRELUDE)
        self._is_array, self._mark_array, self._compile = setup(
            budget.check, budget.hook_interval, BUDGET_SENTINEL
        )

    def set_global(self, name: str, value: Any) -> None:
        self.lua.globals()[name] = value

    def load(self, source: str) -> None:
        # Runs the chunk's top level, which is expected to define handle().
        chunk = self._compile(source)
        chunk()

    def handle_function(self) -> Any:
        handle = self.lua.globals()["handle"]
        return handle if lua_type(handle) == "function" else None

    def mark_array(self, table: Any) -> Any:
        return self._mark_array(table)

    def to_lua(self, value: Any, depth: int = 0) -> Any:
        if depth > _MAX_DEPTH:
            raise ScriptError("value nesting is too deep")
        if isinstance(value, dict):
            table = self.lua.table()
            for key, item in value.items():
                table[key] = self.to_lua(item, depth + 1)
            return table
        if isinstance(value, (list, tuple)):
            table = self.lua.table()
            for index, item in enumerate(value, start=1):
                table[index] = self.to_lua(item, depth + 1)
            return self._mark_array(table)
        return value

    def table(self, **fields: Any) -> Any:
        table = self.lua.table()
        for key, value in fields.items():
            table[key] = value
        return table

    def from_lua(self, value: Any, depth: int = 0) -> Any:
        """Convert a Lua value into plain JSON-compatible Python data."""
        if depth > _MAX_DEPTH:
            raise ScriptError("returned value nesting is too deep (or cyclic)")
        kind = lua_type(value)
        if kind is None:
            if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
                raise ScriptError("script returned a non-finite number")
            if value is None or isinstance(value, (bool, int, float, str)):
                return value
            raise ScriptError("script returned a non-data value")
        if kind != "table":
            raise ScriptError(f"script returned a non-data value ({kind})")
        if self._is_array(value):
            return [self.from_lua(value[index], depth + 1) for index in range(1, len(value) + 1)]
        items = list(value.items())
        keys = [key for key, _ in items]
        if keys and all(isinstance(key, int) and not isinstance(key, bool) for key in keys):
            if sorted(keys) == list(range(1, len(keys) + 1)):
                return [self.from_lua(item, depth + 1) for _, item in sorted(items, key=lambda pair: pair[0])]
        result: dict[str, Any] = {}
        for key, item in items:
            if isinstance(key, bool) or not isinstance(key, (str, int)):
                raise ScriptError("table keys must be strings to be returned as an object")
            result[str(key)] = self.from_lua(item, depth + 1)
        return result

    def args_to_text(self, *args: Any) -> str:
        parts = []
        for arg in args:
            if lua_type(arg) is None:
                parts.append("nil" if arg is None else str(arg))
            else:
                parts.append(str(arg))
        return " ".join(parts)


def validate_script(source: str, *, budget: ExecutionBudget, max_memory_bytes: int | None = None) -> None:
    """Compile a script and require a handle() entry point.

    Only the top-level chunk runs; host bindings are absent at this stage.
    """
    if not isinstance(source, str) or not source.strip():
        raise InvalidScriptError("script must not be empty")
    try:
        sandbox = Sandbox(budget, max_memory_bytes=max_memory_bytes)
        sandbox.load(source)
    except LuaMemoryError as exc:
        raise InvalidScriptError("script compilation failed: memory limit exceeded") from exc
    except LuaError as exc:
        if budget.exhausted:
            raise InvalidScriptError("script compilation failed: top-level code exceeded execution limit") from exc
        raise InvalidScriptError(f"script compilation failed: {clean_lua_error(exc)}") from exc
    if sandbox.handle_function() is None:
        raise InvalidScriptError("script must define a handle() function")


def budget_from_settings(settings: Settings | None = None) -> ExecutionBudget:
    settings = settings or get_settings()
    return ExecutionBudget(
        instruction_limit=settings.script_instruction_limit,
        hook_interval=settings.script_hook_interval,
        timeout_s=settings.script_timeout_ms / 1000.0,
    )


def memory_limit_bytes(settings: Settings | None = None) -> int | None:
    settings = settings or get_settings()
    if settings.script_max_memory_mb <= 0:
        return None
    return settings.script_max_memory_mb * 1024 * 1024


async def check_script(source: str) -> None:
    # Compile off the event loop; a runaway top level is bounded by the same budget.
    settings = get_settings()
    await asyncio.to_thread(
        validate_script,
        source,
        budget=budget_from_settings(settings),
        max_memory_bytes=memory_limit_bytes(settings),
    )
