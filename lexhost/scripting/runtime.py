from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from lupa.lua54 import LuaError, LuaMemoryError

from lexhost.core.config import Settings, get_settings
from lexhost.core.errors import LexhostError, ScriptError, ScriptTimeoutError
from lexhost.persistence.db import get_session
from lexhost.scripting.bindings import HostBindings, SessionFactory
from lexhost.scripting.context import InvocationContext, LoopBridge
from lexhost.scripting.sandbox import (
    ExecutionBudget,
    Sandbox,
    budget_from_settings,
    clean_lua_error,
    memory_limit_bytes,
)
from lexhost.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class ScriptRunner:
    """Run method scripts, one fresh interpreter per invocation.

    The interpreter lives on a worker thread for the whole call so that pure
    Lua evaluation never blocks the event loop; storage bindings hop back to
    the loop for their I/O.
    """

    def __init__(self, *, settings: Settings | None = None, session_factory: SessionFactory = get_session) -> None:
        self._settings = settings
        self._session_factory = session_factory

    async def run(self, source: str, context: InvocationContext) -> Any:
        settings = self._settings or get_settings()
        budget = budget_from_settings(settings)
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(
                self._execute, source, context, budget, memory_limit_bytes(settings), loop
            )
        except asyncio.CancelledError:
            # The worker thread stops at its next hook tick or host call.
            budget.exhaust()
            raise
        latency_ms = (time.monotonic() - started) * 1000.0
        logger.info("script_completed method=%s kind=%s latency_ms=%.1f", context.method, context.kind, latency_ms)
        return result

    def _execute(
        self,
        source: str,
        context: InvocationContext,
        budget: ExecutionBudget,
        max_memory_bytes: int | None,
        loop: asyncio.AbstractEventLoop,
    ) -> Any:
        try:
            sandbox = Sandbox(budget, max_memory_bytes=max_memory_bytes)
            HostBindings(
                sandbox,
                context,
                LoopBridge(loop, budget),
                session_factory=self._session_factory,
            ).install()
            sandbox.load(source)
            handle = sandbox.handle_function()
            if handle is None:
                raise ScriptError("script must define a handle() function")
            result = handle()
            if isinstance(result, tuple):
                result = result[0] if result else None
            value = sandbox.from_lua(result)
        except Exception as exc:
            translated = self._translate(exc, budget, context)
            if translated is exc:
                raise
            raise translated from exc
        # A swallowed host-call timeout still counts as exhausted.
        if budget.exhausted:
            increment_counter("script_timeouts_total")
            raise ScriptTimeoutError("script exceeded execution limit")
        return value

    def _translate(self, exc: Exception, budget: ExecutionBudget, context: InvocationContext) -> LexhostError:
        if budget.exhausted:
            increment_counter("script_timeouts_total")
            logger.warning("script_timeout method=%s instructions=%s", context.method, budget.instructions)
            return exc if isinstance(exc, ScriptTimeoutError) else ScriptTimeoutError("script exceeded execution limit")
        increment_counter("script_errors_total")
        if isinstance(exc, LexhostError):
            logger.info("script_failed method=%s error=%s", context.method, exc.error_name)
            return exc
        if isinstance(exc, LuaMemoryError):
            logger.warning("script_memory_exceeded method=%s", context.method)
            return ScriptError("script exceeded memory limit")
        if isinstance(exc, LuaError):
            message = clean_lua_error(exc)
            logger.info("script_failed method=%s error=%s", context.method, message)
            return ScriptError(message)
        logger.exception("script_host_failure method=%s", context.method)
        return ScriptError("script execution failed")
