from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from lexhost.core.errors import ScriptTimeoutError
from lexhost.domain.identifiers import generate_tid
from lexhost.scripting.sandbox import ExecutionBudget


T = TypeVar("T")

script_logger = logging.getLogger("lexhost.scripts")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InvocationContext:
    """Per-call values handed to a script; never shared between invocations."""

    method: str
    kind: str
    caller_did: str | None = None
    collection: str | None = None
    input: Any = None
    params: dict[str, Any] | None = None
    clock: Callable[[], datetime] = utc_now
    tid: Callable[[], str] = generate_tid
    logger: logging.LoggerAdapter = field(init=False)

    def __post_init__(self) -> None:
        self.logger = logging.LoggerAdapter(script_logger, {"method": self.method})

    @property
    def read_only(self) -> bool:
        return self.kind != "procedure"


class LoopBridge:
    """Runs host coroutines on the service event loop from the script thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop, budget: ExecutionBudget) -> None:
        self._loop = loop
        self._budget = budget

    def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        remaining = self._budget.remaining_s()
        if self._budget.exhausted or remaining <= 0:
            self._budget.exhaust()
            raise ScriptTimeoutError("script exceeded execution time limit")
        future = asyncio.run_coroutine_threadsafe(factory(), self._loop)
        try:
            return future.result(timeout=remaining)
        except concurrent.futures.TimeoutError as exc:
            # The awaited host call is abandoned; writes it already committed stay committed.
            future.cancel()
            self._budget.exhaust()
            raise ScriptTimeoutError("script exceeded execution time limit") from exc
