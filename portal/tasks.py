"""Fire-and-forget work that must never join a request's response path."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Set

logger = logging.getLogger("investor_portal.tasks")


class BackgroundDispatcher:
    """Schedule coroutines on the running loop and log their failures."""

    def __init__(self) -> None:
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(name, func, *args), name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every task dispatched so far."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _run(self, name: str, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        try:
            await func(*args)
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled", name)
            raise
        except Exception:
            logger.exception("Background task %s failed", name)


__all__ = ["BackgroundDispatcher"]
