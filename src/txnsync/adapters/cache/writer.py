from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger


class BackgroundWriter:
    """Runs cache writes as fire-and-forget tasks on the current loop.

    Callers never await a write on their result path; ``flush()`` waits for
    whatever is still pending (tests, shutdown).
    """

    def __init__(self) -> None:
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def schedule(self, write: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(write)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.bind(error=str(error)).warning("Background cache write failed: {}", error)
