from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any


class RequestThrottle:
    """
    Bounded-concurrency gate for upstream calls.

    At most ``max_concurrency`` holders run at once, and every slot granted
    after the first one since ``reset()`` waits ``spacing`` seconds first.
    With the default size of 1 account runs are strictly sequential.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 1,
        spacing: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._max_concurrency = max_concurrency
        self._spacing = spacing
        self._sleep = sleep
        self._granted = 0

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def reset(self) -> None:
        self._granted = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            if self._granted > 0 and self._spacing > 0:
                await self._sleep(self._spacing)
            self._granted += 1
            yield
