"""Bounded worker pool shared by the scanner and the fix generator."""

from __future__ import annotations

import asyncio
import os
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class WorkerPool:
    """Caps the number of coroutines doing work at the same time.

    One pool is shared by scanner batches and per-strategy generation
    calls. Work submitted here must not submit to the same pool again,
    otherwise a full pool waits on itself.
    """

    def __init__(self, size: int | None = None) -> None:
        self.size = max(1, size or os.cpu_count() or 4)
        self._semaphore: asyncio.Semaphore | None = None
        self._active = 0
        self._peak = 0

    @property
    def semaphore(self) -> asyncio.Semaphore:
        # Created lazily so the pool can be built outside a running loop.
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.size)
        return self._semaphore

    @property
    def peak_concurrency(self) -> int:
        return self._peak

    async def submit(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``await fn(*args, **kwargs)`` once a slot is free."""
        async with self.semaphore:
            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                return await fn(*args, **kwargs)
            finally:
                self._active -= 1

    async def map(
        self,
        fn: Callable[..., Awaitable[T]],
        items: list[Any],
        return_exceptions: bool = False,
    ) -> list[Any]:
        """Apply ``fn`` to every item concurrently; results keep input order."""
        tasks = [self.submit(fn, item) for item in items]
        return await asyncio.gather(*tasks, return_exceptions=return_exceptions)
