from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


def _consume_exception(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        _ = task.exception()


class QueryDeduplicator(Generic[T]):
    """Shares one fetch per query signature within a single dashboard render.

    The table is owned by one render call. Use it as an async context manager
    so the table is cleared when the render finishes, including on error.
    """

    def __init__(self, *, render_id: str | None = None) -> None:
        self._render_id = render_id
        self._inflight: dict[str, asyncio.Future[T]] = {}
        self._requests = 0
        self._unique = 0
        self._closed = False

    async def __aenter__(self) -> QueryDeduplicator[T]:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        self.clear()

    @property
    def unique_queries(self) -> int:
        return self._unique

    @property
    def requests(self) -> int:
        return self._requests

    @property
    def deduplicated(self) -> int:
        return max(0, self._requests - self._unique)

    async def resolve(self, signature: str, compute: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        if self._closed:
            raise RuntimeError("deduplicator used after its render completed")
        self._requests += 1
        # Check and store happen with no await in between.
        future = self._inflight.get(signature)
        if future is not None:
            logger.debug("render.dedup.shared | %s", {"render_id": self._render_id, "signature": signature[:16]})
            return await asyncio.shield(future), True

        future = asyncio.ensure_future(compute())
        future.add_done_callback(_consume_exception)
        self._inflight[signature] = future
        self._unique += 1
        return await asyncio.shield(future), False

    def clear(self) -> None:
        self._inflight.clear()
        self._closed = True
