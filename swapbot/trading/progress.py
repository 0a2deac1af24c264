from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from swapbot.common import log_event


class ProgressFeed:
    """Finite, single-use stream of human-readable progress lines.

    Producers call ``emit``; ``close`` ends the stream. Lines are mirrored to
    the logger as ``progress`` events.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._consumed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, line: str, **fields: Any) -> None:
        if self._closed:
            return
        self._queue.put_nowait(line)
        if self._logger is not None:
            log_event(self._logger, level="info", event="progress", message=line, **fields)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("ProgressFeed can only be consumed once")
        self._consumed = True
        return self._lines()

    async def _lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line
