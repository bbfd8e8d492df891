"""Throttle for high-frequency position writes (group drags)."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from shared.errors import DocumentNotFoundError, StoreError
from shared.models import Position
from shared.utils import setup_logging

logger = setup_logging("annotations")


class PositionCoalescer:
    """Keep only the latest position per key and write it at most once per interval.

    The first submit for a key schedules a flush; later submits inside the
    interval replace the pending position. The final position always lands.
    """

    def __init__(self, write: Callable[[str, Position], Awaitable[None]], interval: float = 0.1) -> None:
        self._write = write
        self.interval = interval
        self._pending: dict[str, Position] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending(self, key: str) -> Position | None:
        return self._pending.get(key)

    def submit(self, key: str, position: Position) -> None:
        self._pending[key] = position
        if key not in self._tasks:
            self._tasks[key] = asyncio.get_running_loop().create_task(self._flush_later(key))

    def discard(self, key: str) -> None:
        self._pending.pop(key, None)
        task = self._tasks.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def flush(self, key: str) -> None:
        self._tasks.pop(key, None)
        position = self._pending.pop(key, None)
        if position is None:
            return
        try:
            await self._write(key, position)
        except DocumentNotFoundError:
            logger.warning("Dropped position for %s: document no longer exists", key)
        except StoreError as exc:
            logger.error(f"Failed to persist position for {key}: {exc}")

    async def flush_all(self) -> None:
        for key in list(self._pending):
            task = self._tasks.pop(key, None)
            if task is not None and task is not asyncio.current_task():
                task.cancel()
            await self.flush(key)

    async def close(self) -> None:
        await self.flush_all()

    async def _flush_later(self, key: str) -> None:
        await asyncio.sleep(self.interval)
        await self.flush(key)
