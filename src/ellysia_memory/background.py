"""Fire-and-forget cache work, ordered per user."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from .exceptions import CacheUnavailable


class BackgroundQueue:
    """
    Runs best-effort cache propagation off the caller's path.

    Jobs for the same user run in submission order, so an eviction never
    lands before the propagation it follows. Jobs for different users run
    concurrently. Failures are logged and dropped; the next read falls
    through to the persistent store instead.
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()

    def submit(
        self,
        user_id: str,
        label: str,
        job: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task:
        previous = self._tails.get(user_id)

        async def run() -> None:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            try:
                await job()
            except CacheUnavailable as e:
                logger.warning(f"Cache {label} skipped for user {user_id}: {e}")
            except Exception as e:
                logger.error(f"Cache {label} failed for user {user_id}: {e}")

        task = asyncio.create_task(run(), name=f"memory-{label}-{user_id}")
        self._tails[user_id] = task
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(user_id, t))
        return task

    def _on_done(self, user_id: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if self._tails.get(user_id) is task:
            del self._tails[user_id]

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every submitted job, including ones submitted meanwhile."""
        while self._pending:
            done, pending = await asyncio.wait(list(self._pending), timeout=timeout)
            if pending and timeout is not None:
                logger.warning(f"{len(pending)} background cache jobs still running")
                return

    def __len__(self) -> int:
        return len(self._pending)
