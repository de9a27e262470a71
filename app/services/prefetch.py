"""Background warm-up of the identity cache for freshly loaded history."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Sequence

from ..models import WatchedItem
from .resolver import ResolverEngine

logger = logging.getLogger(__name__)

DEFAULT_PREFETCH_LIMIT = 25


class PrefetchScheduler:
    """Runs one best-effort prefetch pass at a time.

    Items are processed sequentially with a short pause in between. Scheduling
    a new pass asks the previous one to stop; the running pass checks that
    request between items, never in the middle of a request.
    """

    def __init__(
        self,
        resolver: ResolverEngine,
        *,
        limit: int = DEFAULT_PREFETCH_LIMIT,
        delay_seconds: float = 0.1,
    ):
        self._resolver = resolver
        self._limit = limit
        self._delay_seconds = delay_seconds
        self._attempted: set[str] = set()
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._running: set[asyncio.Task[None]] = set()

    @property
    def attempted(self) -> frozenset[str]:
        return frozenset(self._attempted)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_passes(self) -> int:
        """Number of passes, current or superseded, that have not exited yet."""

        return len(self._running)

    def schedule(
        self,
        items: Sequence[WatchedItem],
        token: str | None,
        server_hint: str | None = None,
    ) -> asyncio.Task[None] | None:
        """Supersede any running pass and start one over ``items``."""

        self._request_stop()
        if not token:
            return None

        batch = [item for item in items[: self._limit] if item.id not in self._attempted]
        if not batch:
            return None

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        task = asyncio.create_task(self._run(batch, token, server_hint, stop_event))
        # Superseded passes keep running until their next stop check.
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        self._task = task
        return task

    async def wait(self) -> None:
        """Wait for the current pass, if any, to finish."""

        if self._task is not None:
            with suppress(asyncio.CancelledError):
                await self._task

    async def stop(self) -> None:
        """Stop the running pass and wait for every pass to exit."""

        self._request_stop()
        for task in list(self._running):
            with suppress(asyncio.CancelledError):
                await task
        self._task = None

    def _request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def _run(
        self,
        batch: list[WatchedItem],
        token: str,
        server_hint: str | None,
        stop_event: asyncio.Event,
    ) -> None:
        warmed = 0
        for item in batch:
            if stop_event.is_set():
                logger.debug("Prefetch superseded after %s items", warmed)
                return
            if item.id in self._attempted:
                continue
            self._attempted.add(item.id)
            try:
                await self._resolver.prefetch_item(item, token, server_hint)
                warmed += 1
            except Exception as exc:  # best-effort, never surfaces
                logger.debug("Prefetch for %s failed: %s", item.id, exc)
            if self._delay_seconds:
                await asyncio.sleep(self._delay_seconds)
        logger.debug("Prefetch pass finished, %s of %s items warmed", warmed, len(batch))
