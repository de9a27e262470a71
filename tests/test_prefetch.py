"""Tests for the background prefetch scheduler."""

from __future__ import annotations

import asyncio
from typing import cast

import pytest

from app.models import MediaKind, WatchedItem
from app.services.prefetch import PrefetchScheduler
from app.services.resolver import ResolverEngine


class RecordingResolver:
    """Resolver stand-in that records prefetch calls."""

    def __init__(
        self,
        *,
        blockers: dict[str, asyncio.Event] | None = None,
        failures: set[str] | None = None,
    ) -> None:
        self.blockers = blockers or {}
        self.failures = failures or set()
        self.calls: list[tuple[str, str, str | None]] = []

    async def prefetch_item(
        self, item: WatchedItem, token: str, server_hint: str | None = None
    ) -> None:
        self.calls.append((item.id, token, server_hint))
        blocker = self.blockers.get(item.id)
        if blocker is not None:
            await blocker.wait()
        if item.id in self.failures:
            raise RuntimeError(f"lookup for {item.id} exploded")


def movies(prefix: str, count: int) -> list[WatchedItem]:
    return [
        WatchedItem(id=f"{prefix}{index}", kind=MediaKind.MOVIE, title=f"Movie {index}")
        for index in range(count)
    ]


def build_scheduler(resolver: RecordingResolver, limit: int = 25) -> PrefetchScheduler:
    return PrefetchScheduler(cast(ResolverEngine, resolver), limit=limit, delay_seconds=0)


@pytest.mark.anyio
async def test_prefetch_walks_first_items_in_order() -> None:
    resolver = RecordingResolver()
    scheduler = build_scheduler(resolver, limit=3)

    task = scheduler.schedule(movies("m", 5), "token", "srv-1")
    assert task is not None
    await scheduler.wait()

    assert resolver.calls == [("m0", "token", "srv-1"), ("m1", "token", "srv-1"), ("m2", "token", "srv-1")]
    assert scheduler.attempted == {"m0", "m1", "m2"}


@pytest.mark.anyio
async def test_attempted_items_are_not_retried() -> None:
    resolver = RecordingResolver(failures={"m0"})
    scheduler = build_scheduler(resolver)

    scheduler.schedule(movies("m", 2), "token")
    await scheduler.wait()
    second = scheduler.schedule(movies("m", 3), "token")
    await scheduler.wait()

    assert second is not None
    assert [call[0] for call in resolver.calls] == ["m0", "m1", "m2"]


@pytest.mark.anyio
async def test_errors_do_not_stop_the_pass() -> None:
    resolver = RecordingResolver(failures={"m1"})
    scheduler = build_scheduler(resolver)

    scheduler.schedule(movies("m", 3), "token")
    await scheduler.wait()

    assert [call[0] for call in resolver.calls] == ["m0", "m1", "m2"]


@pytest.mark.anyio
async def test_new_schedule_stops_previous_pass_between_items() -> None:
    gate = asyncio.Event()
    resolver = RecordingResolver(blockers={"a0": gate})
    scheduler = build_scheduler(resolver)

    first = scheduler.schedule(movies("a", 3), "token")
    assert first is not None
    await asyncio.sleep(0)
    assert [call[0] for call in resolver.calls] == ["a0"]

    second = scheduler.schedule(movies("b", 2), "token")
    assert second is not None
    await second
    gate.set()
    await first

    called = [call[0] for call in resolver.calls]
    # The in-flight lookup for a0 completes; a1 and a2 are never started.
    assert called == ["a0", "b0", "b1"]
    assert first.done() and not first.cancelled()


@pytest.mark.anyio
async def test_missing_token_or_empty_batch_schedules_nothing() -> None:
    resolver = RecordingResolver()
    scheduler = build_scheduler(resolver)

    assert scheduler.schedule(movies("m", 2), None) is None
    assert scheduler.schedule([], "token") is None
    assert scheduler.is_running is False
    assert resolver.calls == []


@pytest.mark.anyio
async def test_stop_waits_for_running_pass() -> None:
    gate = asyncio.Event()
    resolver = RecordingResolver(blockers={"m0": gate})
    scheduler = build_scheduler(resolver)

    scheduler.schedule(movies("m", 3), "token")
    await asyncio.sleep(0)
    stopping = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0)
    gate.set()
    await stopping

    assert [call[0] for call in resolver.calls] == ["m0"]
    assert scheduler.is_running is False


@pytest.mark.anyio
async def test_superseded_pass_is_tracked_until_it_exits() -> None:
    gate = asyncio.Event()
    resolver = RecordingResolver(blockers={"a0": gate})
    scheduler = build_scheduler(resolver)

    first = scheduler.schedule(movies("a", 2), "token")
    assert first is not None
    await asyncio.sleep(0)
    second = scheduler.schedule(movies("b", 1), "token")
    assert second is not None
    await second

    assert scheduler.pending_passes == 1
    assert not first.done()

    stopping = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0)
    gate.set()
    await stopping

    assert first.done()
    assert scheduler.pending_passes == 0
    assert [call[0] for call in resolver.calls] == ["a0", "b0"]
