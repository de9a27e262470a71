"""Session memoization of Plex to TMDB identity lookups."""

from __future__ import annotations

import asyncio

from ..models import CatalogRoute


class IdentityCache:
    """Route and show-id maps shared by the resolver and the prefetcher.

    Entries are never invalidated: a Plex rating key keeps pointing at the
    same TMDB entity for the lifetime of the process. All reads and writes go
    through one lock so that interactive resolution and the background
    prefetch never interleave mutations.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._route_by_item_id: dict[str, CatalogRoute] = {}
        self._show_id_by_internal_id: dict[str, int] = {}

    async def route_for(self, item_id: str) -> CatalogRoute | None:
        async with self._lock:
            return self._route_by_item_id.get(item_id)

    async def store_route(self, item_id: str, route: CatalogRoute) -> None:
        async with self._lock:
            self._route_by_item_id[item_id] = route

    async def show_catalog_id_for(self, internal_show_id: str) -> int | None:
        async with self._lock:
            return self._show_id_by_internal_id.get(internal_show_id)

    async def store_show_catalog_id(self, internal_show_id: str, catalog_id: int) -> None:
        async with self._lock:
            self._show_id_by_internal_id[internal_show_id] = catalog_id

    async def clear(self) -> None:
        async with self._lock:
            self._route_by_item_id.clear()
            self._show_id_by_internal_id.clear()
