"""Resolution of Plex watch records into TMDB catalog routes."""

from __future__ import annotations

import logging

import httpx

from ..models import (
    CatalogRoute,
    EpisodeRoute,
    MediaKind,
    MetadataRecord,
    MovieRoute,
    ResolutionFailure,
    ResolutionResult,
    ResolutionStep,
    ShowRoute,
    WatchedItem,
)
from .identity_cache import IdentityCache
from .plex import PlexAPIError, PlexClient
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

NO_SEARCH_MATCHES = "No catalog matches for this title"

# Errors raised by the Plex and TMDB clients for transport, status and
# payload problems. Anything else is a bug and propagates.
LOOKUP_ERRORS = (httpx.HTTPError, PlexAPIError, ValueError)


class ResolverEngine:
    """Maps a :class:`WatchedItem` to a TMDB route.

    Stages run in order and stop at the first success: cached route, cached
    show id for episodes, Plex metadata guids, then TMDB title search. Failures
    are returned as :class:`ResolutionFailure` values carrying the notes
    collected along the way.
    """

    def __init__(
        self,
        plex_client: PlexClient,
        tmdb_client: TMDBClient,
        cache: IdentityCache,
    ):
        self._plex = plex_client
        self._tmdb = tmdb_client
        self._cache = cache

    @property
    def cache(self) -> IdentityCache:
        return self._cache

    async def resolve(
        self,
        item: WatchedItem,
        token: str | None,
        server_hint: str | None = None,
    ) -> ResolutionResult:
        if not token:
            return ResolutionFailure(
                step=ResolutionStep.MISSING_TOKEN,
                reason="Plex token is missing",
                search_query=item.search_title,
            )

        cached = await self._cache.route_for(item.id)
        if cached is not None:
            logger.debug("Route cache hit for %s", item.id)
            return cached

        shortcut = await self._route_from_cached_show(item)
        if shortcut is not None:
            await self._cache.store_route(item.id, shortcut)
            return shortcut

        notes: list[str] = []
        metadata: MetadataRecord | None = None
        try:
            metadata = await self._plex.fetch_metadata(item.id, token, server_hint)
        except LOOKUP_ERRORS as exc:
            logger.info("Metadata fetch for %s failed: %s", item.id, exc)
            notes.append(f"Metadata fetch failed: {exc}")
        else:
            if metadata is None:
                notes.append("Metadata not found on server")

        kind = item.kind
        if metadata is not None:
            if metadata.kind is not MediaKind.UNKNOWN:
                kind = metadata.kind
            item = self._complete_from_metadata(item, kind, metadata)

        if kind is MediaKind.EPISODE:
            if not item.has_episode_numbers:
                notes.append("Episode numbers missing")
            else:
                show_key = item.series_internal_id
                if show_key is None and metadata is not None:
                    show_key = metadata.grandparent_rating_key
                if show_key is None:
                    notes.append("Show key missing")
                else:
                    try:
                        show_id = await self._show_catalog_id(show_key, token, server_hint)
                    except LOOKUP_ERRORS as exc:
                        logger.warning(
                            "Show external id lookup for %s failed: %s", show_key, exc
                        )
                        return ResolutionFailure(
                            step=ResolutionStep.RESOLVE_EXTERNAL_IDS,
                            reason=str(exc),
                            notes=notes,
                            search_query=item.search_title,
                        )
                    if show_id is not None:
                        route = self._episode_route(item, show_id)
                        await self._cache.store_route(item.id, route)
                        return route
                    notes.append("No TMDB id on show metadata")
        else:
            tmdb_id = metadata.tmdb_id if metadata is not None else None
            if tmdb_id is not None:
                route = self._external_route(kind, tmdb_id, metadata)
                await self._cache.store_route(item.id, route)
                return route
            notes.append("No TMDB id in metadata guids")

        return await self._resolve_by_search(item, kind, notes)

    async def prefetch_item(
        self, item: WatchedItem, token: str, server_hint: str | None = None
    ) -> None:
        """Warm the cache cheaply for one item; errors propagate to the caller.

        Episodes only resolve their show id. Movies and shows try the guid
        path without any search fallback.
        """

        if item.kind is MediaKind.EPISODE:
            show_key = item.series_internal_id
            if show_key is None:
                return
            await self._show_catalog_id(show_key, token, server_hint)
            return

        if item.kind is MediaKind.UNKNOWN:
            return
        if await self._cache.route_for(item.id) is not None:
            return

        metadata = await self._plex.fetch_metadata(item.id, token, server_hint)
        if metadata is None or metadata.tmdb_id is None:
            return
        kind = metadata.kind if metadata.kind is not MediaKind.UNKNOWN else item.kind
        if kind is MediaKind.EPISODE:
            return
        route = self._external_route(kind, metadata.tmdb_id, metadata)
        await self._cache.store_route(item.id, route)

    async def _route_from_cached_show(self, item: WatchedItem) -> EpisodeRoute | None:
        if not item.is_episode or item.series_internal_id is None:
            return None
        if not item.has_episode_numbers:
            return None
        show_id = await self._cache.show_catalog_id_for(item.series_internal_id)
        if show_id is None:
            return None
        logger.debug("Show id cache hit for %s", item.series_internal_id)
        return self._episode_route(item, show_id)

    async def _show_catalog_id(
        self, show_key: str, token: str, server_hint: str | None
    ) -> int | None:
        cached = await self._cache.show_catalog_id_for(show_key)
        if cached is not None:
            return cached
        show_metadata = await self._plex.fetch_metadata(show_key, token, server_hint)
        if show_metadata is None or show_metadata.tmdb_id is None:
            return None
        await self._cache.store_show_catalog_id(show_key, show_metadata.tmdb_id)
        return show_metadata.tmdb_id

    async def _resolve_by_search(
        self, item: WatchedItem, kind: MediaKind, notes: list[str]
    ) -> ResolutionResult:
        query = item.search_title
        year = item.inferred_year
        logger.info("Falling back to TMDB search for %r (%s)", query, kind.value)

        try:
            if kind in (MediaKind.SHOW, MediaKind.EPISODE):
                results = await self._tmdb.search_shows(query, year)
            else:
                results = await self._tmdb.search_movies(query, year)
        except LOOKUP_ERRORS as exc:
            return ResolutionFailure(
                step=ResolutionStep.RESOLVE_BY_SEARCH,
                reason=str(exc),
                notes=notes,
                search_query=query,
            )

        if not results:
            return ResolutionFailure(
                step=ResolutionStep.RESOLVE_BY_SEARCH,
                reason=NO_SEARCH_MATCHES,
                notes=notes,
                search_query=query,
            )

        best = results[0]
        route: CatalogRoute
        if kind is MediaKind.EPISODE and item.has_episode_numbers:
            route = self._episode_route(item, best.catalog_id)
        elif kind in (MediaKind.SHOW, MediaKind.EPISODE):
            route = ShowRoute(
                catalog_id=best.catalog_id, title=best.title, poster_path=best.poster_path
            )
        else:
            route = MovieRoute(
                catalog_id=best.catalog_id, title=best.title, poster_path=best.poster_path
            )
        await self._cache.store_route(item.id, route)
        return route

    @staticmethod
    def _complete_from_metadata(
        item: WatchedItem, kind: MediaKind, metadata: MetadataRecord
    ) -> WatchedItem:
        """Fill gaps in a history record from the server's own metadata."""

        update: dict[str, int] = {}
        if kind is MediaKind.EPISODE:
            if item.season_number is None and metadata.parent_index is not None:
                update["season_number"] = metadata.parent_index
            if item.episode_number is None and metadata.index is not None:
                update["episode_number"] = metadata.index
        if item.year is None and metadata.year is not None:
            update["year"] = metadata.year
        if not update:
            return item
        return item.model_copy(update=update)

    @staticmethod
    def _episode_route(item: WatchedItem, show_id: int) -> EpisodeRoute:
        return EpisodeRoute(
            show_catalog_id=show_id,
            season_number=item.season_number or 0,
            episode_number=item.episode_number or 0,
            title=item.title or None,
        )

    @staticmethod
    def _external_route(
        kind: MediaKind, tmdb_id: int, metadata: MetadataRecord | None
    ) -> CatalogRoute:
        title = metadata.title if metadata is not None else None
        if kind is MediaKind.SHOW:
            return ShowRoute(catalog_id=tmdb_id, title=title)
        return MovieRoute(catalog_id=tmdb_id, title=title)
