"""Tests for the Plex to TMDB resolution pipeline."""

from __future__ import annotations

from typing import cast

import httpx
import pytest

from app.models import (
    CatalogSearchResult,
    EpisodeRoute,
    MediaKind,
    MetadataRecord,
    MovieRoute,
    ResolutionFailure,
    ResolutionStep,
    ShowRoute,
    WatchedItem,
)
from app.services.identity_cache import IdentityCache
from app.services.plex import PlexClient
from app.services.resolver import NO_SEARCH_MATCHES, ResolverEngine
from app.services.tmdb import TMDBClient


class FakePlexClient:
    """Serves canned metadata records and records every lookup."""

    def __init__(
        self,
        metadata: dict[str, MetadataRecord] | None = None,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.metadata = metadata or {}
        self.errors = errors or {}
        self.calls: list[str] = []

    async def fetch_metadata(
        self, internal_id: str, token: str, server_hint: str | None = None
    ) -> MetadataRecord | None:
        self.calls.append(internal_id)
        if internal_id in self.errors:
            raise self.errors[internal_id]
        return self.metadata.get(internal_id)


class FakeTMDBClient:
    """Returns canned search hits and records queries."""

    def __init__(
        self,
        movies: list[CatalogSearchResult] | None = None,
        shows: list[CatalogSearchResult] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.movies = movies or []
        self.shows = shows or []
        self.error = error
        self.calls: list[tuple[str, str, int | None]] = []

    async def search_movies(self, title: str, year: int | None = None) -> list[CatalogSearchResult]:
        self.calls.append(("movie", title, year))
        if self.error is not None:
            raise self.error
        return self.movies

    async def search_shows(self, title: str, year: int | None = None) -> list[CatalogSearchResult]:
        self.calls.append(("tv", title, year))
        if self.error is not None:
            raise self.error
        return self.shows


def build_engine(
    plex: FakePlexClient | None = None,
    tmdb: FakeTMDBClient | None = None,
    cache: IdentityCache | None = None,
) -> tuple[ResolverEngine, FakePlexClient, FakeTMDBClient]:
    plex = plex or FakePlexClient()
    tmdb = tmdb or FakeTMDBClient()
    engine = ResolverEngine(
        cast(PlexClient, plex),
        cast(TMDBClient, tmdb),
        cache if cache is not None else IdentityCache(),
    )
    return engine, plex, tmdb


def episode(**overrides: object) -> WatchedItem:
    data: dict[str, object] = {
        "id": "ep1",
        "kind": MediaKind.EPISODE,
        "title": "Serenity",
        "series_title": "Firefly",
        "season_number": 1,
        "episode_number": 1,
    }
    data.update(overrides)
    return WatchedItem.model_validate(data)


@pytest.mark.anyio
async def test_cached_show_id_builds_episode_without_network() -> None:
    cache = IdentityCache()
    await cache.store_show_catalog_id("show42", 603)
    engine, plex, tmdb = build_engine(cache=cache)

    result = await engine.resolve(
        episode(series_internal_id="show42", season_number=2, episode_number=5), "token"
    )

    assert isinstance(result, EpisodeRoute)
    assert (result.show_catalog_id, result.season_number, result.episode_number) == (603, 2, 5)
    assert plex.calls == []
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_movie_resolves_from_metadata_guid() -> None:
    plex = FakePlexClient(
        {"m1": MetadataRecord(rating_key="m1", kind=MediaKind.MOVIE, title="Fight Club", guids=["themoviedb://550"])}
    )
    engine, _, tmdb = build_engine(plex=plex)

    result = await engine.resolve(WatchedItem(id="m1", kind=MediaKind.MOVIE, title="Fight Club"), "token")

    assert result == MovieRoute(catalog_id=550, title="Fight Club")
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_second_resolve_is_a_cache_hit() -> None:
    plex = FakePlexClient(
        {"m1": MetadataRecord(rating_key="m1", kind=MediaKind.MOVIE, guids=["tmdb://550"])}
    )
    engine, _, _ = build_engine(plex=plex)
    item = WatchedItem(id="m1", kind=MediaKind.MOVIE, title="Fight Club")

    first = await engine.resolve(item, "token")
    calls_after_first = list(plex.calls)
    second = await engine.resolve(item, "token")

    assert second == first
    assert plex.calls == calls_after_first


@pytest.mark.anyio
async def test_metadata_error_falls_back_to_show_search() -> None:
    plex = FakePlexClient(errors={"ep1": httpx.ConnectError("server unreachable")})
    tmdb = FakeTMDBClient(shows=[CatalogSearchResult(catalog_id=1437, title="Firefly")])
    engine, _, _ = build_engine(plex=plex, tmdb=tmdb)

    result = await engine.resolve(episode(), "token")

    assert isinstance(result, EpisodeRoute)
    assert (result.show_catalog_id, result.season_number, result.episode_number) == (1437, 1, 1)
    assert tmdb.calls == [("tv", "Firefly", None)]


@pytest.mark.anyio
async def test_missing_token_short_circuits() -> None:
    engine, plex, tmdb = build_engine()

    result = await engine.resolve(episode(), None)

    assert isinstance(result, ResolutionFailure)
    assert result.step is ResolutionStep.MISSING_TOKEN
    assert result.search_query == "Firefly"
    assert plex.calls == []
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_empty_search_reports_no_matches_with_notes() -> None:
    engine, _, _ = build_engine()

    result = await engine.resolve(
        WatchedItem(id="m9", kind=MediaKind.MOVIE, title="Obscure Film", year=1971), "token"
    )

    assert isinstance(result, ResolutionFailure)
    assert result.step is ResolutionStep.RESOLVE_BY_SEARCH
    assert result.reason == NO_SEARCH_MATCHES
    assert "Metadata not found on server" in result.notes
    assert "No TMDB id in metadata guids" in result.notes


@pytest.mark.anyio
async def test_search_transport_error_becomes_failure_reason() -> None:
    tmdb = FakeTMDBClient(error=httpx.ReadTimeout("search timed out"))
    engine, _, _ = build_engine(tmdb=tmdb)

    result = await engine.resolve(WatchedItem(id="m9", kind=MediaKind.MOVIE, title="Heat"), "token")

    assert isinstance(result, ResolutionFailure)
    assert result.step is ResolutionStep.RESOLVE_BY_SEARCH
    assert result.reason == "search timed out"


@pytest.mark.anyio
async def test_episode_resolves_through_parent_show_guid_and_caches_show() -> None:
    plex = FakePlexClient(
        {
            "ep1": MetadataRecord(rating_key="ep1", kind=MediaKind.EPISODE, grandparent_rating_key="77"),
            "77": MetadataRecord(rating_key="77", kind=MediaKind.SHOW, guids=["plex://show/x", "tmdb://1399"]),
        }
    )
    engine, _, tmdb = build_engine(plex=plex)

    first = await engine.resolve(episode(series_title="Game of Thrones"), "token")
    sibling = await engine.resolve(
        episode(id="ep2", series_internal_id="77", season_number=1, episode_number=2), "token"
    )

    assert first == EpisodeRoute(show_catalog_id=1399, season_number=1, episode_number=1, title="Serenity")
    assert isinstance(sibling, EpisodeRoute)
    assert sibling.show_catalog_id == 1399
    assert plex.calls == ["ep1", "77"]
    assert await engine.cache.show_catalog_id_for("77") == 1399
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_show_lookup_transport_error_is_terminal() -> None:
    plex = FakePlexClient(errors={"77": httpx.ConnectError("connection reset")})
    engine, _, tmdb = build_engine(plex=plex)

    result = await engine.resolve(episode(series_internal_id="77"), "token")

    assert isinstance(result, ResolutionFailure)
    assert result.step is ResolutionStep.RESOLVE_EXTERNAL_IDS
    assert result.reason == "connection reset"
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_show_without_guid_falls_through_to_search() -> None:
    plex = FakePlexClient({"77": MetadataRecord(rating_key="77", kind=MediaKind.SHOW, guids=["plex://show/x"])})
    tmdb = FakeTMDBClient(shows=[CatalogSearchResult(catalog_id=1437, title="Firefly")])
    engine, _, _ = build_engine(plex=plex, tmdb=tmdb)

    result = await engine.resolve(episode(series_internal_id="77", year=2002), "token")

    assert isinstance(result, EpisodeRoute)
    assert result.show_catalog_id == 1437
    assert tmdb.calls == [("tv", "Firefly", 2002)]


@pytest.mark.anyio
async def test_episode_without_numbers_searches_and_returns_show() -> None:
    tmdb = FakeTMDBClient(shows=[CatalogSearchResult(catalog_id=1437, title="Firefly", poster_path="/p.jpg")])
    engine, plex, _ = build_engine(tmdb=tmdb)

    result = await engine.resolve(
        episode(series_internal_id="77", season_number=None, episode_number=None), "token"
    )

    assert result == ShowRoute(catalog_id=1437, title="Firefly", poster_path="/p.jpg")
    # The show's guids are never consulted without episode numbers.
    assert plex.calls == ["ep1"]


@pytest.mark.anyio
async def test_specials_in_season_zero_are_resolved() -> None:
    cache = IdentityCache()
    await cache.store_show_catalog_id("77", 1437)
    engine, plex, _ = build_engine(cache=cache)

    result = await engine.resolve(
        episode(series_internal_id="77", season_number=0, episode_number=0), "token"
    )

    assert isinstance(result, EpisodeRoute)
    assert (result.season_number, result.episode_number) == (0, 0)
    assert plex.calls == []


@pytest.mark.anyio
async def test_metadata_kind_overrides_item_kind() -> None:
    plex = FakePlexClient({"s1": MetadataRecord(rating_key="s1", kind=MediaKind.SHOW, guids=["tmdb://1399"])})
    engine, _, _ = build_engine(plex=plex)

    result = await engine.resolve(WatchedItem(id="s1", title="Game of Thrones"), "token")

    assert result == ShowRoute(catalog_id=1399)


@pytest.mark.anyio
async def test_search_uses_first_result_and_year_from_air_date() -> None:
    tmdb = FakeTMDBClient(
        movies=[
            CatalogSearchResult(catalog_id=949, title="Heat"),
            CatalogSearchResult(catalog_id=1, title="Heat"),
        ]
    )
    engine, _, _ = build_engine(tmdb=tmdb)
    item = WatchedItem.model_validate(
        {"id": "m2", "kind": "movie", "title": "Heat", "originally_available_at": "1995-12-15"}
    )

    result = await engine.resolve(item, "token")

    assert result == MovieRoute(catalog_id=949, title="Heat")
    assert tmdb.calls == [("movie", "Heat", 1995)]
    assert await engine.cache.route_for("m2") == result


@pytest.mark.anyio
async def test_prefetch_episode_warms_only_show_id() -> None:
    plex = FakePlexClient({"77": MetadataRecord(rating_key="77", kind=MediaKind.SHOW, guids=["tmdb://1437"])})
    engine, _, tmdb = build_engine(plex=plex)

    await engine.prefetch_item(episode(series_internal_id="77"), "token")

    assert await engine.cache.show_catalog_id_for("77") == 1437
    assert await engine.cache.route_for("ep1") is None
    assert plex.calls == ["77"]
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_prefetch_movie_skips_search_and_unknown_kinds() -> None:
    plex = FakePlexClient({"m1": MetadataRecord(rating_key="m1", kind=MediaKind.MOVIE, guids=["imdb://tt1"])})
    engine, _, tmdb = build_engine(plex=plex)

    await engine.prefetch_item(WatchedItem(id="m1", kind=MediaKind.MOVIE, title="Heat"), "token")
    await engine.prefetch_item(WatchedItem(id="u1", title="Mystery"), "token")

    assert await engine.cache.route_for("m1") is None
    assert plex.calls == ["m1"]
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_episode_numbers_missing_from_history_are_taken_from_metadata() -> None:
    plex = FakePlexClient(
        {
            "ep1": MetadataRecord(
                rating_key="ep1",
                kind=MediaKind.EPISODE,
                grandparent_rating_key="77",
                parent_index=3,
                index=0,
            ),
            "77": MetadataRecord(rating_key="77", kind=MediaKind.SHOW, guids=["tmdb://1399"]),
        }
    )
    engine, _, tmdb = build_engine(plex=plex)

    result = await engine.resolve(episode(season_number=None, episode_number=None), "token")

    assert result == EpisodeRoute(show_catalog_id=1399, season_number=3, episode_number=0, title="Serenity")
    assert tmdb.calls == []


@pytest.mark.anyio
async def test_search_year_falls_back_to_metadata_year() -> None:
    plex = FakePlexClient({"m1": MetadataRecord(rating_key="m1", kind=MediaKind.MOVIE, year=1999)})
    tmdb = FakeTMDBClient(movies=[CatalogSearchResult(catalog_id=550, title="Fight Club")])
    engine, _, _ = build_engine(plex=plex, tmdb=tmdb)

    result = await engine.resolve(WatchedItem(id="m1", kind=MediaKind.MOVIE, title="Fight Club"), "token")

    assert result == MovieRoute(catalog_id=550, title="Fight Club")
    assert tmdb.calls == [("movie", "Fight Club", 1999)]
