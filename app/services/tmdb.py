"""Utilities for searching The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import CatalogSearchResult

logger = logging.getLogger(__name__)


class TMDBClient:
    """Client responsible for searching TMDB for media identifiers."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def search_movies(
        self, title: str, year: int | None = None
    ) -> list[CatalogSearchResult]:
        """Search movies, optionally narrowed to a release year."""

        return await self._search(title, content_type="movie", year=year)

    async def search_shows(
        self, title: str, year: int | None = None
    ) -> list[CatalogSearchResult]:
        """Search TV shows, optionally narrowed to a first-air year."""

        return await self._search(title, content_type="tv", year=year)

    async def _search(
        self, title: str, *, content_type: str, year: int | None
    ) -> list[CatalogSearchResult]:
        """Return search hits in TMDB's own relevance order."""

        endpoint = "/3/search/movie" if content_type == "movie" else "/3/search/tv"
        params: dict[str, Any] = {
            "query": title,
            "include_adult": "false",
            "language": "en-US",
            "page": 1,
            "api_key": self._settings.tmdb_api_key,
        }
        if year:
            if content_type == "movie":
                params["year"] = year
            else:
                params["first_air_date_year"] = year

        response = await self._client.get(endpoint, params=params)
        if response.status_code >= 400:
            logger.warning(
                "TMDB search for %s (%s) failed: %s", title, content_type, response.text
            )
        response.raise_for_status()
        data = response.json()

        results: list[CatalogSearchResult] = []
        for candidate in data.get("results", []):
            if not isinstance(candidate, dict) or candidate.get("id") is None:
                continue
            results.append(
                CatalogSearchResult(
                    catalog_id=int(candidate["id"]),
                    title=candidate.get("title") or candidate.get("name") or title,
                    year=self._extract_year(candidate, content_type),
                    poster_path=candidate.get("poster_path"),
                )
            )
        return results

    @staticmethod
    def _extract_year(result: dict[str, Any], content_type: str) -> int | None:
        date_key = "release_date" if content_type == "movie" else "first_air_date"
        date_value = result.get(date_key)
        if not isinstance(date_value, str) or len(date_value) < 4:
            return None
        try:
            return int(date_value[:4])
        except ValueError:
            return None
