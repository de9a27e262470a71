"""Pydantic models describing watch history and resolved catalog routes."""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .utils import extract_tmdb_id, normalize_name


class MediaKind(str, Enum):
    """Coarse media type shared by history records and metadata."""

    MOVIE = "movie"
    SHOW = "show"
    EPISODE = "episode"
    UNKNOWN = "unknown"

    @classmethod
    def from_plex_type(cls, value: object) -> "MediaKind":
        """Map a Plex ``type`` attribute onto a media kind."""

        normalized = str(value or "").strip().lower()
        if normalized == "movie":
            return cls.MOVIE
        if normalized in {"show", "season"}:
            return cls.SHOW
        if normalized == "episode":
            return cls.EPISODE
        return cls.UNKNOWN


class WatchedItem(BaseModel):
    """One viewing record taken from Plex history or active sessions."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: MediaKind = MediaKind.UNKNOWN
    title: str = ""
    series_title: str | None = None
    season_number: int | None = Field(default=None, ge=0)
    episode_number: int | None = Field(default=None, ge=0)
    year: int | None = None
    originally_available_at: date | None = None
    series_internal_id: str | None = None
    viewer_account_id: int | None = None
    viewer_username: str | None = None
    viewed_at: int | None = None
    thumb: str | None = None

    @property
    def is_episode(self) -> bool:
        return self.kind is MediaKind.EPISODE

    @property
    def has_episode_numbers(self) -> bool:
        # Specials live in season 0, so only ``None`` counts as missing.
        return self.season_number is not None and self.episode_number is not None

    @property
    def series_key(self) -> str:
        """Key used to group episodes of the same show."""

        return self.series_internal_id or self.series_title or self.title

    @property
    def search_title(self) -> str:
        """Title used when falling back to a catalog search."""

        return self.series_title or self.title

    @property
    def inferred_year(self) -> int | None:
        if self.year is not None:
            return self.year
        if self.originally_available_at is not None:
            return self.originally_available_at.year
        return None

    @property
    def display_title(self) -> str:
        if self.is_episode:
            series = self.series_title or self.title
            if self.has_episode_numbers:
                return f"{series} • S{self.season_number}E{self.episode_number}"
            return series
        return self.title

    @property
    def display_subtitle(self) -> str:
        if self.is_episode:
            return self.title
        if self.year is not None:
            return str(self.year)
        return ""


class MovieRoute(BaseModel):
    """Resolved TMDB movie."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["movie"] = "movie"
    catalog_id: int
    title: str | None = None
    poster_path: str | None = None


class ShowRoute(BaseModel):
    """Resolved TMDB TV show."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["show"] = "show"
    catalog_id: int
    title: str | None = None
    poster_path: str | None = None


class EpisodeRoute(BaseModel):
    """Resolved TMDB episode addressed through its show."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["episode"] = "episode"
    show_catalog_id: int
    season_number: int = Field(ge=0)
    episode_number: int = Field(ge=0)
    title: str | None = None
    still_path: str | None = None


CatalogRoute = Annotated[
    Union[MovieRoute, ShowRoute, EpisodeRoute], Field(discriminator="kind")
]


class ResolutionStep(str, Enum):
    """Stage of the resolver that produced a failure."""

    MISSING_TOKEN = "missing_token"
    FETCH_METADATA = "fetch_metadata"
    RESOLVE_EXTERNAL_IDS = "resolve_external_ids"
    RESOLVE_BY_SEARCH = "resolve_by_search"


class ResolutionFailure(BaseModel):
    """Diagnosis returned when an item could not be mapped to the catalog."""

    step: ResolutionStep
    reason: str | None = None
    notes: list[str] = Field(default_factory=list)
    search_query: str | None = None


ResolutionResult = Union[MovieRoute, ShowRoute, EpisodeRoute, ResolutionFailure]


class MetadataRecord(BaseModel):
    """Subset of a Plex library metadata record needed for resolution."""

    rating_key: str
    kind: MediaKind = MediaKind.UNKNOWN
    title: str | None = None
    guids: list[str] = Field(default_factory=list)
    grandparent_rating_key: str | None = None
    parent_index: int | None = Field(default=None, ge=0)
    index: int | None = Field(default=None, ge=0)
    year: int | None = None

    @property
    def tmdb_id(self) -> int | None:
        """Return the first TMDB id found among the record's guids."""

        for guid in self.guids:
            tmdb_id = extract_tmdb_id(guid)
            if tmdb_id is not None:
                return tmdb_id
        return None


class HomeUser(BaseModel):
    """Member of the Plex Home directory."""

    model_config = ConfigDict(frozen=True)

    id: int
    title: str | None = None
    username: str | None = None
    friendly_name: str | None = None

    @computed_field
    @property
    def display_name(self) -> str:
        for candidate in (self.friendly_name, self.title, self.username):
            if candidate:
                return candidate
        return f"Account {self.id}"

    def name_variants(self) -> set[str]:
        return {
            normalize_name(name)
            for name in (self.friendly_name, self.title, self.username)
            if name and normalize_name(name)
        }


class UserAccount(BaseModel):
    """Account as reported by a Plex server or plex.tv."""

    model_config = ConfigDict(frozen=True)

    id: int
    title: str | None = None
    username: str | None = None
    name: str | None = None

    def name_variants(self) -> set[str]:
        return {
            normalize_name(name)
            for name in (self.title, self.username, self.name)
            if name and normalize_name(name)
        }


class CatalogSearchResult(BaseModel):
    """Single TMDB search hit."""

    catalog_id: int
    title: str
    year: int | None = None
    poster_path: str | None = None


class PlexConnection(BaseModel):
    """Reachable address of a Plex Media Server."""

    base_url: str
    access_token: str | None = None


class PlexServer(BaseModel):
    """Plex Media Server advertised by the account's resources."""

    id: str
    name: str
    owned: bool = False
    last_seen_at: str | None = None
    connection: PlexConnection


class AccountOption(BaseModel):
    """Viewer account seen in history with its play count."""

    id: int
    count: int
    last_viewed_at: int | None = None

    @computed_field
    @property
    def display_name(self) -> str:
        suffix = "play" if self.count == 1 else "plays"
        return f"Account {self.id} · {self.count} {suffix}"


class HomeUserAccounts(BaseModel):
    """Home user together with the viewer account ids that appear to be theirs."""

    user: HomeUser
    account_ids: list[int] = Field(default_factory=list)


class WatchFeed(BaseModel):
    """Now-playing and recently watched rails."""

    now_playing: list[WatchedItem] = Field(default_factory=list)
    recent: list[WatchedItem] = Field(default_factory=list)
