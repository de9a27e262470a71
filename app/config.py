"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="PlexRoute", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    plex_token: str | None = Field(default=None, alias="PLEX_TOKEN")
    plex_server_id: str | None = Field(default=None, alias="PLEX_SERVER_ID")
    plex_product: str = Field(default="PlexRoute", alias="PLEX_PRODUCT")
    plex_client_identifier: str = Field(
        default="plexroute-python", alias="PLEX_CLIENT_IDENTIFIER"
    )
    plex_tv_url: HttpUrl = Field(default="https://plex.tv", alias="PLEX_TV_URL")
    plex_clients_url: HttpUrl = Field(
        default="https://clients.plex.tv", alias="PLEX_CLIENTS_URL"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org", alias="TMDB_API_URL"
    )

    history_page_size: int = Field(
        default=20, alias="HISTORY_PAGE_SIZE", ge=1, le=500
    )
    episodes_per_show: int = Field(default=3, alias="EPISODES_PER_SHOW", ge=1)
    prefetch_limit: int = Field(default=25, alias="PREFETCH_LIMIT", ge=0, le=100)
    prefetch_delay_seconds: float = Field(
        default=0.1, alias="PREFETCH_DELAY", ge=0.0, le=10.0
    )

    preferred_home_user_ids: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(), alias="PREFERRED_HOME_USER_IDS"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("preferred_home_user_ids", mode="before")
    @classmethod
    def _parse_home_user_ids(cls, value: object) -> tuple[int, ...]:
        """Accept comma separated strings or iterables of ids."""

        if value is None:
            return ()
        if isinstance(value, int):
            return (value,)
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError(
                "PREFERRED_HOME_USER_IDS must be a string or iterable of ids"
            )

        cleaned: list[int] = []
        for entry in raw_values:
            if not entry:
                continue
            try:
                user_id = int(entry)
            except ValueError as exc:
                raise ValueError("Home user ids must be integers") from exc
            if user_id not in cleaned:
                cleaned.append(user_id)
        return tuple(cleaned)

    @field_validator("plex_token", "plex_server_id", "tmdb_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
