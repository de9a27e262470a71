"""Module executed when running ``python -m plexroute``."""

from __future__ import annotations

import logging

import uvicorn

from app.config import get_settings

logger = logging.getLogger("plexroute")


def main() -> None:
    """Serve the resolver API with uvicorn using the configured settings."""

    settings = get_settings()
    if not settings.tmdb_api_key:
        logger.warning("TMDB_API_KEY is unset; /resolve will answer 503")
    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
