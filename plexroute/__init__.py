"""PlexRoute: resolve Plex watch history into TMDB catalog routes.

The FastAPI application lives in :mod:`app.main`; the resolution engine and
its collaborators are re-exported here for library use.
"""

from __future__ import annotations

from app.main import app, create_app
from app.models import (
    EpisodeRoute,
    MovieRoute,
    ResolutionFailure,
    ResolutionStep,
    ShowRoute,
    WatchedItem,
)
from app.services.identity_cache import IdentityCache
from app.services.prefetch import PrefetchScheduler
from app.services.resolver import ResolverEngine

__all__ = [
    "app",
    "create_app",
    "EpisodeRoute",
    "IdentityCache",
    "MovieRoute",
    "PrefetchScheduler",
    "ResolutionFailure",
    "ResolutionStep",
    "ResolverEngine",
    "ShowRoute",
    "WatchedItem",
]
