"""Entry point for the FastAPI-powered PlexRoute service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import settings
from .models import (
    AccountOption,
    CatalogRoute,
    HomeUserAccounts,
    PlexServer,
    ResolutionFailure,
    WatchedItem,
    WatchFeed,
)
from .services.accounts import AccountResolver
from .services.feed import WatchFeedService
from .services.identity_cache import IdentityCache
from .services.plex import PlexAPIError, PlexClient
from .services.prefetch import PrefetchScheduler
from .services.resolver import ResolverEngine
from .services.tmdb import TMDBClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class ResolveRequest(BaseModel):
    """Body of ``POST /resolve``."""

    item: WatchedItem
    server_id: str | None = None


class ResolveResponse(BaseModel):
    """Either a route or a failure diagnosis, never both."""

    route: CatalogRoute | None = None
    failure: ResolutionFailure | None = None


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    plex_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
    )
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )

    plex = PlexClient(settings, plex_http_client)
    account_resolver = AccountResolver(plex)
    prefetcher: PrefetchScheduler | None = None

    if settings.tmdb_api_key:
        tmdb = TMDBClient(settings, tmdb_http_client)
        resolver = ResolverEngine(plex, tmdb, IdentityCache())
        prefetcher = PrefetchScheduler(
            resolver,
            limit=settings.prefetch_limit,
            delay_seconds=settings.prefetch_delay_seconds,
        )
        fastapi_app.state.resolver = resolver
        fastapi_app.state.feed_service = WatchFeedService(
            settings, plex, account_resolver, prefetcher
        )
    else:
        logger.error("TMDB_API_KEY is not configured; resolution is disabled")
    fastapi_app.state.plex_client = plex

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        if prefetcher is not None:
            await prefetcher.stop()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Resolves Plex watch history into TMDB catalog routes",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_resolver(app: FastAPI) -> ResolverEngine:
    resolver = getattr(app.state, "resolver", None)
    if not isinstance(resolver, ResolverEngine):
        raise HTTPException(status_code=503, detail="Resolver not initialised")
    return resolver


def get_feed_service(app: FastAPI) -> WatchFeedService:
    service = getattr(app.state, "feed_service", None)
    if not isinstance(service, WatchFeedService):
        raise HTTPException(status_code=503, detail="History service not initialised")
    return service


def get_plex_client(app: FastAPI) -> PlexClient:
    client = getattr(app.state, "plex_client", None)
    if not isinstance(client, PlexClient):
        raise HTTPException(status_code=503, detail="Plex client not initialised")
    return client


def request_token(request: Request) -> str | None:
    token = (request.headers.get("X-Plex-Token") or "").strip()
    return token or settings.plex_token


def require_token(request: Request) -> str:
    token = request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Plex token is missing")
    return token


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/servers", response_model=list[PlexServer])
    async def list_servers(request: Request) -> list[PlexServer]:
        token = require_token(request)
        plex = get_plex_client(fastapi_app)
        try:
            return await plex.fetch_servers(token)
        except (PlexAPIError, httpx.HTTPError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @fastapi_app.get("/history", response_model=WatchFeed)
    async def history(
        request: Request,
        server_id: str | None = None,
        home_user: list[int] | None = Query(default=None),
    ) -> WatchFeed:
        token = require_token(request)
        service = get_feed_service(fastapi_app)
        try:
            return await service.load(
                token, server_hint=server_id, preferred_home_user_ids=home_user
            )
        except (PlexAPIError, httpx.HTTPError, ValueError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @fastapi_app.get("/accounts", response_model=list[AccountOption])
    async def accounts(
        request: Request, server_id: str | None = None
    ) -> list[AccountOption]:
        token = require_token(request)
        service = get_feed_service(fastapi_app)
        try:
            return await service.list_accounts(token, server_hint=server_id)
        except (PlexAPIError, httpx.HTTPError, ValueError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @fastapi_app.get("/home-users", response_model=list[HomeUserAccounts])
    async def home_users(
        request: Request, server_id: str | None = None
    ) -> list[HomeUserAccounts]:
        token = require_token(request)
        service = get_feed_service(fastapi_app)
        try:
            return await service.list_home_users(token, server_hint=server_id)
        except (PlexAPIError, httpx.HTTPError, ValueError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @fastapi_app.post("/resolve", response_model=ResolveResponse)
    async def resolve(request: Request, payload: ResolveRequest) -> ResolveResponse:
        resolver = get_resolver(fastapi_app)
        result = await resolver.resolve(
            payload.item, request_token(request), payload.server_id
        )
        if isinstance(result, ResolutionFailure):
            logger.info(
                "Resolution of %s failed at %s: %s",
                payload.item.id,
                result.step.value,
                result.reason,
            )
            return ResolveResponse(failure=result)
        return ResolveResponse(route=result)


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
