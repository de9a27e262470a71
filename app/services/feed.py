"""Assembly of the now-playing and recently watched rails."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

import httpx

from ..config import Settings
from ..models import AccountOption, HomeUserAccounts, WatchedItem, WatchFeed
from .accounts import AccountMatchCriteria, AccountResolver
from .history import (
    exclude_now_playing,
    normalize,
    summarize_accounts,
    watched_items_from_records,
)
from .plex import PlexClient
from .prefetch import PrefetchScheduler

logger = logging.getLogger(__name__)

ACCOUNT_SCAN_PAGE_SIZE = 500


class WatchFeedService:
    """Loads history from Plex and shapes it for the client."""

    def __init__(
        self,
        settings: Settings,
        plex_client: PlexClient,
        account_resolver: AccountResolver,
        prefetcher: PrefetchScheduler,
    ):
        self._settings = settings
        self._plex = plex_client
        self._accounts = account_resolver
        self._prefetcher = prefetcher

    async def load(
        self,
        token: str,
        server_hint: str | None = None,
        preferred_home_user_ids: Iterable[int] | None = None,
    ) -> WatchFeed:
        """Return both rails and start warming the identity cache for them."""

        history_records, session_records = await asyncio.gather(
            self._plex.fetch_history_page(
                token, self._settings.history_page_size, server_hint
            ),
            self._plex.fetch_now_playing(token, server_hint),
        )
        playing = watched_items_from_records(session_records)
        history = watched_items_from_records(history_records)

        preferred = (
            tuple(preferred_home_user_ids)
            if preferred_home_user_ids is not None
            else self._settings.preferred_home_user_ids
        )
        if preferred:
            criteria = await self._criteria(
                preferred, [*playing, *history], token, server_hint
            )
            playing = [item for item in playing if criteria.matches(item)]
            history = [item for item in history if criteria.matches(item)]

        limit = self._settings.episodes_per_show
        now_playing = normalize(playing, limit_per_show=limit)
        recent = exclude_now_playing(normalize(history, limit_per_show=limit), now_playing)

        self._prefetcher.schedule([*now_playing, *recent], token, server_hint)
        return WatchFeed(now_playing=now_playing, recent=recent)

    async def list_accounts(
        self, token: str, server_hint: str | None = None
    ) -> list[AccountOption]:
        """Return viewer accounts seen in a large history page."""

        records = await self._plex.fetch_history_page(
            token, ACCOUNT_SCAN_PAGE_SIZE, server_hint
        )
        return summarize_accounts(watched_items_from_records(records))

    async def list_home_users(
        self, token: str, server_hint: str | None = None
    ) -> list[HomeUserAccounts]:
        """Return Home users with the viewer accounts matched to each of them."""

        home_users, records = await asyncio.gather(
            self._plex.fetch_home_users(token),
            self._plex.fetch_history_page(token, ACCOUNT_SCAN_PAGE_SIZE, server_hint),
        )
        candidates = {
            option.id for option in summarize_accounts(watched_items_from_records(records))
        }
        mapping = await self._accounts.map_home_users_to_account_ids(
            home_users, candidates, token, server_hint
        )
        return [
            HomeUserAccounts(user=user, account_ids=sorted(mapping.get(user.id, ())))
            for user in home_users
        ]

    async def _criteria(
        self,
        preferred: Iterable[int],
        items: list[WatchedItem],
        token: str,
        server_hint: str | None,
    ) -> AccountMatchCriteria:
        try:
            home_users = await self._plex.fetch_home_users(token)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Could not load Plex home users: %s", exc)
            home_users = []

        candidates = {
            item.viewer_account_id
            for item in items
            if item.viewer_account_id is not None
        }
        return await self._accounts.match_criteria(
            preferred, home_users, candidates, token, server_hint
        )
