"""Matching of Plex viewer accounts against selected Home users."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

import httpx

from ..models import HomeUser, UserAccount, WatchedItem
from ..utils import normalize_name
from .plex import PlexAPIError, PlexClient

logger = logging.getLogger(__name__)

OWNER_ACCOUNT_ID = 1


@dataclass(slots=True)
class AccountMatchCriteria:
    """Accounts and names that count as the selected viewers."""

    matching_account_ids: set[int] = field(default_factory=set)
    preferred_names: set[str] = field(default_factory=set)
    match_all: bool = False

    def allows(self, account_id: int | None) -> bool:
        if self.match_all:
            return True
        return account_id is not None and account_id in self.matching_account_ids

    def matches_name(self, user_title: str | None) -> bool:
        if not user_title:
            return False
        return normalize_name(user_title) in self.preferred_names

    def matches(self, item: WatchedItem) -> bool:
        """Return whether a history item belongs to a selected viewer."""

        return self.allows(item.viewer_account_id) or self.matches_name(
            item.viewer_username
        )


class AccountResolver:
    """Resolves numeric viewer ids to names and matches them to Home users.

    The server gives no authoritative account to Home user mapping, so the
    match is a name-variant intersection. Mismatches are expected.
    """

    def __init__(self, plex_client: PlexClient):
        self._plex = plex_client
        self._lock = asyncio.Lock()
        self._account_cache: dict[int, UserAccount] = {}
        self._current_user: UserAccount | None = None
        self._last_token: str | None = None

    async def match_criteria(
        self,
        preferred_home_user_ids: Iterable[int],
        home_users: Iterable[HomeUser],
        candidate_account_ids: Iterable[int],
        token: str,
        server_hint: str | None = None,
    ) -> AccountMatchCriteria:
        preferred_ids = set(preferred_home_user_ids)
        if not preferred_ids:
            return AccountMatchCriteria(match_all=True)

        preferred_names: set[str] = set()
        for user in home_users:
            if user.id in preferred_ids:
                preferred_names |= user.name_variants()

        matching = set(preferred_ids)
        if preferred_names:
            resolved = await self.resolve_name_variants(
                set(candidate_account_ids), token, server_hint
            )
            for account_id, names in resolved.items():
                if not names.isdisjoint(preferred_names):
                    matching.add(account_id)

        return AccountMatchCriteria(
            matching_account_ids=matching, preferred_names=preferred_names
        )

    async def map_home_users_to_account_ids(
        self,
        home_users: Iterable[HomeUser],
        candidate_account_ids: Iterable[int],
        token: str,
        server_hint: str | None = None,
    ) -> dict[int, set[int]]:
        """Return the viewer account ids that appear to belong to each Home user."""

        users = list(home_users)
        if not users:
            return {}
        candidates = set(candidate_account_ids)
        resolved = await self.resolve_name_variants(candidates, token, server_hint)

        mapping: dict[int, set[int]] = {}
        for user in users:
            names = user.name_variants()
            matched = {
                account_id
                for account_id, variants in resolved.items()
                if names and not variants.isdisjoint(names)
            }
            if not matched and user.id in candidates:
                matched.add(user.id)
            mapping[user.id] = matched
        return mapping

    async def resolve_name_variants(
        self,
        account_ids: set[int],
        token: str,
        server_hint: str | None = None,
    ) -> dict[int, set[str]]:
        """Return normalized name variants for every account id that resolves."""

        if not account_ids:
            return {}

        async with self._lock:
            self._reset_if_needed(token)

            resolved: dict[int, UserAccount] = {}
            pending: list[int] = []
            for account_id in sorted(account_ids):
                cached = self._account_cache.get(account_id)
                if cached is not None:
                    resolved[account_id] = cached
                else:
                    pending.append(account_id)

            if OWNER_ACCOUNT_ID in pending:
                owner = await self._resolve_owner(token)
                if owner is not None:
                    resolved[OWNER_ACCOUNT_ID] = owner
                    self._account_cache[OWNER_ACCOUNT_ID] = owner
                    pending.remove(OWNER_ACCOUNT_ID)

            if pending:
                lookups = await asyncio.gather(
                    *(
                        self._lookup_account(account_id, token, server_hint)
                        for account_id in pending
                    )
                )
                for account_id, account in zip(pending, lookups):
                    if account is not None:
                        resolved[account_id] = account
                        self._account_cache[account_id] = account

        unresolved = account_ids.difference(resolved)
        if unresolved:
            logger.warning(
                "Plex account name lookup missing for account ids: %s",
                sorted(unresolved),
            )

        variants: dict[int, set[str]] = {}
        for account_id, account in resolved.items():
            names = account.name_variants()
            if names:
                variants[account_id] = names
        return variants

    async def _resolve_owner(self, token: str) -> UserAccount | None:
        if self._current_user is None:
            try:
                self._current_user = await self._plex.fetch_current_user(token)
            except (httpx.HTTPError, ValueError) as exc:
                logger.info("Could not resolve the owning Plex account: %s", exc)
                return None
        owner = self._current_user
        return UserAccount(
            id=OWNER_ACCOUNT_ID,
            title=owner.title,
            username=owner.username,
            name=owner.name,
        )

    async def _lookup_account(
        self, account_id: int, token: str, server_hint: str | None
    ) -> UserAccount | None:
        try:
            return await self._plex.fetch_user_account(account_id, token, server_hint)
        except (httpx.HTTPError, PlexAPIError, ValueError) as exc:
            logger.debug("Account lookup for %s failed: %s", account_id, exc)
            return None

    def _reset_if_needed(self, token: str) -> None:
        if self._last_token != token:
            self._account_cache.clear()
            self._current_user = None
            self._last_token = token
