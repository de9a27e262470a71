"""Utilities for communicating with plex.tv and Plex Media Servers."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from ..config import Settings
from ..models import (
    HomeUser,
    MediaKind,
    MetadataRecord,
    PlexConnection,
    PlexServer,
    UserAccount,
)
from ..utils import parse_bool, parse_index, parse_int
from .history import parse_history_payload

logger = logging.getLogger(__name__)


class PlexAPIError(RuntimeError):
    """Raised when Plex returns something the client cannot work with."""


class PlexClient:
    """Thin wrapper around the plex.tv and Plex Media Server HTTP APIs."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._connections: dict[tuple[str, str | None], PlexConnection] = {}

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Plex-Token": token,
            "X-Plex-Product": self._settings.plex_product,
            "X-Plex-Client-Identifier": self._settings.plex_client_identifier,
        }

    def _plex_tv(self, path: str) -> str:
        return f"{str(self._settings.plex_tv_url).rstrip('/')}{path}"

    async def fetch_servers(self, token: str) -> list[PlexServer]:
        """Return servers the account can reach, best connection first."""

        url = f"{str(self._settings.plex_clients_url).rstrip('/')}/api/v2/resources"
        params = {"includeHttps": "1", "includeRelay": "1", "includeIPv6": "1"}
        response = await self._client.get(url, headers=self._headers(token), params=params)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise PlexAPIError("Unexpected non-JSON Plex resources response") from exc
        return self.parse_servers(payload)

    async def resolve_server(
        self, token: str, server_hint: str | None = None
    ) -> PlexConnection:
        """Pick the server connection used for library requests."""

        hint = server_hint or self._settings.plex_server_id
        key = (token, hint)
        cached = self._connections.get(key)
        if cached is not None:
            return cached

        servers = await self.fetch_servers(token)
        if not servers:
            raise PlexAPIError("No Plex Media Server available for this account")

        selected = servers[0]
        if hint:
            for server in servers:
                if server.id == hint:
                    selected = server
                    break
            else:
                logger.warning(
                    "Preferred Plex server %s not found, using %s", hint, selected.name
                )

        self._connections[key] = selected.connection
        return selected.connection

    async def _server_get(
        self,
        path: str,
        token: str,
        server_hint: str | None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        connection = await self.resolve_server(token, server_hint)
        server_token = connection.access_token or token
        url = f"{connection.base_url.rstrip('/')}{path}"
        return await self._client.get(
            url, headers=self._headers(server_token), params=params
        )

    async def fetch_history_page(
        self,
        token: str,
        page_size: int,
        server_hint: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch the newest history records across all viewers."""

        params = {"sort": "viewedAt:desc", "X-Plex-Container-Size": page_size}
        response = await self._server_get(
            "/status/sessions/history/all", token, server_hint, params=params
        )
        response.raise_for_status()
        return self._parse_records(response)

    async def fetch_now_playing(
        self, token: str, server_hint: str | None = None
    ) -> list[dict[str, Any]]:
        """Fetch the sessions currently playing on the server."""

        response = await self._server_get("/status/sessions", token, server_hint)
        response.raise_for_status()
        return self._parse_records(response)

    async def fetch_metadata(
        self, internal_id: str, token: str, server_hint: str | None = None
    ) -> MetadataRecord | None:
        """Fetch a library item with its external guids; ``None`` when unknown."""

        response = await self._server_get(
            f"/library/metadata/{internal_id}",
            token,
            server_hint,
            params={"includeGuids": 1},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise PlexAPIError(f"Unexpected metadata payload for {internal_id}") from exc

        records = (payload.get("MediaContainer") or {}).get("Metadata") or []
        if not records or not isinstance(records[0], dict):
            return None
        return self.parse_metadata(records[0])

    async def fetch_home_users(self, token: str) -> list[HomeUser]:
        """Return the Plex Home directory for the signed-in account."""

        response = await self._client.get(
            self._plex_tv("/api/home/users"), headers=self._headers(token)
        )
        response.raise_for_status()
        return self.parse_home_users(response.text)

    async def fetch_current_user(self, token: str) -> UserAccount:
        """Return the account owning ``token``."""

        response = await self._client.get(
            self._plex_tv("/api/v2/user"), headers=self._headers(token)
        )
        response.raise_for_status()
        data = response.json()
        return UserAccount(
            id=parse_int(data.get("id")) or 1,
            title=data.get("title"),
            username=data.get("username"),
            name=data.get("friendlyName"),
        )

    async def fetch_user_account(
        self, account_id: int, token: str, server_hint: str | None = None
    ) -> UserAccount | None:
        """Look up a server-local viewer account by id."""

        response = await self._server_get(f"/accounts/{account_id}", token, server_hint)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        payload = response.json()
        accounts = (payload.get("MediaContainer") or {}).get("Account") or []
        if isinstance(accounts, dict):
            accounts = [accounts]
        for entry in accounts:
            if not isinstance(entry, dict):
                continue
            return UserAccount(
                id=parse_int(entry.get("id")) or account_id,
                title=entry.get("title"),
                username=entry.get("username"),
                name=entry.get("name"),
            )
        return None

    @staticmethod
    def _parse_records(response: httpx.Response) -> list[dict[str, Any]]:
        content_type = response.headers.get("content-type", "unknown")
        try:
            return parse_history_payload(response.text)
        except ValueError:
            logger.warning(
                "Plex history parse failed (%s): %s", content_type, response.text[:2000]
            )
            raise

    @staticmethod
    def parse_metadata(record: dict[str, Any]) -> MetadataRecord:
        guids: list[str] = []
        primary = record.get("guid")
        if isinstance(primary, str) and primary:
            guids.append(primary)
        extra = record.get("Guid") or []
        if isinstance(extra, dict):
            extra = [extra]
        for entry in extra:
            if isinstance(entry, dict) and entry.get("id"):
                guids.append(str(entry["id"]))

        grandparent = record.get("grandparentRatingKey")
        return MetadataRecord(
            rating_key=str(record.get("ratingKey") or ""),
            kind=MediaKind.from_plex_type(record.get("type")),
            title=record.get("title"),
            guids=guids,
            grandparent_rating_key=str(grandparent) if grandparent else None,
            parent_index=parse_index(record.get("parentIndex")),
            index=parse_index(record.get("index")),
            year=parse_int(record.get("year")),
        )

    @staticmethod
    def parse_home_users(text: str) -> list[HomeUser]:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as exc:
            raise ValueError("Invalid Plex home users XML") from exc

        users: list[HomeUser] = []
        for element in root.iter():
            if element.tag.lower() != "user":
                continue
            user_id = parse_int(element.get("id"))
            if user_id is None:
                continue
            users.append(
                HomeUser(
                    id=user_id,
                    title=element.get("title"),
                    username=element.get("username"),
                    friendly_name=element.get("friendlyName"),
                )
            )
        return users

    @classmethod
    def parse_servers(cls, payload: Any) -> list[PlexServer]:
        if isinstance(payload, dict):
            devices = (payload.get("MediaContainer") or {}).get("Device") or []
            if isinstance(devices, dict):
                devices = [devices]
        elif isinstance(payload, list):
            devices = payload
        else:
            devices = []

        servers: list[PlexServer] = []
        for device in devices:
            if not isinstance(device, dict):
                continue
            provides = device.get("provides") or ""
            if isinstance(provides, list):
                provides = ",".join(str(part) for part in provides)
            if "server" not in str(provides):
                continue
            connections = device.get("connections") or device.get("Connection") or []
            if isinstance(connections, dict):
                connections = [connections]
            base_url = cls.best_connection(connections)
            if base_url is None:
                continue
            servers.append(
                PlexServer(
                    id=str(device.get("clientIdentifier") or device.get("name") or base_url),
                    name=str(device.get("name") or base_url),
                    owned=parse_bool(device.get("owned")),
                    last_seen_at=device.get("lastSeenAt"),
                    connection=PlexConnection(
                        base_url=base_url, access_token=device.get("accessToken")
                    ),
                )
            )
        return servers

    @staticmethod
    def best_connection(connections: list[Any]) -> str | None:
        """Prefer local, then secure direct, then any direct, then relay."""

        candidates = [
            entry for entry in connections if isinstance(entry, dict) and entry.get("uri")
        ]

        def relay(entry: dict[str, Any]) -> bool:
            return parse_bool(entry.get("relay"))

        for entry in candidates:
            if parse_bool(entry.get("local")):
                return str(entry["uri"])
        for entry in candidates:
            if not relay(entry) and str(entry["uri"]).startswith("https://"):
                return str(entry["uri"])
        for entry in candidates:
            if not relay(entry):
                return str(entry["uri"])
        if candidates:
            return str(candidates[0]["uri"])
        return None
