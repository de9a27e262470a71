"""Normalisation of Plex history and session records."""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from collections import Counter
from typing import Any, Iterable, Mapping, Sequence

from ..models import AccountOption, MediaKind, WatchedItem
from ..utils import parse_date, parse_index, parse_int

logger = logging.getLogger(__name__)

DEFAULT_EPISODES_PER_SHOW = 3


def parse_history_payload(text: str) -> list[dict[str, Any]]:
    """Return raw history records from a Plex JSON or XML response body.

    Plex answers with JSON when asked to, but some servers and proxies still
    hand back the XML ``MediaContainer``; both shapes are flattened into the
    JSON record layout.
    """

    stripped = text.lstrip()
    if not stripped:
        return []
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid Plex history JSON") from exc
        container = payload.get("MediaContainer") or {}
        metadata = container.get("Metadata") or []
        if isinstance(metadata, dict):
            metadata = [metadata]
        return [record for record in metadata if isinstance(record, dict)]

    try:
        root = ET.fromstring(stripped)
    except ET.ParseError as exc:
        raise ValueError("Plex history response is neither JSON nor XML") from exc

    records: list[dict[str, Any]] = []
    for element in root:
        record: dict[str, Any] = dict(element.attrib)
        for child in element:
            if child.tag == "User":
                record["User"] = dict(child.attrib)
        records.append(record)
    return records


def watched_item_from_record(record: Mapping[str, Any]) -> WatchedItem | None:
    """Map a raw Plex record onto a :class:`WatchedItem`."""

    rating_key = record.get("ratingKey")
    if rating_key in (None, ""):
        return None

    kind = MediaKind.from_plex_type(record.get("type"))
    user = record.get("User") if isinstance(record.get("User"), Mapping) else {}
    account_id = parse_int(record.get("accountID"))
    if account_id is None:
        account_id = parse_int(user.get("id"))

    series_title = record.get("grandparentTitle") if kind is MediaKind.EPISODE else None
    series_key = record.get("grandparentRatingKey") if kind is MediaKind.EPISODE else None

    return WatchedItem(
        id=str(rating_key),
        kind=kind,
        title=str(record.get("title") or ""),
        series_title=series_title or None,
        season_number=parse_index(record.get("parentIndex")),
        episode_number=parse_index(record.get("index")),
        year=parse_int(record.get("year")),
        originally_available_at=parse_date(record.get("originallyAvailableAt")),
        series_internal_id=str(series_key) if series_key else None,
        viewer_account_id=account_id,
        viewer_username=user.get("title") or None,
        viewed_at=parse_int(record.get("viewedAt")),
        thumb=record.get("thumb") or record.get("grandparentThumb") or record.get("parentThumb"),
    )


def watched_items_from_records(records: Iterable[Mapping[str, Any]]) -> list[WatchedItem]:
    items: list[WatchedItem] = []
    for record in records:
        item = watched_item_from_record(record)
        if item is None:
            logger.debug("Skipping Plex record without ratingKey: %s", record.get("title"))
            continue
        items.append(item)
    return items


def normalize(
    items: Sequence[WatchedItem],
    *,
    limit_per_show: int = DEFAULT_EPISODES_PER_SHOW,
) -> list[WatchedItem]:
    """Deduplicate by id and cap episodes per series, keeping source order."""

    seen: set[str] = set()
    per_show: Counter[str] = Counter()
    result: list[WatchedItem] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        if item.is_episode:
            key = item.series_key
            if per_show[key] >= limit_per_show:
                continue
            per_show[key] += 1
        result.append(item)
    return result


def exclude_now_playing(
    recent: Sequence[WatchedItem], now_playing: Sequence[WatchedItem]
) -> list[WatchedItem]:
    """Drop recently watched items that are currently playing."""

    playing_ids = {item.id for item in now_playing}
    return [item for item in recent if item.id not in playing_ids]


def summarize_accounts(items: Iterable[WatchedItem]) -> list[AccountOption]:
    """Count plays per viewer account, busiest and most recent first."""

    counts: Counter[int] = Counter()
    last_viewed: dict[int, int] = {}
    for item in items:
        account_id = item.viewer_account_id
        if account_id is None:
            continue
        counts[account_id] += 1
        if item.viewed_at is not None:
            last_viewed[account_id] = max(last_viewed.get(account_id, 0), item.viewed_at)

    options = [
        AccountOption(id=account_id, count=count, last_viewed_at=last_viewed.get(account_id))
        for account_id, count in counts.items()
    ]
    options.sort(key=lambda option: (option.count, option.last_viewed_at or 0), reverse=True)
    return options
