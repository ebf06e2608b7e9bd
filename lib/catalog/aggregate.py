"""
Top-album aggregation over stored album covers.

Grouping is recomputed on every read in two passes:

1. group strictly by ``normalize(album) || normalize(artist)``;
2. per album, fold an empty-artist group into the named group with the
   highest count (earliest seen on a tie).

Cover and review lookups then use the group's original strings, since
storage matches exact values.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from lib.catalog.normalizer import normalize_text
from lib.storage import ALBUM_COVERS, ALBUM_REVIEWS, Storage

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "||"
DEFAULT_TOP_LIMIT = 20


def aggregate_key(album_name: Any, artist_name: Any) -> str:
    return f"{normalize_text(album_name)}{KEY_SEPARATOR}{normalize_text(artist_name)}"


@dataclass
class AlbumGroup:
    album_key: str
    artist_key: str
    album_name: str
    artist_name: str
    count: int
    first_seen: int

    @property
    def key(self) -> str:
        return f"{self.album_key}{KEY_SEPARATOR}{self.artist_key}"


@dataclass(frozen=True)
class AggregateRecord:
    album_name: str
    artist_name: Optional[str]
    image_url: str
    pick_count: int
    avg_rating: float
    review_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def group_album_picks(records: Iterable[Mapping[str, Any]]) -> List[AlbumGroup]:
    """Group raw cover rows, merge empty-artist groups, sort by count (stable)."""
    groups: Dict[str, AlbumGroup] = {}
    for index, row in enumerate(records):
        album_name = (row.get("album_name") or "").strip()
        album_key = normalize_text(album_name)
        if not album_key:
            continue
        artist_name = (row.get("artist_name") or "").strip()
        artist_key = normalize_text(artist_name)
        key = f"{album_key}{KEY_SEPARATOR}{artist_key}"
        group = groups.get(key)
        if group is None:
            groups[key] = AlbumGroup(album_key, artist_key, album_name, artist_name, 1, index)
        else:
            group.count += 1

    by_album: Dict[str, List[AlbumGroup]] = defaultdict(list)
    for group in groups.values():
        by_album[group.album_key].append(group)

    merged: List[AlbumGroup] = []
    for members in by_album.values():
        named = [g for g in members if g.artist_key]
        empty = [g for g in members if not g.artist_key]
        if named and empty:
            target = max(named, key=lambda g: (g.count, -g.first_seen))
            for g in empty:
                target.count += g.count
                target.first_seen = min(target.first_seen, g.first_seen)
            merged.extend(named)
        else:
            merged.extend(members)

    merged.sort(key=lambda g: (-g.count, g.first_seen))
    return merged


async def aggregate_top_albums(storage: Storage, limit: int = DEFAULT_TOP_LIMIT) -> List[AggregateRecord]:
    rows = await storage.find_many(ALBUM_COVERS)
    top = group_album_picks(rows)[:max(0, limit)]
    logger.info(f"[Top] rows={len(rows)} groups_returned={len(top)}")

    results: List[AggregateRecord] = []
    for group in top:
        artist_filter: Dict[str, Any] = {"artist_name": group.artist_name} if group.artist_name else {}

        cover = await storage.find_first(
            ALBUM_COVERS,
            {"album_name": group.album_name, **artist_filter, "image_url": {"not": ""}},
        )
        reviews = await storage.find_many(ALBUM_REVIEWS, {"album_name": group.album_name, **artist_filter})
        ratings = [float(r["rating"]) for r in reviews if isinstance(r.get("rating"), (int, float))]

        results.append(AggregateRecord(
            album_name=group.album_name,
            artist_name=group.artist_name or None,
            image_url=(cover or {}).get("image_url") or "",
            pick_count=group.count,
            avg_rating=sum(ratings) / len(ratings) if ratings else 0.0,
            review_count=len(reviews),
        ))
    return results
