"""
Catalog read side: name normalization and top-album aggregation.

Public API:
  - normalize_text(text) -> str
  - group_album_picks(records) -> list[AlbumGroup]
  - aggregate_top_albums(storage, limit) -> list[AggregateRecord]
"""
from lib.catalog.aggregate import AggregateRecord, AlbumGroup, aggregate_key, aggregate_top_albums, group_album_picks
from lib.catalog.normalizer import normalize_text

__all__ = [
    "normalize_text",
    "aggregate_key",
    "group_album_picks",
    "aggregate_top_albums",
    "AlbumGroup",
    "AggregateRecord",
]
