#!/usr/bin/env python3
"""
Import orchestrator.

Pasted link or share text -> link normalizer -> platform adapter ->
lyrics resolver -> storage, plus song search by lyric line and the lyrics
backfill jobs that revisit previously stored covers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from lib.errors import (
    InvalidInputError,
    NotFoundError,
    PipelineError,
    StorageError,
    StorageTransientError,
    UnrecognizedLinkError,
    UpstreamFormatError,
    UpstreamUnavailableError,
)
from lib.links import normalize_link
from lib.lyrics import (
    SongMatch,
    fetch_lyrics,
    get_first_track_from_album,
    search_by_lyrics,
    search_by_name,
    search_song,
)
from lib.platforms.base import PlatformAdapter
from lib.platforms.http import fetch_response, browser_headers, open_client
from lib.platforms.models import ContentType, ResolvedLink, TrackRecord
from lib.platforms.registry import get_adapter
from lib.retry import with_storage_retry
from lib.settings import (
    IMPORT_TIMEOUT_S,
    IS_DEV,
    LOOKUP_TIMEOUT_S,
    LYRICS_CONCURRENCY,
    LYRICS_SEARCH_FALLBACK,
    netease_api_base,
)
from lib.storage import ALBUM_COVERS, BlobStore, Identity, Storage

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    imported_count: int
    track_ids: List[str] = field(default_factory=list)
    failed_count: int = 0
    skipped_count: int = 0
    platform: Optional[str] = None
    content_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "importedCount": self.imported_count,
            "trackIds": self.track_ids,
            "failedCount": self.failed_count,
            "skippedCount": self.skipped_count,
            "platform": self.platform,
            "contentType": self.content_type,
        }


@dataclass
class LyricsLookup:
    lyrics: Optional[str] = None
    song_id: Optional[str] = None
    song_name: Optional[str] = None


def error_payload(e: PipelineError) -> Dict[str, Any]:
    """``{errorCode, message}`` for clients; diagnostics only in dev."""
    payload: Dict[str, Any] = {"errorCode": e.code, "message": str(e)}
    if IS_DEV and e.meta:
        payload["detail"] = e.meta
    return payload


# =========================
# Resolution
# =========================


async def resolve_link(raw_input: str, client: httpx.AsyncClient | None = None) -> ResolvedLink:
    link = await normalize_link(raw_input, client=client)
    if link is None:
        raise UnrecognizedLinkError((raw_input or "")[:500])
    return link


async def _dispatch(
    adapter: PlatformAdapter, link: ResolvedLink, client: httpx.AsyncClient | None
) -> List[TrackRecord]:
    try:
        return await asyncio.wait_for(adapter.fetch(link, client=client), timeout=IMPORT_TIMEOUT_S)
    except asyncio.TimeoutError as e:
        raise UpstreamUnavailableError(
            f"{adapter.display_name} took longer than {IMPORT_TIMEOUT_S:.0f}s. Try again in a moment.",
            platform=adapter.display_name,
            meta={"content_id": link.content_id},
        ) from e


async def preview_link(
    raw_input: str, client: httpx.AsyncClient | None = None
) -> Tuple[ResolvedLink, List[TrackRecord]]:
    """Resolve and fetch without persisting anything."""
    link = await resolve_link(raw_input, client=client)
    adapter = get_adapter(link.platform)
    adapter.ensure_supported(link.content_type)
    return link, await _dispatch(adapter, link, client)


# =========================
# Lyrics
# =========================


def _lyrics_api_base(adapter: PlatformAdapter) -> Optional[str]:
    """NetEase API base, or None when lyrics are not reachable for this adapter."""
    if adapter.provides_lyrics_ids:
        return netease_api_base()
    if not LYRICS_SEARCH_FALLBACK:
        return None
    try:
        return netease_api_base()
    except PipelineError:
        return None


async def resolve_lyrics(
    record: TrackRecord,
    adapter: PlatformAdapter,
    api_base: str,
    client: httpx.AsyncClient | None = None,
) -> LyricsLookup:
    """Best effort: every failure ends in an empty lookup."""
    song_id: Optional[str] = None
    song_name: Optional[str] = record.name
    if adapter.provides_lyrics_ids:
        song_id = record.platform_track_id
        if not song_id and record.platform_album_id:
            first = await get_first_track_from_album(api_base, record.platform_album_id, client=client)
            if first:
                song_id, song_name = first.track_id, first.track_name
    else:
        hit = await search_song(api_base, f"{record.name} {record.artist_name}".strip(), client=client)
        if hit:
            song_id = hit["id"]

    if not song_id:
        return LyricsLookup()
    lyrics = await fetch_lyrics(api_base, song_id, client=client)
    return LyricsLookup(lyrics=lyrics, song_id=song_id, song_name=song_name)


async def _resolve_all_lyrics(
    records: List[TrackRecord],
    adapter: PlatformAdapter,
    api_base: str,
    client: httpx.AsyncClient | None,
) -> List[LyricsLookup]:
    sem = asyncio.Semaphore(max(1, LYRICS_CONCURRENCY))

    async def one(record: TrackRecord) -> LyricsLookup:
        async with sem:
            try:
                return await resolve_lyrics(record, adapter, api_base, client=client)
            except PipelineError as e:
                logger.warning(f"[Import] lyrics skipped for {record.name!r}: {e}")
                return LyricsLookup()

    return list(await asyncio.gather(*(one(r) for r in records)))


# =========================
# Persistence
# =========================


async def mirror_cover(
    picture_url: str,
    suggested_name: str,
    blob_store: BlobStore,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Copy a cover into the blob store; any failure keeps the CDN URL."""
    try:
        async with open_client(client) as c:
            resp = await fetch_response(
                c,
                picture_url,
                platform="Cover image",
                timeout=LOOKUP_TIMEOUT_S,
                headers=browser_headers(accept="image/*"),
            )
        return await blob_store.save(resp.content, suggested_name)
    except (PipelineError, OSError) as e:
        logger.warning(f"[Import] cover mirror failed url={picture_url}: {e}")
        return picture_url


def build_cover_row(
    record: TrackRecord,
    lookup: LyricsLookup,
    *,
    link: ResolvedLink,
    adapter: PlatformAdapter,
    image_url: str,
    category_id: Optional[str],
    user_id: Optional[str],
) -> Dict[str, Any]:
    """One row carries metadata and lyrics together so a single write stores both."""
    return {
        "image_url": image_url,
        "album_name": record.album_name,
        "artist_name": record.artist_name or None,
        "song_id": lookup.song_id,
        "song_name": lookup.song_name or record.name,
        # Only NetEase album ids are usable for a later lyrics backfill
        "album_id": record.platform_album_id if adapter.provides_lyrics_ids else None,
        "lyrics": lookup.lyrics,
        "category_id": category_id,
        "user_id": user_id,
        "platform": link.platform.value,
        "original_link": record.original_link,
    }


async def _persist(storage: Storage, rows: List[Dict[str, Any]]) -> Tuple[List[str], int]:
    """
    Write rows one by one; return (ids, failures). All failing re-raises the last error.

    Once a write exhausts its transient retries the store is treated as down:
    the remaining rows are counted as failed without being attempted.
    """
    track_ids: List[str] = []
    failed = 0
    last_error: StorageError | None = None
    for index, row in enumerate(rows):
        async def create(row=row):
            return await storage.create(ALBUM_COVERS, row)

        try:
            created = await with_storage_retry(create, label="create album_cover")
        except StorageTransientError as e:
            last_error = e
            failed += len(rows) - index
            logger.warning(
                f"[Import] storage unreachable, abandoning {len(rows) - index} remaining rows: {e} meta={e.meta}"
            )
            break
        except StorageError as e:
            failed += 1
            last_error = e
            logger.warning(f"[Import] row failed album={row.get('album_name')!r}: {e} meta={e.meta}")
            continue
        track_ids.append(str(created["id"]))

    if rows and not track_ids and last_error is not None:
        raise last_error
    return track_ids, failed


# =========================
# Entry points
# =========================


async def import_from_link(
    raw_input: str,
    category_id: Optional[str] = None,
    *,
    storage: Storage,
    user_id: Optional[str] = None,
    blob_store: BlobStore | None = None,
    client: httpx.AsyncClient | None = None,
    with_lyrics: bool = True,
) -> ImportResult:
    link = await resolve_link(raw_input, client=client)
    adapter = get_adapter(link.platform)
    adapter.ensure_supported(link.content_type)
    logger.info(f"[Import] platform={link.platform.value} type={link.content_type.value} id={link.content_id}")

    records = await _dispatch(adapter, link, client)
    usable = [r for r in records if r.picture_url and r.album_name]
    skipped = len(records) - len(usable)
    if not usable:
        raise UpstreamFormatError(
            f"{adapter.display_name} returned no tracks with a cover image for this link.",
            platform=adapter.display_name,
            meta={"content_id": link.content_id, "records": len(records)},
        )

    lookups = [LyricsLookup() for _ in usable]
    if with_lyrics:
        api_base = _lyrics_api_base(adapter)
        if api_base:
            lookups = await _resolve_all_lyrics(usable, adapter, api_base, client)

    single = link.content_type != ContentType.PLAYLIST
    rows = []
    for record, lookup in zip(usable, lookups):
        image_url = record.picture_url
        if single and blob_store is not None:
            image_url = await mirror_cover(
                record.picture_url, f"{link.platform.value}-{link.content_id}.jpg", blob_store, client=client
            )
        rows.append(build_cover_row(
            record,
            lookup,
            link=link,
            adapter=adapter,
            image_url=image_url,
            category_id=category_id,
            user_id=user_id,
        ))

    track_ids, failed = await _persist(storage, rows)
    logger.info(
        f"[Import] done platform={link.platform.value} imported={len(track_ids)} "
        f"failed={failed} skipped={skipped}"
    )
    return ImportResult(
        imported_count=len(track_ids),
        track_ids=track_ids,
        failed_count=failed,
        skipped_count=skipped,
        platform=link.platform.value,
        content_type=link.content_type.value,
    )


async def resolve_and_import(
    raw_input: str,
    category_id: Optional[str] = None,
    *,
    storage: Storage,
    identity: Identity,
    blob_store: BlobStore | None = None,
    client: httpx.AsyncClient | None = None,
) -> Dict[str, Any]:
    """``{importedCount, trackIds, ...}`` on success, ``{errorCode, message}`` on failure."""
    try:
        result = await import_from_link(
            raw_input,
            category_id,
            storage=storage,
            user_id=identity.current_user_id(),
            blob_store=blob_store,
            client=client,
        )
    except PipelineError as e:
        logger.warning(f"[Import] failed code={e.code}: {e} meta={e.meta}")
        return error_payload(e)
    return result.to_dict()


# =========================
# Song search
# =========================

SEARCH_MODES = ("lyrics", "song")


async def search_songs(
    keywords: str,
    mode: str = "lyrics",
    client: httpx.AsyncClient | None = None,
) -> List[SongMatch]:
    """``mode="lyrics"`` finds songs by a remembered lyric line; ``"song"`` by title."""
    keywords = (keywords or "").strip()
    if not keywords:
        raise InvalidInputError("Enter a lyric line or a song name to search for.")
    if mode not in SEARCH_MODES:
        raise InvalidInputError(f"Unknown search type {mode!r}.", meta={"mode": mode})
    api_base = netease_api_base()
    if mode == "song":
        return await search_by_name(api_base, keywords, client=client)
    results = await search_by_lyrics(api_base, keywords, client=client)
    logger.info(f"[Search] keywords={keywords!r} results={len(results)} top={[m.match_score for m in results[:5]]}")
    return results


async def get_song_lyrics(song_id: str, client: httpx.AsyncClient | None = None) -> str:
    """Cleaned lyrics of one NetEase song; ``""`` when it has none."""
    song_id = (song_id or "").strip()
    if not song_id.isdigit():
        raise InvalidInputError("Provide a numeric NetEase song id.", meta={"id": song_id})
    lyrics = await fetch_lyrics(netease_api_base(), song_id, client=client)
    return lyrics or ""


# =========================
# Lyrics backfill
# =========================


async def _update_row(storage: Storage, where: Dict[str, Any], patch: Dict[str, Any]) -> int:
    async def update():
        return await storage.update_many(ALBUM_COVERS, where, patch)

    return await with_storage_retry(update, label="update album_cover")


async def _find_rows(storage: Storage, where: Dict[str, Any]) -> List[Dict[str, Any]]:
    async def find():
        return await storage.find_many(ALBUM_COVERS, where)

    return await with_storage_retry(find, label="find album_covers")


async def backfill_lyrics(
    storage: Storage,
    client: httpx.AsyncClient | None = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Fill lyrics for stored covers that have none: first by ``song_id``,
    then by ``album_id`` (the album's first track).
    """
    api_base = netease_api_base()
    scope = {"user_id": user_id} if user_id else {}

    by_song = await _find_rows(storage, {**scope, "lyrics": None, "song_id": {"not": None}})
    updated_by_song = 0
    for row in by_song:
        song_id = str(row.get("song_id") or "").strip()
        if not song_id:
            continue
        lyrics = await fetch_lyrics(api_base, song_id, client=client)
        if not lyrics:
            continue
        updated_by_song += await _update_row(storage, {"id": row["id"]}, {"lyrics": lyrics})

    by_album = await _find_rows(storage, {**scope, "lyrics": None, "album_id": {"not": None}})
    updated_by_album = 0
    for row in by_album:
        album_id = str(row.get("album_id") or "").strip()
        if not album_id:
            continue
        first = await get_first_track_from_album(api_base, album_id, client=client)
        if not first:
            continue
        lyrics = await fetch_lyrics(api_base, first.track_id, client=client)
        if not lyrics:
            continue
        updated_by_album += await _update_row(
            storage,
            {"id": row["id"]},
            {"lyrics": lyrics, "song_id": first.track_id, "song_name": first.track_name},
        )

    summary = {
        "total_by_song": len(by_song),
        "updated_by_song": updated_by_song,
        "total_by_album": len(by_album),
        "updated_by_album": updated_by_album,
        "total": len(by_song) + len(by_album),
        "updated": updated_by_song + updated_by_album,
    }
    logger.info(f"[Backfill] {summary}")
    return summary


async def refresh_lyrics_from_album(
    storage: Storage,
    item_id: str,
    album_id: str,
    user_id: Optional[str],
    client: httpx.AsyncClient | None = None,
) -> Dict[str, Any]:
    """Re-fetch one stored cover's lyrics from the first track of ``album_id``."""
    api_base = netease_api_base()
    album_id = (album_id or "").strip()
    where = {"id": item_id, "user_id": user_id}

    item = await storage.find_first(ALBUM_COVERS, where)
    if item is None:
        raise NotFoundError("This item was not found in your collection.", meta={"id": item_id})

    first = await get_first_track_from_album(api_base, album_id, client=client)
    if first is None:
        raise UpstreamUnavailableError(
            "Could not load this album's tracks. Check the album id and the NetEase API.",
            platform="NetEase Cloud Music",
            meta={"album_id": album_id},
        )
    lyrics = await fetch_lyrics(api_base, first.track_id, client=client)
    if not lyrics:
        raise UpstreamUnavailableError(
            "This track has no lyrics, or they could not be fetched.",
            platform="NetEase Cloud Music",
            meta={"album_id": album_id, "song_id": first.track_id},
        )

    await _update_row(
        storage,
        where,
        {"lyrics": lyrics, "song_id": first.track_id, "song_name": first.track_name, "album_id": album_id},
    )
    return {**item, "lyrics": lyrics, "song_id": first.track_id, "song_name": first.track_name, "album_id": album_id}
