"""
NetEase Cloud Music adapter (primary platform), talking to a
NeteaseCloudMusicApi deployment configured with NETEASE_API_URL.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from lib.errors import NotConfiguredError, UpstreamError, UpstreamFormatError, UpstreamUnavailableError
from lib.lyrics import first_song_of_album
from lib.platforms.base import PlatformAdapter
from lib.platforms.http import browser_headers, fetch_json, json_headers, open_client
from lib.platforms.models import (
    ContentType,
    Platform,
    TrackRecord,
    ensure_https,
    join_artist_names,
)
from lib.settings import (
    DETAIL_TIMEOUT_S,
    LOOKUP_TIMEOUT_S,
    NETEASE_CHECK_TIMEOUT_S,
    NETEASE_DETAIL_CHUNK,
    NETEASE_DETAIL_CONCURRENCY,
    PLAYLIST_TIMEOUT_S,
    netease_api_base,
    netease_cookie,
)

logger = logging.getLogger(__name__)

_PLAYLIST_ID_RES = (
    re.compile(r"playlist\?id=(\d+)", re.IGNORECASE),
    re.compile(r"playlist/(\d+)", re.IGNORECASE),
    re.compile(r"playlist\.id=(\d+)", re.IGNORECASE),
    re.compile(r"[?&]id=(\d+)"),
)


def _dump(data: Any) -> str:
    try:
        return json.dumps(data, ensure_ascii=False)[:1000]
    except (TypeError, ValueError):
        return repr(data)[:1000]


def _valid_id(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value > 0:
        return str(value)
    if isinstance(value, str) and value.isdigit() and int(value) > 0:
        return value
    return None


def extract_playlist_id(url_or_id: str) -> str:
    s = (url_or_id or "").strip()
    if s.isdigit():
        return s
    for pattern in _PLAYLIST_ID_RES:
        m = pattern.search(s)
        if m:
            return m.group(1)
    raise UpstreamFormatError(
        "Could not find a NetEase playlist id in this link.",
        platform="NetEase Cloud Music",
        meta={"input": s},
    )


class NeteaseAdapter(PlatformAdapter):
    platform = Platform.NETEASE
    display_name = "NetEase Cloud Music"
    supported_content_types = frozenset({ContentType.TRACK, ContentType.ALBUM, ContentType.PLAYLIST})
    provides_lyrics_ids = True

    def __init__(self, chunk_size: int = NETEASE_DETAIL_CHUNK, concurrency: int = NETEASE_DETAIL_CONCURRENCY):
        self.chunk_size = max(1, chunk_size)
        self.concurrency = max(1, concurrency)

    def _headers(self) -> Dict[str, str]:
        return json_headers(Cookie=netease_cookie())

    def _check_code(self, data: Any, what: str) -> Dict[str, Any]:
        """NeteaseCloudMusicApi reports some failures as HTTP 200 with a non-200 ``code``."""
        if not isinstance(data, dict):
            raise UpstreamFormatError(
                f"NetEase returned an unexpected {what} response.",
                platform=self.display_name,
                snippet=_dump(data),
            )
        code = data.get("code")
        if code is not None and code != 200:
            raise UpstreamUnavailableError(
                f"NetEase refused the {what} request (code {code}). The item may be private or removed.",
                platform=self.display_name,
                snippet=_dump(data),
                meta={"code": code},
            )
        return data

    # =========================
    # Mapping
    # =========================

    def song_to_record(self, song: Dict[str, Any], stub: Dict[str, Any] | None = None) -> Optional[TrackRecord]:
        """Map a /song/detail entry (or a playlist stub) onto a TrackRecord."""
        stub = stub or {}
        track_id = _valid_id(song.get("id")) or _valid_id(stub.get("id"))
        if not track_id:
            return None
        al = song.get("al") or song.get("album") or stub.get("al") or stub.get("album") or {}
        ar = song.get("ar") or song.get("artists") or stub.get("ar") or stub.get("artists") or []
        name = song.get("name") or stub.get("name") or "Unknown"
        album_name = (al.get("name") if isinstance(al, dict) else None) or name
        picture = ""
        album_id = None
        if isinstance(al, dict):
            picture = al.get("picUrl") or al.get("pic_str") or ""
            album_id = _valid_id(al.get("id"))
        picture = picture or song.get("picUrl") or ""
        return TrackRecord(
            name=name,
            artist_name=join_artist_names(ar),
            album_name=album_name,
            picture_url=ensure_https(picture if isinstance(picture, str) else ""),
            platform_track_id=track_id,
            original_link=f"https://music.163.com/song?id={track_id}",
            platform_album_id=album_id,
        )

    # =========================
    # Playlist
    # =========================

    def _track_entries(self, playlist: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
        """Ordered ``(track_id, stub)`` pairs; ``trackIds`` is complete, ``tracks`` may be truncated."""
        stubs: Dict[str, Dict[str, Any]] = {}
        for t in playlist.get("tracks") or []:
            if isinstance(t, dict):
                tid = _valid_id(t.get("id"))
                if tid:
                    stubs[tid] = t

        ordered: List[str] = []
        for t in playlist.get("trackIds") or []:
            tid = _valid_id(t.get("id") if isinstance(t, dict) else t)
            if tid:
                ordered.append(tid)
        if not ordered:
            ordered = list(stubs.keys())

        seen = set()
        entries = []
        for tid in ordered:
            if tid in seen:
                continue
            seen.add(tid)
            entries.append((tid, stubs.get(tid, {})))
        return entries

    async def _fetch_detail_chunk(
        self,
        client: httpx.AsyncClient,
        base: str,
        chunk: List[str],
        index: int,
        sem: asyncio.Semaphore,
    ) -> Optional[List[Dict[str, Any]]]:
        async with sem:
            try:
                data = await fetch_json(
                    client,
                    f"{base}/song/detail",
                    params={"ids": ",".join(chunk)},
                    platform=self.display_name,
                    timeout=DETAIL_TIMEOUT_S,
                    headers=self._headers(),
                )
                data = self._check_code(data, "song detail")
            except UpstreamError as e:
                logger.warning(f"[NetEase] detail chunk={index} size={len(chunk)} failed: {e} meta={e.meta}")
                return None
        songs = data.get("songs")
        if not isinstance(songs, list):
            logger.warning(f"[NetEase] detail chunk={index} has no songs list: {_dump(data)[:200]}")
            return None
        return [s for s in songs if isinstance(s, dict)]

    async def fetch_playlist(self, url_or_id: str, client: httpx.AsyncClient | None = None) -> List[TrackRecord]:
        playlist_id = extract_playlist_id(url_or_id)
        base = netease_api_base()

        async with open_client(client) as c:
            data = await fetch_json(
                c,
                f"{base}/playlist/detail",
                params={"id": playlist_id},
                platform=self.display_name,
                timeout=PLAYLIST_TIMEOUT_S,
                headers=self._headers(),
            )
            data = self._check_code(data, "playlist")
            playlist = data.get("playlist")
            if not isinstance(playlist, dict):
                raise UpstreamFormatError(
                    "NetEase playlist response has no playlist data.",
                    platform=self.display_name,
                    snippet=_dump(data),
                )
            entries = self._track_entries(playlist)
            if not entries:
                raise UpstreamFormatError(
                    "This NetEase playlist has no tracks. Check that the playlist id is valid and public.",
                    platform=self.display_name,
                    snippet=_dump(data),
                )

            ids = [tid for tid, _ in entries]
            chunks = [ids[i:i + self.chunk_size] for i in range(0, len(ids), self.chunk_size)]
            sem = asyncio.Semaphore(self.concurrency)
            results = await asyncio.gather(
                *(self._fetch_detail_chunk(c, base, chunk, i, sem) for i, chunk in enumerate(chunks))
            )

        songs_by_id: Dict[str, Dict[str, Any]] = {}
        dropped: set[str] = set()
        for chunk, songs in zip(chunks, results):
            if songs is None:
                dropped.update(chunk)
                continue
            for s in songs:
                sid = _valid_id(s.get("id"))
                if sid:
                    songs_by_id[sid] = s

        if len(dropped) == len(ids):
            raise UpstreamUnavailableError(
                "Could not load track details for this NetEase playlist. Try again in a moment.",
                platform=self.display_name,
                meta={"playlist_id": playlist_id, "chunks": len(chunks)},
            )

        records: List[TrackRecord] = []
        for tid, stub in entries:
            if tid in dropped:
                continue
            record = self.song_to_record(songs_by_id.get(tid, stub), stub=stub)
            if record:
                records.append(record)

        logger.info(
            f"[NetEase] playlist id={playlist_id} tracks={len(ids)} chunks={len(chunks)} "
            f"dropped={len(dropped)} records={len(records)}"
        )
        return records

    # =========================
    # Track / album
    # =========================

    async def fetch_track_or_album(
        self,
        content_type: ContentType,
        content_id: str,
        client: httpx.AsyncClient | None = None,
        source_url: str | None = None,
    ) -> TrackRecord:
        self.ensure_supported(content_type)
        base = netease_api_base()
        async with open_client(client) as c:
            if content_type == ContentType.TRACK:
                return await self._fetch_track(c, base, content_id)
            return await self._fetch_album(c, base, content_id)

    async def _fetch_track(self, client: httpx.AsyncClient, base: str, track_id: str) -> TrackRecord:
        data = await fetch_json(
            client,
            f"{base}/song/detail",
            params={"ids": track_id},
            platform=self.display_name,
            timeout=LOOKUP_TIMEOUT_S,
            headers=self._headers(),
        )
        data = self._check_code(data, "song detail")
        songs = data.get("songs")
        if not isinstance(songs, list) or not songs or not isinstance(songs[0], dict):
            raise UpstreamFormatError(
                "NetEase returned no song for this link.",
                platform=self.display_name,
                snippet=_dump(data),
            )
        record = self.song_to_record(songs[0])
        if record is None or not record.picture_url:
            raise UpstreamFormatError(
                "NetEase song data is missing its id or cover image.",
                platform=self.display_name,
                snippet=_dump(songs[0]),
            )
        return record

    async def _fetch_album(self, client: httpx.AsyncClient, base: str, album_id: str) -> TrackRecord:
        data = await fetch_json(
            client,
            f"{base}/album",
            params={"id": album_id},
            platform=self.display_name,
            timeout=DETAIL_TIMEOUT_S,
            headers=self._headers(),
        )
        data = self._check_code(data, "album")
        album = data.get("album")
        if not isinstance(album, dict) or not album.get("name"):
            raise UpstreamFormatError(
                "NetEase returned no album for this link.",
                platform=self.display_name,
                snippet=_dump(data),
            )

        # Album import means "the flagship (first) track with full metadata"
        first = first_song_of_album(data) or {}
        first_id = _valid_id(first.get("id"))
        picture = ensure_https(album.get("picUrl") or album.get("pic_str") or "")
        if not picture:
            raise UpstreamFormatError(
                "NetEase album data has no cover image.",
                platform=self.display_name,
                snippet=_dump(album),
            )
        artist = join_artist_names(album.get("artists") or album.get("artist"))
        if not artist:
            artist = join_artist_names(first.get("ar") or first.get("artists"))
        return TrackRecord(
            name=first.get("name") or album["name"],
            artist_name=artist,
            album_name=album["name"],
            picture_url=picture,
            platform_track_id=first_id,
            original_link=f"https://music.163.com/album?id={album_id}",
            platform_album_id=str(album_id),
        )


async def check_api_reachability(client: httpx.AsyncClient | None = None) -> Dict[str, Any]:
    """
    Diagnose whether NETEASE_API_URL answers from this host.

    Never raises: ``{configured, host, reachable, status | error, hint}``.
    """
    try:
        base = netease_api_base()
    except NotConfiguredError as e:
        return {"configured": False, "host": None, "reachable": False, "hint": str(e)}

    host = urlparse(base).netloc or base
    try:
        async with open_client(client) as c:
            resp = await c.get(
                base,
                headers=browser_headers(accept="*/*"),
                timeout=httpx.Timeout(NETEASE_CHECK_TIMEOUT_S),
            )
    except httpx.TimeoutException as e:
        logger.warning(f"[NetEase] reachability check timed out host={host}: {e!r}")
        return {
            "configured": True,
            "host": host,
            "reachable": False,
            "error": repr(e),
            "hint": f"No answer within {NETEASE_CHECK_TIMEOUT_S:.0f}s. A cold-starting deployment may need a retry.",
        }
    except httpx.HTTPError as e:
        logger.warning(f"[NetEase] reachability check failed host={host}: {e!r}")
        return {
            "configured": True,
            "host": host,
            "reachable": False,
            "error": repr(e),
            "hint": "This host cannot connect to NETEASE_API_URL. Check the address and that the service is running.",
        }

    if resp.status_code >= 400:
        hint = "Reachable, but the service answered with an error status. Check the individual API routes."
    else:
        hint = "Reachable."
    logger.info(f"[NetEase] reachability check host={host} status={resp.status_code}")
    return {"configured": True, "host": host, "reachable": True, "status": resp.status_code, "hint": hint}
