"""
QQ Music adapter (playlists only), scraping the data object the page
embeds for its own client-side rendering.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from lib.errors import UpstreamFormatError
from lib.platforms.base import PlatformAdapter
from lib.platforms.http import browser_headers, fetch_text, open_client
from lib.platforms.models import ContentType, Platform, TrackRecord, join_artist_names
from lib.settings import PLAYLIST_TIMEOUT_S

logger = logging.getLogger(__name__)

COVER_URL = "https://y.gtimg.cn/music/photo_new/T002R300x300M000{albummid}.jpg"
SONG_URL = "https://y.qq.com/n/ryqq/songDetail/{songmid}"
PLAYLIST_URL = "https://y.qq.com/n/ryqq/playlist/{playlist_id}"

_decoder = json.JSONDecoder()

# String literals are matched whole so only bare `undefined` values are replaced
_UNDEFINED_RE = re.compile(r'("(?:[^"\\]|\\.)*")|\bundefined\b')


def _undefined_to_null(match: re.Match) -> str:
    return match.group(1) or "null"


def parse_assigned_object(html: str, marker: str) -> Optional[Any]:
    """
    Decode the object literal assigned to ``marker`` (``window.__INITIAL_DATA__``)
    inside any inline script. ``undefined`` literals are read as null.
    """
    soup = BeautifulSoup(html, "html.parser")
    for script in soup.find_all("script"):
        text = script.string or script.get_text() or ""
        idx = text.find(marker)
        if idx < 0:
            continue
        start = text.find("{", idx + len(marker))
        if start < 0:
            continue
        body = _UNDEFINED_RE.sub(_undefined_to_null, text[start:])
        try:
            obj, _ = _decoder.raw_decode(body)
        except json.JSONDecodeError as e:
            logger.debug(f"[QQ HTML] {marker} JSON parse failed: {e}")
            continue
        return obj
    return None


def _first_list(data: Any, paths: Tuple[Tuple[str, ...], ...]) -> Optional[List[Any]]:
    for path in paths:
        node = data
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, list) and node:
            return node
    return None


def _desktop_songs(html: str) -> Optional[List[Any]]:
    data = parse_assigned_object(html, "window.__INITIAL_DATA__")
    return _first_list(data, (("playlist", "songList"), ("detail", "songList"), ("songList",)))


def _mobile_songs(html: str) -> Optional[List[Any]]:
    data = parse_assigned_object(html, "window.firstPageData")
    return _first_list(data, (("taogeData", "songlist"), ("songlist",), ("songList",)))


# Ordered: desktop page first, then the mobile share page
EXTRACTION_STRATEGIES: List[Tuple[str, Callable[[str], Optional[List[Any]]]]] = [
    ("initial_data", _desktop_songs),
    ("first_page_data", _mobile_songs),
]


def song_to_record(item: Dict[str, Any]) -> Optional[TrackRecord]:
    song = item.get("songInfo") or item
    if not isinstance(song, dict):
        return None
    name = song.get("songname") or song.get("name") or song.get("title")
    if not name:
        return None
    album = song.get("album") if isinstance(song.get("album"), dict) else {}
    album_mid = song.get("albummid") or album.get("mid")
    songmid = song.get("songmid") or song.get("mid")
    return TrackRecord(
        name=name,
        artist_name=join_artist_names(song.get("singer") or song.get("singers")),
        album_name=song.get("albumname") or album.get("name") or name,
        picture_url=COVER_URL.format(albummid=album_mid) if album_mid else "",
        platform_track_id=None,
        original_link=SONG_URL.format(songmid=songmid) if songmid else None,
    )


class QQMusicAdapter(PlatformAdapter):
    platform = Platform.QQ_MUSIC
    display_name = "QQ Music"
    supported_content_types = frozenset({ContentType.PLAYLIST})

    def playlist_url(self, url_or_id: str) -> str:
        s = (url_or_id or "").strip()
        if s.isdigit():
            return PLAYLIST_URL.format(playlist_id=s)
        return s

    def extract_records(self, html: str) -> Tuple[str, List[TrackRecord]] | None:
        for name, strategy in EXTRACTION_STRATEGIES:
            songs = strategy(html)
            if not songs:
                logger.info(f"[QQ HTML] strategy={name} found nothing")
                continue
            records = [r for r in (song_to_record(s) for s in songs if isinstance(s, dict)) if r]
            if records:
                return name, records
            logger.info(f"[QQ HTML] strategy={name} songs={len(songs)} but none mapped")
        return None

    async def fetch_playlist(self, url_or_id: str, client: httpx.AsyncClient | None = None) -> List[TrackRecord]:
        url = self.playlist_url(url_or_id)
        async with open_client(client) as c:
            html, final_url = await fetch_text(
                c,
                url,
                platform=self.display_name,
                timeout=PLAYLIST_TIMEOUT_S,
                headers=browser_headers(Referer="https://y.qq.com/"),
            )

        found = self.extract_records(html)
        if found is None:
            raise UpstreamFormatError(
                "Could not read the QQ Music playlist page. The page layout may have changed.",
                platform=self.display_name,
                snippet=html,
                meta={"url": final_url},
            )
        strategy, records = found
        logger.info(f"[QQ HTML] strategy={strategy} url={final_url} records={len(records)}")
        return records
