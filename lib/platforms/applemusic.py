"""
Apple Music adapter (albums and playlists), scraping the public web player
page. Extraction strategies are tried in order; each one validates its own
shape and falls through on anything unexpected.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from lib.errors import UpstreamFormatError
from lib.platforms.base import PlatformAdapter
from lib.platforms.http import browser_headers, fetch_text, open_client
from lib.platforms.models import ContentType, Platform, TrackRecord, ensure_https, join_artist_names
from lib.settings import APPLE_PLAYWRIGHT, APPLE_STOREFRONT, DETAIL_TIMEOUT_S, PLAYLIST_TIMEOUT_S
from playwright_pool import render_page_html

logger = logging.getLogger(__name__)

ARTWORK_SIZE = "300"


def artwork_url(template: str | None) -> str:
    """Fill Apple's ``{w}x{h}bb.{f}`` artwork template."""
    if not template:
        return ""
    return ensure_https(
        template.replace("{w}", ARTWORK_SIZE).replace("{h}", ARTWORK_SIZE).replace("{f}", "jpg")
    )


def _artwork_of(item: Dict[str, Any]) -> str:
    art = item.get("artwork")
    if isinstance(art, dict):
        inner = art.get("dictionary") if isinstance(art.get("dictionary"), dict) else art
        return artwork_url(inner.get("url"))
    if isinstance(art, str):
        return artwork_url(art)
    return ""


def _json_scripts(soup: BeautifulSoup) -> List[Tuple[str, str, str]]:
    """``(id, type, text)`` for every JSON script on the page."""
    found = []
    for script in soup.find_all("script"):
        script_type = (script.get("type") or "").lower()
        if script_type not in ("application/json", "application/ld+json"):
            continue
        text = script.string or script.get_text() or ""
        if text.strip():
            found.append((script.get("id", ""), script_type, text))
    return found


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError) as e:
        logger.debug(f"[Apple HTML] JSON parse failed: {e}")
        return None


# =========================
# Strategy 1: serialized-server-data
# =========================


def _server_data_sections(data: Any) -> Optional[List[Any]]:
    # [ {data: {sections: [...]}} ] or {data: [ ... ]}
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        data = data["data"]
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    sections = (data[0].get("data") or {}).get("sections")
    return sections if isinstance(sections, list) else None


def _header_item(sections: List[Any]) -> Dict[str, Any]:
    for section in sections:
        if not isinstance(section, dict):
            continue
        kind = str(section.get("itemKind") or "")
        items = section.get("items")
        if kind.endswith("HeaderLockup") and isinstance(items, list) and items and isinstance(items[0], dict):
            return items[0]
    return {}


def _header_artist(header: Dict[str, Any]) -> str:
    links = header.get("subtitleLinks")
    if isinstance(links, list) and links and isinstance(links[0], dict):
        return links[0].get("title") or ""
    return header.get("artistName") or ""


def from_server_data(soup: BeautifulSoup, page_url: str) -> Optional[List[TrackRecord]]:
    script = soup.find("script", id="serialized-server-data")
    if script is None:
        return None
    sections = _server_data_sections(_loads(script.string or script.get_text() or ""))
    if not sections:
        return None

    track_section = next(
        (s for s in sections if isinstance(s, dict) and s.get("itemKind") == "trackLockup"), None
    )
    if not track_section or not isinstance(track_section.get("items"), list):
        return None

    header = _header_item(sections)
    header_title = header.get("title") or ""
    header_artist = _header_artist(header)
    header_art = _artwork_of(header)

    records = []
    for item in track_section["items"]:
        if not isinstance(item, dict) or not item.get("title"):
            continue
        records.append(TrackRecord(
            name=item["title"],
            artist_name=item.get("artistName") or header_artist,
            album_name=item.get("albumName") or header_title or item["title"],
            picture_url=_artwork_of(item) or header_art,
            platform_track_id=None,
            original_link=item.get("url") or page_url,
        ))
    return records or None


# =========================
# Strategy 2: schema.org ld+json
# =========================


def _ld_name(node: Any) -> str:
    if isinstance(node, list):
        return join_artist_names([_ld_name(n) for n in node])
    if isinstance(node, dict):
        return node.get("name") or ""
    return node if isinstance(node, str) else ""


def _ld_image(node: Any) -> str:
    if isinstance(node, list):
        node = node[0] if node else ""
    if isinstance(node, dict):
        node = node.get("url") or node.get("contentUrl") or ""
    return ensure_https(node) if isinstance(node, str) else ""


def from_ld_json(soup: BeautifulSoup, page_url: str) -> Optional[List[TrackRecord]]:
    for _, script_type, text in _json_scripts(soup):
        if script_type != "application/ld+json":
            continue
        data = _loads(text)
        if not isinstance(data, dict):
            continue
        kind = data.get("@type")
        if kind not in ("MusicAlbum", "MusicPlaylist"):
            continue
        collection_name = data.get("name") or ""
        collection_artist = _ld_name(data.get("byArtist"))
        collection_image = _ld_image(data.get("image"))
        tracks = data.get("tracks") or data.get("track") or []
        if isinstance(tracks, dict):
            tracks = tracks.get("itemListElement") or [tracks]

        records = []
        for t in tracks if isinstance(tracks, list) else []:
            if isinstance(t, dict) and isinstance(t.get("item"), dict):
                t = t["item"]
            if not isinstance(t, dict) or not t.get("name"):
                continue
            album_name = _ld_name(t.get("inAlbum")) or (collection_name if kind == "MusicAlbum" else "")
            records.append(TrackRecord(
                name=t["name"],
                artist_name=_ld_name(t.get("byArtist")) or collection_artist,
                album_name=album_name or t["name"],
                picture_url=_ld_image(t.get("image")) or collection_image,
                platform_track_id=None,
                original_link=t.get("url") or page_url,
            ))
        if records:
            return records
    return None


# =========================
# Strategy 3: generic JSON tree walk
# =========================


def _extract_tracks_from_json_tree(node: Any) -> List[Dict[str, str]]:
    """Recursively collect track-like objects (``attributes`` with name/artistName)."""
    tracks: List[Dict[str, str]] = []
    seen: set[Tuple[str, str, str]] = set()

    def add_track(title: Any, artist: Any, album: Any, url: Any, art: str) -> None:
        if not isinstance(title, str) or not isinstance(artist, str) or not title or not artist:
            return
        album = album if isinstance(album, str) else ""
        key = (title.strip().lower(), artist.strip().lower(), album.strip().lower())
        if key in seen:
            return
        seen.add(key)
        tracks.append({
            "title": title.strip(),
            "artist": artist.strip(),
            "album": album.strip(),
            "url": url if isinstance(url, str) else "",
            "artwork": art,
        })

    def walk(obj: Any):
        if isinstance(obj, dict):
            attrs = obj.get("attributes") if isinstance(obj.get("attributes"), dict) else None
            if attrs:
                add_track(
                    attrs.get("name") or attrs.get("title"),
                    attrs.get("artistName") or attrs.get("artist"),
                    attrs.get("albumName") or attrs.get("collectionName"),
                    attrs.get("url"),
                    _artwork_of(attrs),
                )
            if isinstance(obj.get("name"), str) and "artistName" in obj:
                add_track(obj.get("name"), obj.get("artistName"),
                          obj.get("albumName") or obj.get("collectionName"), obj.get("url"), _artwork_of(obj))
            for v in obj.values():
                walk(v)
        elif isinstance(obj, list):
            for v in obj:
                walk(v)

    walk(node)
    return tracks


def from_json_tree(soup: BeautifulSoup, page_url: str) -> Optional[List[TrackRecord]]:
    og = soup.find("meta", attrs={"property": "og:image"})
    page_image = ensure_https(og.get("content")) if og and og.get("content") else ""
    for _, _, text in _json_scripts(soup):
        found = _extract_tracks_from_json_tree(_loads(text))
        if not found:
            continue
        return [
            TrackRecord(
                name=t["title"],
                artist_name=t["artist"],
                album_name=t["album"] or t["title"],
                picture_url=t["artwork"] or page_image,
                platform_track_id=None,
                original_link=t["url"] or page_url,
            )
            for t in found
        ]
    return None


EXTRACTION_STRATEGIES: List[Tuple[str, Callable[[BeautifulSoup, str], Optional[List[TrackRecord]]]]] = [
    ("serialized_server_data", from_server_data),
    ("ld_json", from_ld_json),
    ("json_tree", from_json_tree),
]


def extract_records(html: str, page_url: str) -> Tuple[str, List[TrackRecord]] | None:
    soup = BeautifulSoup(html, "html.parser")
    for name, strategy in EXTRACTION_STRATEGIES:
        records = strategy(soup, page_url)
        if records:
            return name, records
        logger.info(f"[Apple HTML] strategy={name} found nothing")
    return None


class AppleMusicAdapter(PlatformAdapter):
    platform = Platform.APPLE_MUSIC
    display_name = "Apple Music"
    supported_content_types = frozenset({ContentType.ALBUM, ContentType.PLAYLIST})

    def __init__(self, use_playwright: bool | None = None, storefront: str = APPLE_STOREFRONT):
        self.use_playwright = APPLE_PLAYWRIGHT if use_playwright is None else use_playwright
        self.storefront = storefront

    def page_url(self, kind: str, url_or_id: str) -> str:
        s = (url_or_id or "").strip()
        if s.startswith(("http://", "https://")):
            return s
        return f"https://music.apple.com/{self.storefront}/{kind}/{s}"

    async def _load_records(self, url: str, client: httpx.AsyncClient | None, timeout: float) -> List[TrackRecord]:
        async with open_client(client) as c:
            html, final_url = await fetch_text(
                c,
                url,
                platform=self.display_name,
                timeout=timeout,
                headers=browser_headers(accept_language="en-US,en;q=0.9"),
            )

        found = extract_records(html, final_url)
        if found is None and self.use_playwright:
            logger.info(f"[Apple HTML] static HTML had no tracks, rendering with Playwright url={final_url}")
            html = await render_page_html(final_url)
            found = extract_records(html, final_url)

        if found is None:
            raise UpstreamFormatError(
                "Could not read the Apple Music page. The page layout may have changed.",
                platform=self.display_name,
                snippet=html,
                meta={"url": final_url},
            )
        strategy, records = found
        logger.info(f"[Apple HTML] strategy={strategy} url={final_url} records={len(records)}")
        return records

    async def fetch_playlist(self, url_or_id: str, client: httpx.AsyncClient | None = None) -> List[TrackRecord]:
        return await self._load_records(self.page_url("playlist", url_or_id), client, PLAYLIST_TIMEOUT_S)

    async def fetch_track_or_album(
        self,
        content_type: ContentType,
        content_id: str,
        client: httpx.AsyncClient | None = None,
        source_url: str | None = None,
    ) -> TrackRecord:
        self.ensure_supported(content_type)
        url = source_url or self.page_url("album", content_id)
        records = await self._load_records(url, client, DETAIL_TIMEOUT_S)
        first = records[0]
        if not first.picture_url:
            raise UpstreamFormatError(
                "Apple Music album page has no cover image.",
                platform=self.display_name,
                meta={"url": url},
            )
        return TrackRecord(
            name=first.name,
            artist_name=first.artist_name,
            album_name=first.album_name,
            picture_url=first.picture_url,
            platform_track_id=None,
            original_link=url,
            platform_album_id=content_id,
        )
