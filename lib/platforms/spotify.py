"""
Spotify adapter (client-credentials Web API through spotipy).

The access token lives in an ``AccessTokenCache`` owned by the adapter
instance. spotipy is synchronous, so every API call runs in a worker
thread via ``asyncio.to_thread``.
"""
from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import requests
import spotipy
from spotipy.exceptions import SpotifyException

from lib.errors import UpstreamFormatError, UpstreamUnavailableError
from lib.platforms.base import PlatformAdapter
from lib.platforms.http import BROWSER_UA
from lib.platforms.models import (
    ContentType,
    Platform,
    TrackRecord,
    ensure_https,
    join_artist_names,
)
from lib.settings import (
    LOOKUP_TIMEOUT_S,
    PLAYLIST_TIMEOUT_S,
    spotify_credentials,
    spotify_markets,
)

logger = logging.getLogger(__name__)

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
TOKEN_EXPIRY_MARGIN_S = 60.0

_PLAYLIST_FIELDS = (
    "items(track(id,name,artists(name),album(id,name,images),external_urls.spotify,is_local)),next"
)

EDITORIAL_HINT = (
    " This looks like an official Spotify editorial playlist (ID starts with 37i9). "
    "Editorial playlists may be region-restricted; copy its tracks into a public playlist "
    "of your own and import that link instead."
)


# =========================
# Access token
# =========================


def request_client_credentials_token(
    client_id: str,
    client_secret: str,
    timeout: float = LOOKUP_TIMEOUT_S,
) -> Tuple[str, float]:
    """POST the client-credentials grant; return ``(access_token, expires_in_seconds)``."""
    try:
        resp = requests.post(
            SPOTIFY_TOKEN_URL,
            data={"grant_type": "client_credentials"},
            auth=(client_id, client_secret),
            headers={"User-Agent": BROWSER_UA},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise UpstreamUnavailableError(
            "Could not reach the Spotify authentication service. Try again in a moment.",
            platform="Spotify",
            meta={"error": repr(e)},
        ) from e

    if resp.status_code != 200:
        raise UpstreamUnavailableError(
            f"Spotify rejected the client credentials (status {resp.status_code}). "
            "Check SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET.",
            platform="Spotify",
            snippet=resp.text,
            meta={"status": resp.status_code},
        )

    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamFormatError(
            "Spotify token response is not JSON.", platform="Spotify", snippet=resp.text
        ) from e
    token = data.get("access_token") if isinstance(data, dict) else None
    if not token:
        raise UpstreamFormatError(
            "Spotify token response has no access_token.", platform="Spotify", snippet=resp.text
        )
    return token, float(data.get("expires_in") or 3600)


class AccessTokenCache:
    """
    ``{value, expires_at}`` with refresh-on-expiry.

    Refresh happens under a lock and freshness is re-checked inside it, so
    concurrent callers never receive a token past ``expires_at - margin``.
    """

    def __init__(
        self,
        fetcher: Callable[[], Tuple[str, float]],
        margin_s: float = TOKEN_EXPIRY_MARGIN_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._margin_s = margin_s
        self._clock = clock
        self._lock = threading.Lock()
        self.value: Optional[str] = None
        self.expires_at: float = 0.0

    def is_fresh(self) -> bool:
        return self.value is not None and self._clock() < self.expires_at - self._margin_s

    def get(self) -> str:
        with self._lock:
            if self.is_fresh():
                return self.value  # type: ignore[return-value]
            token, expires_in = self._fetcher()
            self.value = token
            self.expires_at = self._clock() + expires_in
            logger.info(f"[Spotify] access token refreshed, expires_in={expires_in:.0f}s")
            return token

    def invalidate(self) -> None:
        with self._lock:
            self.value = None
            self.expires_at = 0.0


def _default_token_fetcher() -> Tuple[str, float]:
    client_id, client_secret = spotify_credentials()
    return request_client_credentials_token(client_id, client_secret)


def _default_client_factory(token: str, timeout: float) -> spotipy.Spotify:
    session = requests.Session()
    session.headers["User-Agent"] = BROWSER_UA
    return spotipy.Spotify(auth=token, requests_session=session, requests_timeout=timeout, retries=0)


def extract_playlist_id(url_or_id: str) -> str:
    s = (url_or_id or "").strip()
    m = re.search(r"playlist[/:]([A-Za-z0-9]+)", s)
    if m:
        return m.group(1)
    if re.fullmatch(r"[A-Za-z0-9]{10,}", s):
        return s
    raise UpstreamFormatError(
        "Could not find a Spotify playlist id in this link.",
        platform="Spotify",
        meta={"input": s},
    )


def _best_image(album: Dict[str, Any] | None) -> str:
    # Spotify lists images largest first
    images = (album or {}).get("images") or []
    for img in images:
        if isinstance(img, dict) and img.get("url"):
            return ensure_https(img["url"])
    return ""


class SpotifyAdapter(PlatformAdapter):
    platform = Platform.SPOTIFY
    display_name = "Spotify"
    supported_content_types = frozenset({ContentType.TRACK, ContentType.ALBUM, ContentType.PLAYLIST})

    def __init__(
        self,
        token_cache: AccessTokenCache | None = None,
        client_factory: Callable[[str, float], Any] | None = None,
        markets: List[str] | None = None,
    ):
        self.token_cache = token_cache or AccessTokenCache(_default_token_fetcher)
        self._client_factory = client_factory or _default_client_factory
        self._markets = markets

    @property
    def markets(self) -> List[str]:
        return self._markets or spotify_markets()

    def _client(self, timeout: float):
        # Re-checks expiry on every use
        return self._client_factory(self.token_cache.get(), timeout)

    def _translate(self, e: Exception, what: str, hint: str = "") -> UpstreamUnavailableError:
        if isinstance(e, SpotifyException):
            status = getattr(e, "http_status", None)
            msg = getattr(e, "msg", str(e))
            if status == 401:
                self.token_cache.invalidate()
            if status == 404:
                message = f"Spotify could not find this {what}. Check that the link is correct and public."
            else:
                message = f"Spotify {what} request failed ({status})."
            return UpstreamUnavailableError(
                message + hint,
                platform=self.display_name,
                snippet=msg,
                meta={"status": status},
            )
        return UpstreamUnavailableError(
            f"Could not reach Spotify for this {what}. Try again in a moment." + hint,
            platform=self.display_name,
            meta={"error": repr(e)},
        )

    def track_to_record(self, track: Dict[str, Any], album: Dict[str, Any] | None = None) -> Optional[TrackRecord]:
        if not isinstance(track, dict) or track.get("is_local") or not track.get("name"):
            return None
        album = album or track.get("album") or {}
        track_id = track.get("id")
        link = ((track.get("external_urls") or {}).get("spotify")
                or (f"https://open.spotify.com/track/{track_id}" if track_id else None))
        return TrackRecord(
            name=track["name"],
            artist_name=join_artist_names(track.get("artists") or album.get("artists")),
            album_name=album.get("name") or track["name"],
            picture_url=_best_image(album),
            platform_track_id=track_id,
            original_link=link,
            platform_album_id=album.get("id"),
        )

    # =========================
    # Sync workers (run in threads)
    # =========================

    def _with_markets(self, call: Callable[[str], Any], what: str, hint: str = "") -> Any:
        """Try each market in order; only 403/404 move on to the next one."""
        last_error: Exception | None = None
        for market in self.markets:
            try:
                return call(market)
            except SpotifyException as e:
                last_error = e
                status = getattr(e, "http_status", None)
                if status not in (403, 404):
                    raise self._translate(e, what, hint) from e
                logger.warning(f"[Spotify] {what} unavailable in market={market} status={status}")
            except requests.RequestException as e:
                raise self._translate(e, what, hint) from e
        raise self._translate(last_error, what, hint + f" Tried markets: {','.join(self.markets)}.")

    def _fetch_playlist_sync(self, playlist_id: str) -> List[TrackRecord]:
        sp = self._client(PLAYLIST_TIMEOUT_S)
        hint = EDITORIAL_HINT if playlist_id.startswith("37i9") else ""

        def load(market: str) -> List[Dict[str, Any]]:
            items: List[Dict[str, Any]] = []
            results = sp.playlist_items(playlist_id, limit=100, offset=0, market=market, fields=_PLAYLIST_FIELDS)
            items.extend(results.get("items", []))
            while results.get("next"):
                results = sp.next(results)
                items.extend(results.get("items", []))
            return items

        items = self._with_markets(load, "playlist", hint)
        records = []
        for item in items:
            record = self.track_to_record((item or {}).get("track"))
            if record:
                records.append(record)
        logger.info(f"[Spotify] playlist id={playlist_id} items={len(items)} records={len(records)}")
        return records

    def _fetch_track_sync(self, track_id: str) -> TrackRecord:
        sp = self._client(LOOKUP_TIMEOUT_S)
        track = self._with_markets(lambda market: sp.track(track_id, market=market), "track")
        record = self.track_to_record(track)
        if record is None or not record.picture_url:
            raise UpstreamFormatError(
                "Spotify track data is missing its name or cover image.",
                platform=self.display_name,
                snippet=str(track),
            )
        return record

    def _fetch_album_sync(self, album_id: str) -> TrackRecord:
        sp = self._client(LOOKUP_TIMEOUT_S)
        album = self._with_markets(lambda market: sp.album(album_id, market=market), "album")
        if not isinstance(album, dict) or not album.get("name"):
            raise UpstreamFormatError(
                "Spotify returned no album for this link.", platform=self.display_name, snippet=str(album)
            )
        tracks = ((album.get("tracks") or {}).get("items")) or []
        first = tracks[0] if tracks and isinstance(tracks[0], dict) else {"name": album["name"]}
        record = self.track_to_record(first, album=album)
        if record is None or not record.picture_url:
            raise UpstreamFormatError(
                "Spotify album data is missing its cover image.", platform=self.display_name, snippet=str(album)
            )
        link = (album.get("external_urls") or {}).get("spotify") or f"https://open.spotify.com/album/{album_id}"
        return TrackRecord(
            name=record.name,
            artist_name=join_artist_names(album.get("artists")) or record.artist_name,
            album_name=album["name"],
            picture_url=record.picture_url,
            platform_track_id=record.platform_track_id,
            original_link=link,
            platform_album_id=album.get("id") or album_id,
        )

    # =========================
    # Adapter surface
    # =========================

    async def fetch_playlist(self, url_or_id: str, client: httpx.AsyncClient | None = None) -> List[TrackRecord]:
        return await asyncio.to_thread(self._fetch_playlist_sync, extract_playlist_id(url_or_id))

    async def fetch_track_or_album(
        self,
        content_type: ContentType,
        content_id: str,
        client: httpx.AsyncClient | None = None,
        source_url: str | None = None,
    ) -> TrackRecord:
        self.ensure_supported(content_type)
        if content_type == ContentType.TRACK:
            return await asyncio.to_thread(self._fetch_track_sync, content_id)
        return await asyncio.to_thread(self._fetch_album_sync, content_id)
