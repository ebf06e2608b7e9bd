"""
Link normalizer: pasted share text -> clean URL -> resolved short link ->
(platform, content type, content id).
"""
from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import httpx

from lib.cache_manager import build_short_link_cache_key, get_short_link_cache
from lib.platforms.http import browser_headers, open_client
from lib.platforms.models import ContentType, Platform, ResolvedLink
from lib.settings import SHORT_LINK_TIMEOUT_S

logger = logging.getLogger(__name__)

SHORT_LINK_HOSTS = ("163cn.tv", "spotify.link", "c6.y.qq.com", "url.cn")

# CJK text and full-width punctuation end a URL inside share text
_URL_RE = re.compile(r"https?://[^\s\u3000-\u303f\u4e00-\u9fff\uff00-\uffef<>\"']+", re.IGNORECASE)
# "(来自@网易云音乐)" / "[@someone]" glued onto the URL tail
_ATTRIBUTION_TAIL_RE = re.compile(r"[(\[（【][^)\]）】]*@.*$")
_TRAILING_PUNCT = "()[]{}<>.,;:!?'\""

_TRACKING_PARAMS = ("si", "fbclid", "gclid")


def _sanitize(raw: str) -> str:
    """Trim whitespace, strip surrounding angle brackets and quotes."""
    s = (raw or "").strip()
    if s.startswith("<") and s.endswith(">"):
        s = s[1:-1].strip()
    return s.strip("'\"")


def extract_url(raw_text: str) -> str:
    """
    Return the first URL found in ``raw_text`` with share boilerplate removed.

    When no URL is present the trimmed input comes back unchanged so callers
    can still try it as an ID.
    """
    text = _sanitize(raw_text)
    m = _URL_RE.search(text)
    if not m:
        return text
    url = _ATTRIBUTION_TAIL_RE.sub("", m.group(0))
    url = _strip_mention(url)
    return url.rstrip(_TRAILING_PUNCT)


def _strip_mention(url: str) -> str:
    # ".../abc@QQMusic" -> ".../abc"; userinfo before the host is left alone
    if "@" not in urlparse(url).path:
        return url
    head, _, tail = url.rpartition("@")
    return head if "/" not in tail else url


def canonicalize_url(url: str) -> str:
    """Strip tracking params (si, utm_*, fbclid, gclid) and a trailing slash."""
    try:
        s = (url or "").strip()
        if not s:
            return ""
        parsed = urlparse(s)
        if not parsed.netloc:
            return s
        q = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
             if not (k in _TRACKING_PARAMS or k.startswith("utm_"))]
        path = parsed.path or ""
        if path.endswith("/") and len(path) > 1:
            path = path[:-1]
        return urlunparse((parsed.scheme or "https", parsed.netloc, path, "", urlencode(q), parsed.fragment))
    except ValueError:
        return url


def _host(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_short_link(url: str) -> bool:
    host = _host(url)
    return any(host == h or host.endswith(f".{h}") for h in SHORT_LINK_HOSTS)


async def resolve_short_link(url: str, client: httpx.AsyncClient | None = None) -> str:
    """
    Expand a shortener URL by reading its ``Location`` header.

    Redirects are not followed: the landing page can rewrite itself with
    client-side script, the header cannot. Any failure returns ``url``.
    """
    if not is_short_link(url):
        return url

    cache = get_short_link_cache()
    cache_key = build_short_link_cache_key(url)
    cached = cache.get(cache_key)
    if cached:
        return cached

    try:
        async with open_client(client) as c:
            resp = await c.get(
                url,
                headers=browser_headers(),
                follow_redirects=False,
                timeout=httpx.Timeout(SHORT_LINK_TIMEOUT_S),
            )
    except httpx.HTTPError as e:
        logger.warning(f"[ShortLink] request failed url={url}: {e!r}")
        return url

    location = resp.headers.get("location")
    if not location:
        logger.info(f"[ShortLink] no Location header url={url} status={resp.status_code}")
        return url

    resolved = urljoin(url, location.strip())
    logger.info(f"[ShortLink] {url} -> {resolved}")
    cache[cache_key] = resolved
    return resolved


# =========================
# Classification
# =========================

Matcher = Callable[[str], Optional[Tuple[ContentType, str]]]

_NETEASE_TYPES = {"song": ContentType.TRACK, "album": ContentType.ALBUM, "playlist": ContentType.PLAYLIST}
_QQ_TYPES = {
    "songdetail": ContentType.TRACK,
    "albumdetail": ContentType.ALBUM,
    "playlist": ContentType.PLAYLIST,
}

# Ordered most-specific first; substring match on the hostname
_PLATFORM_HOSTS: List[Tuple[str, Platform]] = [
    ("163cn.tv", Platform.NETEASE),
    ("music.163.com", Platform.NETEASE),
    ("c6.y.qq.com", Platform.QQ_MUSIC),
    ("y.qq.com", Platform.QQ_MUSIC),
    ("open.spotify.com", Platform.SPOTIFY),
    ("spotify.com", Platform.SPOTIFY),
    ("music.apple.com", Platform.APPLE_MUSIC),
    ("itunes.apple.com", Platform.APPLE_MUSIC),
]

# Checked before anything else: playlists need batch detail fetching
_NETEASE_PLAYLIST_RE = re.compile(r"playlist(?:\?id=|/|\.id=)(\d+)", re.IGNORECASE)


def _netease_playlist(url: str):
    m = _NETEASE_PLAYLIST_RE.search(url)
    return (ContentType.PLAYLIST, m.group(1)) if m else None


def _netease_path(url: str):
    # music.163.com/song/123, music.163.com/#/album?id=123, y.music.163.com/m/song?id=123
    m = re.search(r"/(?:#/)?(?:m/)?(song|album|playlist)(?:\?id=|/)(\d+)", url, re.IGNORECASE)
    return (_NETEASE_TYPES[m.group(1).lower()], m.group(2)) if m else None


def _netease_hash(url: str):
    fragment = urlparse(url).fragment
    m = re.search(r"(song|album|playlist)\?(?:.*&)?id=(\d+)", fragment, re.IGNORECASE)
    return (_NETEASE_TYPES[m.group(1).lower()], m.group(2)) if m else None


def _netease_generic(url: str):
    m = re.search(r"[?&]id=(\d+)", url)
    return (ContentType.TRACK, m.group(1)) if m else None


def _spotify_uri(url: str):
    m = re.match(r"^spotify:(track|album|playlist):([A-Za-z0-9]+)$", url.strip())
    return (ContentType(m.group(1)), m.group(2)) if m else None


def _spotify_path(url: str):
    # open.spotify.com/track/<id>, /intl-ja/album/<id>, /user/<u>/playlist/<id>
    parts = [p for p in urlparse(url).path.split("/") if p]
    for i, p in enumerate(parts):
        if p in ("track", "album", "playlist") and i + 1 < len(parts):
            if re.fullmatch(r"[A-Za-z0-9]+", parts[i + 1]):
                return ContentType(p), parts[i + 1]
    return None


def _qq_path(url: str):
    # y.qq.com/n/ryqq/songDetail/<mid>, /albumDetail/<mid>, /playlist/<id>
    m = re.search(r"/(songDetail|albumDetail|playlist)/([A-Za-z0-9]+)", url, re.IGNORECASE)
    return (_QQ_TYPES[m.group(1).lower()], m.group(2)) if m else None


def _qq_query(url: str):
    query = dict(parse_qsl(urlparse(url).query))
    path = urlparse(url).path.lower()
    if "taoge" in path or "playlist" in path or "disstid" in query:
        pid = query.get("id") or query.get("disstid")
        if pid:
            return ContentType.PLAYLIST, pid
    if query.get("songmid"):
        return ContentType.TRACK, query["songmid"]
    if query.get("albummid"):
        return ContentType.ALBUM, query["albummid"]
    return None


def _qq_hash(url: str):
    fragment = urlparse(url).fragment
    m = re.search(r"(?:taoge|playlist)[^?]*\?(?:.*&)?id=(\d+)", fragment, re.IGNORECASE)
    return (ContentType.PLAYLIST, m.group(1)) if m else None


def _qq_generic(url: str):
    m = re.search(r"[?&]id=(\d+)", url)
    return (ContentType.PLAYLIST, m.group(1)) if m else None


def _apple_path(url: str):
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    parts = [p for p in parsed.path.split("/") if p]
    # /us/album/<slug>/<id>?i=<trackId> is a track inside an album
    if "album" in parts and query.get("i"):
        return ContentType.TRACK, query["i"]
    for kind, ctype in (("playlist", ContentType.PLAYLIST), ("album", ContentType.ALBUM), ("song", ContentType.TRACK)):
        if kind in parts:
            tail = parts[parts.index(kind) + 1:]
            if tail:
                return ctype, tail[-1]
    return None


def _apple_generic(url: str):
    m = re.search(r"[?&]id=(\d+)", url)
    return (ContentType.ALBUM, m.group(1)) if m else None


_MATCHERS: dict[Platform, List[Matcher]] = {
    Platform.NETEASE: [_netease_playlist, _netease_path, _netease_hash, _netease_generic],
    Platform.SPOTIFY: [_spotify_path],
    Platform.QQ_MUSIC: [_qq_path, _qq_query, _qq_hash, _qq_generic],
    Platform.APPLE_MUSIC: [_apple_path, _apple_generic],
}


def detect_platform(url: str) -> Platform | None:
    if url.strip().lower().startswith("spotify:"):
        return Platform.SPOTIFY
    host = _host(url)
    if not host:
        return None
    for needle, platform in _PLATFORM_HOSTS:
        if needle in host:
            return platform
    return None


def classify(url: str) -> ResolvedLink | None:
    """Return the link's platform/content type/id, or None when nothing matches."""
    s = (url or "").strip()
    if not s:
        return None

    uri = _spotify_uri(s)
    if uri:
        return ResolvedLink(Platform.SPOTIFY, uri[0], uri[1], source_url=f"https://open.spotify.com/{uri[0].value}/{uri[1]}")

    platform = detect_platform(s)
    if platform is None:
        return None

    for matcher in _MATCHERS[platform]:
        hit = matcher(s)
        if hit:
            content_type, content_id = hit
            return ResolvedLink(platform, content_type, content_id, source_url=canonicalize_url(s))

    logger.info(f"[Links] platform={platform.value} but no content id in url={s}")
    return None


async def normalize_link(raw_text: str, client: httpx.AsyncClient | None = None) -> ResolvedLink | None:
    url = extract_url(raw_text)
    url = await resolve_short_link(url, client=client)
    link = classify(url)
    logger.info(f"[Links] raw_len={len(raw_text or '')} url={url} -> {link}")
    return link
