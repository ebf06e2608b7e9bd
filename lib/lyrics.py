"""
Lyrics resolver backed by NeteaseCloudMusicApi.

``fetch_lyrics`` never raises for upstream trouble: ``None`` means "no
lyrics available". An empty string means the lyric field existed but held
nothing once timing markers and credit lines were removed.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from lib.errors import UpstreamError
from lib.platforms.http import fetch_json, json_headers, open_client
from lib.platforms.models import ensure_https, join_artist_names
from lib.settings import LOOKUP_TIMEOUT_S, LYRICS_CONCURRENCY, netease_cookie

logger = logging.getLogger(__name__)

# NetEase cloudsearch types
SEARCH_TYPE_SONG = 1
SEARCH_TYPE_LYRICS = 1006

SCORE_LINE_CONTAINS_INPUT = 100
SCORE_INPUT_CONTAINS_LINE = 80
SCORE_OVERLAP_MAX = 70

_TIMESTAMP_RE = re.compile(r"\[\d{1,2}:\d{2}(?:[.:]\d{1,3})?\]")
# [ar:Artist] [ti:Title] [by:Someone] [offset:0]
_LRC_TAG_RE = re.compile(r"^\[[a-zA-Z]+:[^\]]*\]$")

_CREDIT_CN_RE = re.compile(
    r"^(作词|作曲|编曲|制作人|监制|出品|混音|母带|录音|吉他|贝斯|鼓|键盘|和声|弦乐|钢琴|"
    r"作詞|編曲|製作人|監製|混音師|錄音|貝斯|鍵盤|和聲|詞|曲|编|編)\s*[：:]"
)
_CREDIT_EN_RE = re.compile(
    r"^(Produced by|Co-produced by|Written by|Composed by|Arranged by|Lyrics by|Coordinated by|"
    r"Mixed by|Mastered by|Recorded by|Engineered by|Acoustic guitar|Electric guitar|Bass|"
    r"Guitar|Drums|Piano|Keyboards|Strings|Vocals|Backing vocals|Synth|Programming|Cover)\s*[：:]",
    re.IGNORECASE,
)
# Ad hoc vocal-part labels such as "enno:" or "Jay Chou："
_NAME_LABEL_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_\s]{0,24}\s*[：:]")
_ROLE_LABEL_RE = re.compile(r"^(男|女|合唱|独唱|獨唱|男声|女声|男聲|女聲)\s*[：:]")

_CREDIT_PATTERNS = (_CREDIT_CN_RE, _CREDIT_EN_RE, _NAME_LABEL_RE, _ROLE_LABEL_RE)


@dataclass(frozen=True)
class FirstTrack:
    track_id: str
    track_name: str


def is_credit_line(line: str) -> bool:
    return any(p.match(line) for p in _CREDIT_PATTERNS)


def clean_lyrics(raw: str) -> str:
    """Strip timing markers and drop credit / role-label lines, one lyric line per output line."""
    lines = []
    for line in (raw or "").splitlines():
        line = line.strip()
        if _LRC_TAG_RE.match(line):
            continue
        line = _TIMESTAMP_RE.sub("", line).strip()
        if not line or is_credit_line(line):
            continue
        lines.append(line)
    return "\n".join(lines)


def _extract_lrc(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    if data.get("nolyric") or data.get("uncollected"):
        return None
    lrc = data.get("lrc")
    if not isinstance(lrc, dict):
        return None
    raw = lrc.get("lyric")
    return raw if isinstance(raw, str) else None


async def fetch_lyrics(
    api_base: str,
    track_id: str,
    client: httpx.AsyncClient | None = None,
) -> Optional[str]:
    base = api_base.rstrip("/")
    try:
        async with open_client(client) as c:
            data = await fetch_json(
                c,
                f"{base}/lyric",
                params={"id": track_id},
                platform="NetEase lyrics",
                timeout=LOOKUP_TIMEOUT_S,
                headers=json_headers(Cookie=netease_cookie()),
            )
    except UpstreamError as e:
        logger.warning(f"[Lyrics] fetch failed track_id={track_id}: {e} meta={e.meta}")
        return None

    raw = _extract_lrc(data)
    if raw is None:
        logger.info(f"[Lyrics] no lyric field track_id={track_id}")
        return None
    return clean_lyrics(raw)


def first_song_of_album(payload: Any) -> Optional[Dict[str, Any]]:
    """First entry of ``songs`` (or ``album.songs`` / ``album.tracks``) in an /album response."""
    if not isinstance(payload, dict):
        return None
    album = payload.get("album") if isinstance(payload.get("album"), dict) else {}
    for songs in (payload.get("songs"), album.get("songs"), album.get("tracks")):
        if isinstance(songs, list) and songs and isinstance(songs[0], dict):
            return songs[0]
    return None


async def get_first_track_from_album(
    api_base: str,
    album_id: str,
    client: httpx.AsyncClient | None = None,
) -> Optional[FirstTrack]:
    base = api_base.rstrip("/")
    try:
        async with open_client(client) as c:
            data = await fetch_json(
                c,
                f"{base}/album",
                params={"id": album_id},
                platform="NetEase album",
                timeout=LOOKUP_TIMEOUT_S,
                headers=json_headers(Cookie=netease_cookie()),
            )
    except UpstreamError as e:
        logger.warning(f"[Lyrics] album lookup failed album_id={album_id}: {e}")
        return None

    first = first_song_of_album(data)
    if not first:
        return None
    track_id = first.get("id")
    if track_id is None or track_id == "":
        return None
    name = first.get("name")
    return FirstTrack(track_id=str(track_id), track_name=name if isinstance(name, str) else "Unknown")


async def _cloudsearch(
    api_base: str,
    keywords: str,
    search_type: int,
    limit: int,
    client: httpx.AsyncClient | None = None,
) -> List[Dict[str, Any]]:
    """``result.songs`` of a NetEase cloudsearch. Upstream trouble raises UpstreamError."""
    async with open_client(client) as c:
        data = await fetch_json(
            c,
            f"{api_base.rstrip('/')}/cloudsearch",
            params={"keywords": keywords, "type": search_type, "limit": limit},
            platform="NetEase search",
            timeout=LOOKUP_TIMEOUT_S,
            headers=json_headers(Cookie=netease_cookie()),
        )
    result = data.get("result") if isinstance(data, dict) else None
    songs = result.get("songs") if isinstance(result, dict) else None
    if not isinstance(songs, list):
        return []
    return [s for s in songs if isinstance(s, dict) and s.get("id") is not None]


async def search_song(
    api_base: str,
    keyword: str,
    client: httpx.AsyncClient | None = None,
) -> Optional[Dict[str, str]]:
    """Best cloudsearch match for ``keyword``: ``{"id", "name", "artist"}`` or None."""
    try:
        songs = await _cloudsearch(api_base, keyword, SEARCH_TYPE_SONG, 5, client=client)
    except UpstreamError as e:
        logger.warning(f"[Lyrics] search failed keyword={keyword!r}: {e}")
        return None
    if not songs:
        return None
    song = songs[0]
    return {
        "id": str(song["id"]),
        "name": song.get("name") or "",
        "artist": join_artist_names(song.get("ar") or song.get("artists")) or "Unknown",
    }


# =========================
# Lyric-snippet search
# =========================


@dataclass
class SongMatch:
    id: str
    name: str
    artist_name: str
    album_name: str
    album_id: Optional[str]
    pic_url: str
    matched_lyrics: Optional[str] = None
    match_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _compact(text: str) -> str:
    return "".join(text.split()).lower()


def _longest_common_run(needle: str, haystack: str) -> int:
    """Length of the longest substring (2+ chars) of ``needle`` found in ``haystack``."""
    best = 0
    for i in range(len(needle)):
        j = i + max(best + 1, 2)
        while j <= len(needle) and needle[i:j] in haystack:
            best = j - i
            j += 1
    return best


def find_matched_snippet(full_lyrics: str, user_input: str) -> Optional[Tuple[str, int]]:
    """
    Find the lyric line the user was quoting; return ``(line, score)`` or None.

    Whitespace and case are ignored. Tiers, first hit wins:
      - a line contains the whole input: 100
      - the input contains a line longer than 3 chars: 80
      - the line sharing the longest common run (3+ chars) with the input:
        ``round(run / len(input) * 70)``, at most 70
    """
    needle = _compact(user_input or "")
    if not needle:
        return None
    lines = [(line.strip(), _compact(line)) for line in (full_lyrics or "").splitlines()]

    for line, compact in lines:
        if compact and needle in compact:
            return line, SCORE_LINE_CONTAINS_INPUT

    for line, compact in lines:
        if len(compact) > 3 and compact in needle:
            return line, SCORE_INPUT_CONTAINS_LINE

    best_line, best_run = "", 0
    for line, compact in lines:
        if len(compact) < 2:
            continue
        run = _longest_common_run(needle, compact)
        if run > best_run:
            best_line, best_run = line, run

    if best_run >= 3:
        return best_line, min(SCORE_OVERLAP_MAX, int(best_run * SCORE_OVERLAP_MAX / len(needle) + 0.5))
    return None


def song_match_from_search(song: Dict[str, Any]) -> SongMatch:
    al = song.get("al") or song.get("album") or {}
    if not isinstance(al, dict):
        al = {}
    return SongMatch(
        id=str(song["id"]),
        name=song.get("name") or "Unknown",
        artist_name=join_artist_names(song.get("ar") or song.get("artists")),
        album_name=al.get("name") or "Unknown",
        album_id=str(al["id"]) if al.get("id") else None,
        pic_url=ensure_https(al.get("picUrl") or ""),
    )


async def search_by_name(
    api_base: str,
    keywords: str,
    client: httpx.AsyncClient | None = None,
    limit: int = 10,
) -> List[SongMatch]:
    songs = await _cloudsearch(api_base, keywords, SEARCH_TYPE_SONG, limit, client=client)
    return [song_match_from_search(s) for s in songs]


async def search_by_lyrics(
    api_base: str,
    keywords: str,
    client: httpx.AsyncClient | None = None,
    limit: int = 10,
) -> List[SongMatch]:
    """
    Songs whose lyrics contain ``keywords``, best match first.

    Lyric search (type 1006) is tried first, plain song search (type 1) when
    it finds nothing or fails. Each of the top ``limit`` candidates has its
    lyrics fetched and scored with ``find_matched_snippet``.
    """
    candidates: List[Dict[str, Any]] = []
    try:
        candidates = await _cloudsearch(api_base, keywords, SEARCH_TYPE_LYRICS, 20, client=client)
        logger.info(f"[LyricSearch] type=1006 keywords={keywords!r} songs={len(candidates)}")
    except UpstreamError as e:
        logger.warning(f"[LyricSearch] type=1006 failed keywords={keywords!r}: {e}")
    if not candidates:
        candidates = await _cloudsearch(api_base, keywords, SEARCH_TYPE_SONG, 15, client=client)
        logger.info(f"[LyricSearch] fallback type=1 keywords={keywords!r} songs={len(candidates)}")

    sem = asyncio.Semaphore(max(1, LYRICS_CONCURRENCY))

    async def score(song: Dict[str, Any]) -> SongMatch:
        match = song_match_from_search(song)
        async with sem:
            lyrics = await fetch_lyrics(api_base, match.id, client=client)
        hit = find_matched_snippet(lyrics, keywords) if lyrics else None
        if hit:
            match.matched_lyrics, match.match_score = hit
        return match

    results = list(await asyncio.gather(*(score(s) for s in candidates[:limit])))
    # sort is stable: equal scores keep search order
    results.sort(key=lambda m: -m.match_score)
    return results
