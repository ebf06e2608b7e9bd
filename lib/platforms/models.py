"""
Shared data shapes produced by the link normalizer and the platform adapters.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict


class Platform(str, Enum):
    NETEASE = "netease"            # primary platform
    SPOTIFY = "spotify"
    APPLE_MUSIC = "apple_music"
    QQ_MUSIC = "qq_music"


class ContentType(str, Enum):
    TRACK = "track"
    ALBUM = "album"
    PLAYLIST = "playlist"


@dataclass(frozen=True)
class ResolvedLink:
    """What a pasted link points at. Never persisted."""
    platform: Platform
    content_type: ContentType
    content_id: str
    source_url: str | None = None


@dataclass(frozen=True)
class TrackRecord:
    """Common output of every adapter."""
    name: str
    artist_name: str
    album_name: str
    picture_url: str
    platform_track_id: str | None = None
    original_link: str | None = None
    platform_album_id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def ensure_https(url: str | None) -> str:
    """Upstream covers are sometimes plain http or protocol-relative."""
    s = (url or "").strip()
    if s.startswith("//"):
        return "https:" + s
    if s.startswith("http://"):
        return "https://" + s[len("http://"):]
    return s


def join_artist_names(artists: Any) -> str:
    """Comma-join ``[{"name": ...}, ...]`` (or a bare string) into one display string."""
    if isinstance(artists, str):
        return artists.strip()
    if isinstance(artists, dict):
        artists = [artists]
    if not isinstance(artists, list):
        return ""
    names = []
    for a in artists:
        name = a.get("name") if isinstance(a, dict) else a
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
    return ", ".join(names)
