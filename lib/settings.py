"""Environment-driven settings shared by the adapters and the orchestrator."""
from __future__ import annotations

import os

from lib.errors import NotConfiguredError

ENV = os.getenv("ENV", "prod").lower()
IS_DEV = ENV == "dev"

# Timeouts (seconds)
PLAYLIST_TIMEOUT_S = float(os.getenv("PLAYLIST_TIMEOUT_S", "60"))
DETAIL_TIMEOUT_S = float(os.getenv("DETAIL_TIMEOUT_S", "30"))
LOOKUP_TIMEOUT_S = float(os.getenv("LOOKUP_TIMEOUT_S", "15"))
SHORT_LINK_TIMEOUT_S = float(os.getenv("SHORT_LINK_TIMEOUT_S", "15"))
NETEASE_CHECK_TIMEOUT_S = float(os.getenv("NETEASE_CHECK_TIMEOUT_S", "10"))
# Hard ceiling for one adapter dispatch, all requests included
IMPORT_TIMEOUT_S = float(os.getenv("IMPORT_TIMEOUT_S", "120"))

NETEASE_DETAIL_CHUNK = int(os.getenv("NETEASE_DETAIL_CHUNK", "50"))
NETEASE_DETAIL_CONCURRENCY = int(os.getenv("NETEASE_DETAIL_CONCURRENCY", "3"))
LYRICS_CONCURRENCY = int(os.getenv("LYRICS_CONCURRENCY", "4"))
LYRICS_SEARCH_FALLBACK = os.getenv("LYRICS_SEARCH_FALLBACK", "0") == "1"

STORAGE_RETRY_ATTEMPTS = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "3"))
STORAGE_RETRY_BASE_S = float(os.getenv("STORAGE_RETRY_BASE_S", "0.5"))

APPLE_STOREFRONT = os.getenv("APPLE_STOREFRONT", "us")
APPLE_PLAYWRIGHT = os.getenv("APPLE_PLAYWRIGHT", "0") == "1"

DEFAULT_NETEASE_COOKIE = "os=pc; appver=2.9.7"


def netease_api_base() -> str:
    """
    Base URL of the NeteaseCloudMusicApi deployment.

    A bare host (``netease-api.example.app``) gets ``https://`` prepended.
    """
    raw = (os.getenv("NETEASE_API_URL") or "").strip()
    if not raw:
        raise NotConfiguredError(
            "NETEASE_API_URL",
            "Run NeteaseCloudMusicApi and set NETEASE_API_URL to its base URL.",
        )
    if not raw.startswith(("http://", "https://")):
        raw = f"https://{raw}"
    return raw.rstrip("/")


def netease_cookie() -> str:
    return os.getenv("NETEASE_COOKIE") or DEFAULT_NETEASE_COOKIE


def spotify_credentials() -> tuple[str, str]:
    client_id = os.getenv("SPOTIFY_CLIENT_ID")
    client_secret = os.getenv("SPOTIFY_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise NotConfiguredError(
            "SPOTIFY_CLIENT_ID/SPOTIFY_CLIENT_SECRET",
            "Set both Spotify client credentials to import Spotify links.",
        )
    return client_id, client_secret


def spotify_markets() -> list[str]:
    # Tried in order; JP,US,GB when unset
    market_env = os.getenv("SPOTIFY_MARKET", "").strip()
    return [m.strip().upper() for m in market_env.split(",") if m.strip()] or ["JP", "US", "GB"]
