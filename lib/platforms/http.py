"""
Shared httpx plumbing for the adapters: browser-like headers, bounded
timeouts, and mapping of transport failures onto the error taxonomy.
"""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

import httpx

from lib.errors import UpstreamFormatError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


def browser_headers(
    accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    accept_language: str = "zh-CN,zh;q=0.9,en;q=0.8",
    **extra: str,
) -> Dict[str, str]:
    headers = {
        "User-Agent": BROWSER_UA,
        "Accept": accept,
        "Accept-Language": accept_language,
    }
    headers.update(extra)
    return headers


def json_headers(**extra: str) -> Dict[str, str]:
    return browser_headers(accept="application/json, text/plain, */*", **extra)


@asynccontextmanager
async def open_client(client: httpx.AsyncClient | None = None) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the caller's client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(follow_redirects=True) as owned:
        yield owned


async def fetch_response(
    client: httpx.AsyncClient,
    url: str,
    *,
    platform: str,
    timeout: float,
    headers: Dict[str, str] | None = None,
    params: Dict[str, Any] | None = None,
) -> httpx.Response:
    """GET with a hard timeout; non-2xx and transport failures become UpstreamUnavailableError."""
    try:
        resp = await client.get(url, headers=headers, params=params, timeout=httpx.Timeout(timeout))
    except httpx.TimeoutException as e:
        raise UpstreamUnavailableError(
            f"{platform} did not respond within {timeout:.0f}s. Try again in a moment.",
            platform=platform,
            meta={"url": url, "error": repr(e)},
        ) from e
    except httpx.HTTPError as e:
        raise UpstreamUnavailableError(
            f"Could not connect to {platform}. Check the service address and try again.",
            platform=platform,
            meta={"url": url, "error": repr(e)},
        ) from e

    if resp.status_code < 200 or resp.status_code >= 300:
        logger.warning(f"[HTTP] {platform} status={resp.status_code} url={url} body={resp.text[:200]!r}")
        raise UpstreamUnavailableError(
            f"{platform} request failed with status {resp.status_code}.",
            platform=platform,
            snippet=resp.text,
            meta={"url": url, "status": resp.status_code},
        )
    return resp


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    platform: str,
    timeout: float,
    headers: Dict[str, str] | None = None,
    params: Dict[str, Any] | None = None,
) -> Any:
    resp = await fetch_response(client, url, platform=platform, timeout=timeout, headers=headers, params=params)
    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise UpstreamFormatError(
            f"{platform} returned a response that is not JSON.",
            platform=platform,
            snippet=resp.text,
            meta={"url": url},
        ) from e


async def fetch_text(
    client: httpx.AsyncClient,
    url: str,
    *,
    platform: str,
    timeout: float,
    headers: Dict[str, str] | None = None,
) -> tuple[str, str]:
    """Return ``(html, final_url)``."""
    resp = await fetch_response(client, url, platform=platform, timeout=timeout, headers=headers)
    return resp.text, str(resp.url)
