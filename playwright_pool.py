import asyncio
import logging
import os
import sys
from typing import Optional

from playwright.async_api import async_playwright, Browser, BrowserContext, Playwright

logger = logging.getLogger(__name__)

BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
APPLE_PLAYWRIGHT_TIMEOUT_MS = int(os.getenv("APPLE_PLAYWRIGHT_TIMEOUT_MS", "45000"))

_lock = asyncio.Lock()
_pw: Optional[Playwright] = None
_browser: Optional[Browser] = None


def _launch_args() -> list[str]:
    args: list[str] = []
    # Containers on Linux: no sandbox, no /dev/shm
    if sys.platform.startswith("linux"):
        args += ["--no-sandbox", "--disable-dev-shm-usage"]
    return args


async def get_browser() -> Browser:
    global _pw, _browser
    if _browser is not None:
        return _browser

    async with _lock:
        if _browser is not None:
            return _browser
        _pw = await async_playwright().start()
        headless = os.getenv("APPLE_PLAYWRIGHT_HEADLESS", "1") != "0"
        _browser = await _pw.chromium.launch(headless=headless, args=_launch_args())
        logger.info("[PW_POOL] launch browser")
        return _browser


async def new_context() -> BrowserContext:
    browser = await get_browser()
    ctx = await browser.new_context(
        user_agent=BROWSER_UA,
        locale="en-US",
        viewport={"width": 1920, "height": 1080},
    )
    logger.info("[PW_POOL] context created")
    return ctx


async def render_page_html(url: str, timeout_ms: int = APPLE_PLAYWRIGHT_TIMEOUT_MS) -> str:
    """Load ``url`` in a fresh context and return the rendered HTML."""
    context = await new_context()
    try:
        page = await context.new_page()
        page.set_default_navigation_timeout(timeout_ms)
        page.set_default_timeout(timeout_ms)

        # Only what the page needs to build its data
        allowed_resources = {"document", "script", "xhr", "fetch"}

        async def _handle_route(route):
            if route.request.resource_type in allowed_resources:
                await route.continue_()
            else:
                await route.abort()

        await page.route("**/*", _handle_route)
        logger.info(f"[PW_POOL] goto url={url}")
        await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        await page.wait_for_selector("main", timeout=timeout_ms)
        return await page.content()
    finally:
        await context.close()


async def close_browser() -> None:
    global _pw, _browser
    async with _lock:
        if _browser is not None:
            try:
                await _browser.close()
            finally:
                _browser = None
                logger.info("[PW_POOL] close browser")
        if _pw is not None:
            try:
                await _pw.stop()
            finally:
                _pw = None
