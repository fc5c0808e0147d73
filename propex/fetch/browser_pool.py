"""Bounded headless render pool: Playwright Chromium behind a fixed number of slots.

One browser process is shared; each render gets its own isolated context,
which is closed as soon as the page has been captured. The number of
concurrent renders never exceeds ``pool_size``, however many sources need
rendering; excess requests wait for a free slot.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from playwright.async_api import Browser, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from propex.config.settings import BrowserConfig
from propex.errors import FetchError, FetchErrorKind
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

# Strips scripts, styles and hidden elements before the DOM leaves the browser
_CLEAN_DOM_JS = """() => {
    const clone = document.documentElement.cloneNode(true);
    clone.querySelectorAll('script:not([type="application/ld+json"]), style, noscript, link[rel=stylesheet]')
        .forEach(el => el.remove());
    clone.querySelectorAll('[style*="display: none"], [style*="display:none"], [hidden]')
        .forEach(el => el.remove());
    return clone.outerHTML;
}"""


@dataclass
class RenderedPage:
    """Cleaned DOM snapshot from the browser."""

    html: str
    url: str
    title: str
    dom_hash: str

    @staticmethod
    def compute_hash(html: str) -> str:
        return hashlib.sha256(html.encode()).hexdigest()[:16]


class Renderer(Protocol):
    async def render(self, url: str, timeout_s: float) -> RenderedPage: ...


class BrowserPool:
    """Playwright-backed renderer with a fixed number of concurrent slots."""

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self._config = config or BrowserConfig()
        self._slots = asyncio.Semaphore(self._config.pool_size)
        self._playwright: Any = None
        self._browser: Browser | None = None
        self._start_lock = asyncio.Lock()
        self._active = 0
        self._peak = 0

    @property
    def pool_size(self) -> int:
        return self._config.pool_size

    @property
    def peak_concurrency(self) -> int:
        return self._peak

    async def start(self) -> None:
        """Launch the shared browser. Safe to call more than once."""
        async with self._start_lock:
            if self._browser is not None:
                return
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._config.headless,
                args=["--disable-dev-shm-usage", "--disable-gpu"],
            )
            logger.info("Browser pool started", extra={"pool_size": self.pool_size})

    async def stop(self) -> None:
        """Clean up browser resources."""
        try:
            if self._browser:
                await self._browser.close()
            if self._playwright:
                await self._playwright.stop()
        except PlaywrightError as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.BROWSER_CLEANUP_FAILED,
                message=str(exc),
                suppressed=True,
            )
        finally:
            self._browser = None
            self._playwright = None

    async def __aenter__(self) -> BrowserPool:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    async def render(self, url: str, timeout_s: float) -> RenderedPage:
        """Render ``url`` in a fresh context once a pool slot is free.

        Raises:
            FetchError: TIMEOUT on navigation timeout, HTTP_ERROR otherwise.
        """
        async with self._slots:
            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                if self._browser is None:
                    await self.start()
                return await self._render_in_context(url, timeout_s)
            finally:
                self._active -= 1

    async def _render_in_context(self, url: str, timeout_s: float) -> RenderedPage:
        assert self._browser is not None
        context = await self._browser.new_context(
            viewport={
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
            user_agent=self._config.user_agent,
            locale=self._config.locale,
        )
        try:
            page = await context.new_page()
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=timeout_s * 1000
            )
            if response is not None and response.status >= 400:
                kind = (
                    FetchErrorKind.BLOCKED
                    if response.status in (401, 403, 429)
                    else FetchErrorKind.HTTP_ERROR
                )
                raise FetchError(kind, f"{url}: HTTP {response.status} after render")
            if self._config.settle_ms > 0:
                try:
                    await page.wait_for_load_state(
                        "networkidle", timeout=self._config.settle_ms
                    )
                except PlaywrightTimeoutError:
                    pass  # long-polling pages never go idle; use what has rendered
            html = await page.evaluate(_CLEAN_DOM_JS)
            title = await page.title()
            return RenderedPage(
                html=html,
                url=page.url,
                title=title,
                dom_hash=RenderedPage.compute_hash(html),
            )
        except PlaywrightTimeoutError as exc:
            raise FetchError(FetchErrorKind.TIMEOUT, f"{url}: {exc}") from exc
        except PlaywrightError as exc:
            message = str(exc)
            kind = (
                FetchErrorKind.DNS_FAILURE
                if "ERR_NAME_NOT_RESOLVED" in message
                else FetchErrorKind.HTTP_ERROR
            )
            raise FetchError(kind, f"{url}: {message}") from exc
        finally:
            await context.close()
