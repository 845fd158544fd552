"""
Shared headless Chromium for all capture jobs.

One browser per process, launched on first use. Jobs never own the browser:
they borrow isolated browser contexts from it and open pages inside those.
The browser is closed after sitting idle and recycled once it passes its
max age (at the next moment no context is open).
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager

from playwright.async_api import async_playwright

from sitecapture.config import get_settings
from sitecapture.errors import BrowserLaunchError
from sitecapture.models import Viewport

try:
    from playwright_stealth import Stealth
    _stealth = Stealth()
except ImportError:
    _stealth = None

logger = logging.getLogger(__name__)


class BrowserPool:
    def __init__(self, settings=None, launcher=None):
        self._settings = settings
        self._launcher = launcher
        self.lock = asyncio.Lock()
        self._playwright = None
        self._browser = None
        self._launched_at = 0.0
        self._active = 0
        self._idle_task: asyncio.Task | None = None

    @property
    def settings(self):
        return self._settings or get_settings()

    @property
    def active_contexts(self) -> int:
        return self._active

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    async def _launch_chromium(self):
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.settings.headless,
            args=self.settings.browser_args,
        )

    def _expired(self) -> bool:
        return time.monotonic() - self._launched_at > self.settings.browser_max_age

    async def _get_browser(self):
        async with self.lock:
            if self._browser is not None:
                connected = self._browser.is_connected()
                if connected and not (self._expired() and self._active == 0):
                    return self._browser
                reason = "disconnected" if not connected else "max age reached"
                logger.info(f"[browser] Recycling browser ({reason})")
                await self._close_locked()

            logger.info("[browser] Launching Chromium...")
            try:
                launch = self._launcher or self._launch_chromium
                self._browser = await launch()
            except Exception as e:
                await self._stop_playwright()
                raise BrowserLaunchError("Browser failed to start", str(e))
            self._launched_at = time.monotonic()
            return self._browser

    @asynccontextmanager
    async def context(self, viewport: Viewport | None = None):
        """
        Borrow a fresh browser context (own cookies, cache and history).
        Raises BrowserLaunchError if Chromium can't be started.
        """
        viewport = viewport or Viewport(
            width=self.settings.viewport_width,
            height=self.settings.viewport_height,
        )
        browser = await self._get_browser()
        self._active += 1
        if self._idle_task:
            self._idle_task.cancel()
            self._idle_task = None
        ctx = None
        try:
            ctx = await browser.new_context(
                viewport={"width": viewport.width, "height": viewport.height},
                user_agent=self.settings.user_agent,
            )
            yield ctx
        finally:
            if ctx is not None:
                try:
                    await ctx.close()
                except Exception as e:
                    logger.warning(f"[browser] Context close failed: {e}")
            self._active -= 1
            if self._active == 0 and self._browser is not None:
                self._idle_task = asyncio.create_task(self._close_when_idle())

    async def new_page(self, ctx):
        """Open a page in `ctx`, with stealth patches when available."""
        page = await ctx.new_page()
        if _stealth and self.settings.stealth:
            await _stealth.apply_stealth_async(page)
        return page

    async def _close_when_idle(self):
        await asyncio.sleep(self.settings.browser_idle_timeout)
        async with self.lock:
            if self._active == 0 and self._browser is not None:
                logger.info("[browser] Idle timeout, closing browser")
                await self._close_locked()

    async def _close_locked(self):
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.warning(f"[browser] Close failed: {e}")
        await self._stop_playwright()

    async def _stop_playwright(self):
        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.warning(f"[browser] Playwright stop failed: {e}")

    async def close(self):
        """Shut the browser down. Call from server lifespan shutdown."""
        if self._idle_task:
            self._idle_task.cancel()
            self._idle_task = None
        async with self.lock:
            await self._close_locked()


# Global singleton
browser_pool = BrowserPool()
