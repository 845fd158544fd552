"""
In-memory stand-ins for Playwright objects.

A FakeSite maps URLs to page descriptions (title, anchor hrefs, height,
flow buttons, load error, load delay). FakePage answers the scripts our
modules pass to page.evaluate() by identity, so no real browser is needed.
"""

import asyncio
import io
from contextlib import asynccontextmanager

import pytest
from PIL import Image

from sitecapture.config import Settings
from sitecapture.discovery import COLLECT_HREFS_JS, SCROLL_STEP_JS, SCROLL_TOP_JS
from sitecapture.errors import BrowserLaunchError
from sitecapture.flow import FIND_FLOW_TARGET_JS
from sitecapture.urls import dedup_key


def png_bytes(width: int = 40, height: int = 30, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeSite:
    def __init__(self):
        self.pages: dict[str, dict] = {}
        self.visits: list[str] = []

    def add(self, url, title="", links=(), height=1200, error=None, delay=0.0,
            buttons=(), screenshot_error=None):
        """`buttons` are (text, target_url) pairs a flow step can click."""
        self.pages[dedup_key(url)] = {
            "title": title,
            "links": list(links),
            "height": height,
            "error": error,
            "delay": delay,
            "buttons": list(buttons),
            "screenshot_error": screenshot_error,
        }
        return self

    def lookup(self, url):
        return self.pages.get(dedup_key(url))


class FakePage:
    def __init__(self, site: FakeSite, viewport: dict):
        self.site = site
        self.viewport = viewport
        self.url = "about:blank"
        self.scroll_y = 0
        self.scroll_steps = 0
        self.closed = False
        self.marked = None
        self.screenshots = 0

    @property
    def viewport_size(self):
        return dict(self.viewport)

    async def set_viewport_size(self, size):
        self.viewport = dict(size)

    @property
    def _current(self):
        return self.site.lookup(self.url) if self.url.startswith("http") else None

    async def goto(self, url, wait_until=None, timeout=None):
        self.site.visits.append(url)
        page = self.site.lookup(url)
        if page is None:
            raise Exception(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        if page["delay"]:
            await asyncio.sleep(page["delay"])
        if page["error"]:
            raise page["error"]
        self.url = url
        self.scroll_y = 0

    async def wait_for_timeout(self, ms):
        await asyncio.sleep(0)

    async def wait_for_load_state(self, state=None, timeout=None):
        await asyncio.sleep(0)

    async def title(self):
        page = self._current
        return page["title"] if page else ""

    async def evaluate(self, script, arg=None):
        page = self._current or {"height": self.viewport["height"], "links": [], "buttons": []}
        if script is SCROLL_STEP_JS:
            before = self.scroll_y
            limit = max(0, page["height"] - self.viewport["height"])
            self.scroll_y = min(limit, self.scroll_y + arg)
            self.scroll_steps += 1
            return {"before": before, "after": self.scroll_y, "height": page["height"]}
        if script is SCROLL_TOP_JS:
            self.scroll_y = 0
            return None
        if script is COLLECT_HREFS_JS:
            return list(page["links"])
        if script is FIND_FLOW_TARGET_JS:
            keywords, _marker = arg
            self.marked = None
            for keyword in keywords:
                for text, target in page["buttons"]:
                    if keyword.lower() in text.lower():
                        self.marked = target
                        return {"keyword": keyword, "text": text}
            return None
        raise AssertionError(f"unexpected script: {script[:40]!r}")

    async def click(self, selector, timeout=None):
        if self.marked is None:
            raise Exception("Timeout 30000ms exceeded waiting for selector")
        target, self.marked = self.marked, None
        self.site.visits.append(target)
        self.url = target
        self.scroll_y = 0

    async def screenshot(self, full_page=False, type="png"):
        page = self._current
        if page and page["screenshot_error"]:
            raise page["screenshot_error"]
        self.screenshots += 1
        height = page["height"] if (page and full_page) else self.viewport["height"]
        return png_bytes(self.viewport["width"] // 10, height // 10)

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, site: FakeSite, viewport: dict):
        self.site = site
        self.viewport = viewport
        self.pages: list[FakePage] = []
        self.closed = False

    async def new_page(self):
        page = FakePage(self.site, self.viewport)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowserPool:
    """Same surface as sitecapture.browser.BrowserPool."""

    def __init__(self, site: FakeSite | None = None, fail_launch: bool = False):
        self.site = site or FakeSite()
        self.fail_launch = fail_launch
        self.contexts: list[FakeContext] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    @asynccontextmanager
    async def context(self, viewport=None):
        if self.fail_launch:
            raise BrowserLaunchError("Browser failed to start", "chromium executable not found")
        size = {"width": viewport.width, "height": viewport.height} if viewport else {"width": 1920, "height": 1080}
        ctx = FakeContext(self.site, size)
        self.contexts.append(ctx)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield ctx
        finally:
            self.active -= 1
            await ctx.close()

    async def new_page(self, ctx):
        return await ctx.new_page()

    async def close(self):
        self.closed = True


@pytest.fixture
def settings():
    return Settings(
        post_load_delay=0,
        scroll_delay=0,
        page_load_timeout=5000,
        viewport_width=800,
        viewport_height=600,
        crawl_budget=60,
        poll_interval=0.01,
        poll_initial_delay=0,
        poll_max_attempts=5,
        store_backend="memory",
        sweep_interval=3600,
    )


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def browser(site):
    return FakeBrowserPool(site)
