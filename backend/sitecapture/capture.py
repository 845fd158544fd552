"""
Capture Worker: load one URL in a page and take a screenshot.

Failures come back as CapturePageResult(success=False) with a classified
reason; nothing raises past capture_page() so a crawl can carry on with the
rest of its batch. The worker only touches the page it was handed.
"""

import asyncio
import logging
import time

from playwright.async_api import TimeoutError as PlaywrightTimeout

from sitecapture.discovery import scroll_to_bottom
from sitecapture.image_utils import image_size
from sitecapture.models import CaptureOptions, CapturePageResult, FailureReason

logger = logging.getLogger(__name__)

_CONNECTION_MARKERS = (
    "ERR_NAME_NOT_RESOLVED",
    "ERR_CONNECTION",
    "ERR_ADDRESS_UNREACHABLE",
    "ERR_INTERNET_DISCONNECTED",
    "ERR_NETWORK",
    "ERR_TUNNEL",
    "ERR_SSL",
    "ERR_CERT",
    "NS_ERROR_UNKNOWN_HOST",
    "NS_ERROR_CONNECTION_REFUSED",
)
_CRASH_MARKERS = (
    "Target crashed",
    "Page crashed",
    "Target closed",
    "Target page, context or browser has been closed",
)


def classify_error(exc: BaseException, default: FailureReason = FailureReason.NAVIGATION) -> FailureReason:
    if isinstance(exc, (PlaywrightTimeout, asyncio.TimeoutError)):
        return FailureReason.TIMEOUT
    msg = str(exc)
    if "Timeout" in msg and "exceeded" in msg:
        return FailureReason.TIMEOUT
    if any(marker in msg for marker in _CONNECTION_MARKERS):
        return FailureReason.CONNECTION
    if any(marker in msg for marker in _CRASH_MARKERS):
        return FailureReason.CRASH
    return default


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def failure_result(url: str, exc: BaseException, started: float,
                   default: FailureReason = FailureReason.NAVIGATION) -> CapturePageResult:
    reason = classify_error(exc, default)
    detail = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
    logger.warning(f"[capture] {reason.value} on {url}: {detail}")
    return CapturePageResult(
        success=False,
        url=url,
        reason=reason,
        error=f"{reason.value}: {detail}",
        duration_ms=_elapsed_ms(started),
    )


async def _page_title(page) -> str:
    try:
        return (await page.title()) or ""
    except Exception:
        return ""


async def _match_viewport(page, viewport):
    wanted = {"width": viewport.width, "height": viewport.height}
    if page.viewport_size != wanted:
        await page.set_viewport_size(wanted)


async def _load(page, url: str, options: CaptureOptions):
    await _match_viewport(page, options.viewport)
    await page.goto(
        url,
        wait_until=options.wait_strategy.playwright_value,
        timeout=options.timeout_ms,
    )
    if options.post_load_delay_ms:
        await page.wait_for_timeout(options.post_load_delay_ms)
    if options.lazy_scroll:
        await scroll_to_bottom(
            page,
            distance=options.scroll_distance,
            delay_ms=options.scroll_delay_ms,
            max_iterations=options.scroll_max_iterations,
        )


async def snapshot_page(page, url: str, options: CaptureOptions,
                        started: float | None = None) -> CapturePageResult:
    """Screenshot whatever `page` is showing now, without navigating."""
    started = started or time.monotonic()
    try:
        image = await asyncio.wait_for(
            page.screenshot(full_page=options.full_page, type="png"),
            timeout=options.timeout_ms / 1000,
        )
        if not image:
            raise ValueError("Screenshot returned no data")
        width, height = await asyncio.to_thread(image_size, image)
    except Exception as e:
        return failure_result(url, e, started, default=FailureReason.SCREENSHOT)

    result = CapturePageResult(
        success=True,
        url=url,
        final_url=page.url,
        title=await _page_title(page),
        image=image,
        width=width,
        height=height,
        duration_ms=_elapsed_ms(started),
    )
    logger.info(f"[capture] {url} -> {width}x{height}, {len(image)} bytes in {result.duration_ms}ms")
    return result


async def capture_page(page, url: str, options: CaptureOptions) -> CapturePageResult:
    """
    Navigate `page` to `url` using the wait strategy, let late content settle,
    then take a (full-page) PNG screenshot.
    """
    started = time.monotonic()
    try:
        await asyncio.wait_for(_load(page, url, options), timeout=options.hard_timeout)
    except Exception as e:
        return failure_result(url, e, started)
    return await snapshot_page(page, url, options, started=started)
