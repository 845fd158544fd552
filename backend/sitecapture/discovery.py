"""
Link discovery on an already-loaded page.

Lazy-loaded anchors only show up once the page has been scrolled, so the
page is walked to the bottom first. The walk is driven from Python one step
at a time against the measured scroll position, with an iteration cap so
infinite-scroll feeds can't keep it going forever.
"""

import logging

from sitecapture.urls import dedup_key, resolve_same_origin

logger = logging.getLogger(__name__)

SCROLL_STEP_JS = """(distance) => {
    const before = window.scrollY;
    window.scrollBy(0, distance);
    return {
        before: before,
        after: window.scrollY,
        height: Math.max(
            document.body ? document.body.scrollHeight : 0,
            document.documentElement.scrollHeight
        ),
    };
}"""

SCROLL_TOP_JS = "() => window.scrollTo(0, 0)"

COLLECT_HREFS_JS = """() => Array.from(
    document.querySelectorAll('a[href]'),
    a => a.getAttribute('href')
)"""


async def scroll_to_bottom(page, distance: int = 400, delay_ms: int = 100,
                           max_iterations: int = 50) -> int:
    """
    Scroll by `distance` every `delay_ms` until the position stops advancing
    or `max_iterations` steps have run, then return to the top.
    Returns the number of steps taken.
    """
    steps = 0
    for steps in range(1, max_iterations + 1):
        state = await page.evaluate(SCROLL_STEP_JS, distance)
        await page.wait_for_timeout(delay_ms)
        if state["after"] <= state["before"]:
            break
    else:
        logger.info(f"[scroll] Stopped after {max_iterations} steps (iteration cap)")
    await page.evaluate(SCROLL_TOP_JS)
    return steps


async def discover_links(page, base_origin: str, max_links: int, *, seed_url: str | None = None,
                         scroll_distance: int = 400, scroll_delay: int = 100,
                         scroll_max_iterations: int = 50) -> list[str]:
    """
    Collect same-origin links from `page` in first-seen order.

    Links are resolved against the page URL and reduced to their dedup key
    (no query, no fragment). Malformed hrefs are skipped. When nothing
    qualifies the result is the seed URL alone (the page's own URL if no
    seed is given). Never returns more than `max_links` entries.
    """
    if max_links <= 0:
        return []

    await scroll_to_bottom(
        page,
        distance=scroll_distance,
        delay_ms=scroll_delay,
        max_iterations=scroll_max_iterations,
    )

    hrefs = await page.evaluate(COLLECT_HREFS_JS) or []
    page_url = page.url

    links: list[str] = []
    seen = set()
    for href in hrefs:
        key = resolve_same_origin(href, page_url, base_origin)
        if key is None or key in seen:
            continue
        seen.add(key)
        links.append(key)
        if len(links) >= max_links:
            break

    logger.info(f"[discover] {len(hrefs)} anchors -> {len(links)} same-origin links on {page_url}")

    if not links:
        fallback = resolve_same_origin(seed_url or page_url, page_url, base_origin)
        if fallback is None:
            fallback = dedup_key(seed_url or page_url)
        links = [fallback]
    return links
