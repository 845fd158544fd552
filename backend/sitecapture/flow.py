"""
Flow capture: follow "next step" buttons instead of hyperlinks.

After a page is captured, look for the first visible clickable element whose
text contains one of the configured keywords (checked in keyword order),
click it, let the page settle, and screenshot the new state. Repeats until
nothing matches, a click fails, or max_steps is reached.
"""

import logging

from sitecapture.capture import snapshot_page
from sitecapture.discovery import scroll_to_bottom
from sitecapture.models import CaptureOptions

logger = logging.getLogger(__name__)

FLOW_MARKER = "data-sitecapture-flow-target"

FIND_FLOW_TARGET_JS = """([keywords, marker]) => {
    const selector = 'button, a, input[type="button"], input[type="submit"], ' +
                     '[role="button"], .btn, .button';
    const isVisible = (el) => {
        const style = window.getComputedStyle(el);
        if (style.display === 'none' || style.visibility === 'hidden') return false;
        const rect = el.getBoundingClientRect();
        return rect.width > 0 && rect.height > 0;
    };
    document.querySelectorAll('[' + marker + ']').forEach(el => el.removeAttribute(marker));
    const candidates = Array.from(document.querySelectorAll(selector)).filter(isVisible);
    for (const keyword of keywords) {
        const needle = keyword.toLowerCase();
        for (const el of candidates) {
            const text = (el.innerText || el.textContent || el.value ||
                          el.getAttribute('aria-label') || '').trim();
            if (text && text.toLowerCase().includes(needle)) {
                el.setAttribute(marker, '1');
                return { keyword: keyword, text: text.slice(0, 80) };
            }
        }
    }
    return null;
}"""


async def find_flow_target(page, keywords: list[str]) -> dict | None:
    """Mark the highest-priority matching element. Returns {keyword, text} or None."""
    if not keywords:
        return None
    return await page.evaluate(FIND_FLOW_TARGET_JS, [list(keywords), FLOW_MARKER])


async def advance_flow(page, keywords: list[str], max_steps: int, options: CaptureOptions):
    """
    Async generator yielding (step, button_text, CapturePageResult) for each
    advance. Stops after the first failed screenshot.
    """
    for step in range(1, max_steps + 1):
        target = await find_flow_target(page, keywords)
        if not target:
            logger.info(f"[flow] Step {step}: no matching button, flow ends")
            return

        try:
            await page.click(f"[{FLOW_MARKER}]", timeout=options.timeout_ms)
        except Exception as e:
            logger.warning(f"[flow] Step {step}: click on '{target['text']}' failed: {e}")
            return

        try:
            await page.wait_for_load_state(
                options.wait_strategy.playwright_value,
                timeout=options.timeout_ms,
            )
        except Exception as e:
            # In-page transitions don't always fire load events
            logger.info(f"[flow] Step {step}: no load event after click ({e})")
        if options.post_load_delay_ms:
            await page.wait_for_timeout(options.post_load_delay_ms)
        if options.lazy_scroll:
            await scroll_to_bottom(
                page,
                distance=options.scroll_distance,
                delay_ms=options.scroll_delay_ms,
                max_iterations=options.scroll_max_iterations,
            )

        result = await snapshot_page(page, page.url, options)
        logger.info(
            f"[flow] Step {step}: '{target['text']}' -> {page.url} "
            f"({'ok' if result.success else result.error})"
        )
        yield step, target["text"], result
        if not result.success:
            return
