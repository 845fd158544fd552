"""
Crawl Orchestrator: breadth-first capture of one site.

The seed page is captured first and always recorded. Successful pages at
depth < max_depth are expanded into the frontier until max_links link pages
have been admitted. A fixed pool of workers pulls from the frontier, each
inside its own browser context. Every completed capture is written to the
job store right away so pollers see progress as it happens.
"""

import asyncio
import logging
import time

from sitecapture.browser import browser_pool
from sitecapture.capture import capture_page, failure_result
from sitecapture.config import get_settings
from sitecapture.discovery import discover_links
from sitecapture.errors import CaptureServiceError, InvalidURLError
from sitecapture.flow import advance_flow
from sitecapture.image_utils import thumbnail_data_url
from sitecapture.models import (
    CapturedPage,
    CapturePageResult,
    CrawlJob,
    CrawlOptions,
    FailureReason,
    JobStatus,
    Progress,
    merge_job,
    new_session_id,
)
from sitecapture.urls import dedup_key, normalize_seed_url, origin_of, slugify_url

logger = logging.getLogger(__name__)


def _error_text(e: CaptureServiceError) -> str:
    return f"{e.message}: {e.detail}" if e.detail else e.message


class CrawlOrchestrator:
    def __init__(self, browser=None, store=None, settings=None):
        self.browser = browser or browser_pool
        self.store = store
        self.settings = settings or get_settings()

    async def run(self, base_url: str, options: CrawlOptions | None = None,
                  session_id: str | None = None) -> CrawlJob:
        """
        Crawl `base_url` and return the job in its terminal state.
        Page failures are recorded and never end the job; only a bad seed URL
        or a browser that won't start leaves it failed.
        """
        crawl = _CrawlRun(self, base_url, options or CrawlOptions(), session_id)
        return await crawl.execute()


class _CrawlRun:
    """State for a single run() call."""

    def __init__(self, orchestrator: CrawlOrchestrator, raw_url: str,
                 options: CrawlOptions, session_id: str | None):
        self.browser = orchestrator.browser
        self.store = orchestrator.store
        self.settings = orchestrator.settings
        self.raw_url = raw_url
        self.session_id = session_id or new_session_id()
        self.options = options.resolved(self.settings)
        self.capture_options = self.options.capture_options(self.settings)

        self.job: CrawlJob | None = None
        self.origin = ""
        self.pages: list[CapturedPage] = []
        self.total = 0
        self.visited: set[str] = set()
        self.admitted_links = 0
        self.queue: asyncio.Queue = asyncio.Queue()
        self.deadline = 0.0
        self._persist_lock = asyncio.Lock()
        self._budget_logged = False

    # ---- lifecycle ----

    async def execute(self) -> CrawlJob:
        try:
            seed = normalize_seed_url(self.raw_url)
        except InvalidURLError as e:
            logger.error(f"[crawl] {self.session_id}: rejected seed {self.raw_url!r}: {_error_text(e)}")
            await self._open((self.raw_url or "").strip(), JobStatus.FAILED, error=_error_text(e))
            return self.job

        await self._open(seed, JobStatus.PROCESSING)
        self.origin = origin_of(seed)
        self.visited.add(dedup_key(seed))
        self.total = 1
        self.queue.put_nowait((seed, 0))
        self.deadline = time.monotonic() + self.options.crawl_budget

        logger.info(
            f"[crawl] {self.session_id}: start {seed} "
            f"(maxLinks={self.options.max_links}, maxDepth={self.options.max_depth}, "
            f"concurrency={self.options.concurrency}, flow={self.options.capture_flow})"
        )

        try:
            await self._drain()
        except asyncio.CancelledError:
            logger.warning(f"[crawl] {self.session_id}: cancelled")
            await asyncio.shield(self._finish(JobStatus.FAILED, "Capture was cancelled"))
            raise
        except CaptureServiceError as e:
            logger.error(f"[crawl] {self.session_id}: {_error_text(e)}")
            await self._finish(JobStatus.FAILED, _error_text(e))
            return self.job
        except Exception as e:
            logger.exception(f"[crawl] {self.session_id}: crawl aborted")
            await self._finish(JobStatus.FAILED, f"Internal error: {e}")
            return self.job

        await self._finish(JobStatus.COMPLETED)
        ok = self.job.success_count
        logger.info(
            f"[crawl] {self.session_id}: completed, {ok}/{len(self.pages)} pages captured"
        )
        return self.job

    async def _open(self, base_url: str, status: JobStatus, error: str | None = None):
        self.job = CrawlJob(
            session_id=self.session_id,
            base_url=base_url,
            status=status,
            error=error,
            options=self.options,
            progress=Progress(current=0, total=0 if error else 1),
        )
        if self.store is None:
            return
        existing = await self.store.get(self.session_id)
        if existing is None:
            await self.store.create(self.session_id, self.job)
        else:
            self.job = self.job.model_copy(update={"created_at": existing.created_at})
            await self.store.update(
                self.session_id, status=status, error=error, base_url=base_url,
                options=self.options, progress=self.job.progress,
            )

    async def _finish(self, status: JobStatus, error: str | None = None):
        await self._persist(
            status=status,
            error=error,
            progress=Progress(current=len(self.pages), total=len(self.pages)),
        )

    async def _persist(self, **changes):
        async with self._persist_lock:
            changes.setdefault("pages", list(self.pages))
            changes.setdefault("progress", Progress(current=len(self.pages), total=self.total))
            self.job = merge_job(self.job, changes)
            if self.store is not None:
                await self.store.update(self.session_id, **changes)

    # ---- worker pool ----

    async def _drain(self):
        workers = [
            asyncio.create_task(self._worker(i), name=f"{self.session_id}-worker-{i}")
            for i in range(self.options.concurrency)
        ]
        joined = asyncio.create_task(self.queue.join())
        try:
            await asyncio.wait([joined, *workers], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in [joined, *workers]:
                task.cancel()
            results = await asyncio.gather(joined, *workers, return_exceptions=True)

        # A worker only returns early by raising (e.g. the browser never came up)
        for result in results[1:]:
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                raise result

    def _out_of_time(self) -> bool:
        if time.monotonic() < self.deadline:
            return False
        if not self._budget_logged:
            self._budget_logged = True
            logger.warning(
                f"[crawl] {self.session_id}: {self.options.crawl_budget:.0f}s budget spent, "
                f"{self.queue.qsize()} queued page(s) dropped"
            )
        return True

    def _slots_left(self) -> int:
        return self.options.max_links - self.admitted_links

    async def _worker(self, worker_id: int):
        async with self.browser.context(self.capture_options.viewport) as ctx:
            while True:
                url, depth = await self.queue.get()
                try:
                    if self._out_of_time():
                        continue
                    await self._visit(ctx, url, depth)
                finally:
                    self.queue.task_done()

    async def _visit(self, ctx, url: str, depth: int):
        page = None
        try:
            started = time.monotonic()
            try:
                page = await self.browser.new_page(ctx)
            except Exception as e:
                await self._record(failure_result(url, e, started, default=FailureReason.CRASH), depth)
                return

            result = await capture_page(page, url, self.capture_options)
            await self._record(result, depth)
            if not result.success:
                return

            if depth < self.options.max_depth and self._slots_left() > 0 and not self._out_of_time():
                await self._expand(page, url, depth)
            if self.options.capture_flow and self.options.max_flow_steps > 0:
                await self._follow_flow(page, depth)
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception as e:
                    logger.warning(f"[crawl] Page close failed for {url}: {e}")

    # ---- recording ----

    async def _record(self, result: CapturePageResult, depth: int, flow_step: int | None = None):
        thumbnail = ""
        if result.success:
            thumbnail = await asyncio.to_thread(
                thumbnail_data_url,
                result.image,
                self.settings.thumbnail_width,
                self.settings.thumbnail_height,
                self.settings.thumbnail_quality,
            )

        # No awaits between numbering and appending: order is completion order
        order = len(self.pages) + 1
        if flow_step is None:
            filename = f"{order:02d}_{slugify_url(result.url)}.png"
        else:
            filename = f"{order:02d}_flow_{flow_step}.png"
        page = CapturedPage(
            url=result.url,
            title=result.title,
            filename=filename,
            success=result.success,
            error=result.error if not result.success else None,
            reason=result.reason,
            order=order,
            depth=depth,
            width=result.width,
            height=result.height,
            duration_ms=result.duration_ms,
            thumbnail=thumbnail,
            flow_step=flow_step,
            image_bytes=result.image if result.success else b"",
        )
        self.pages.append(page)
        await self._persist()

    # ---- traversal ----

    async def _expand(self, page, url: str, depth: int):
        # Ask for enough links that already-visited ones can't crowd out new ones
        want = self._slots_left() + len(self.visited)
        try:
            links = await discover_links(
                page,
                self.origin,
                want,
                seed_url=url,
                scroll_distance=self.capture_options.scroll_distance,
                scroll_delay=self.capture_options.scroll_delay_ms,
                scroll_max_iterations=self.capture_options.scroll_max_iterations,
            )
        except Exception as e:
            logger.warning(f"[crawl] Link discovery failed on {url}: {e}")
            return

        admitted = 0
        for link in links:
            if self._slots_left() <= 0:
                break
            if link in self.visited:
                continue
            self.visited.add(link)
            self.admitted_links += 1
            self.total += 1
            admitted += 1
            self.queue.put_nowait((link, depth + 1))

        logger.info(f"[crawl] {url}: {admitted} new link(s) queued at depth {depth + 1}")
        if admitted:
            await self._persist()

    async def _follow_flow(self, page, depth: int):
        try:
            async for step, text, result in advance_flow(
                page,
                self.options.flow_keywords,
                self.options.max_flow_steps,
                self.capture_options,
            ):
                self.total += 1
                await self._record(result, depth, flow_step=step)
                if self._out_of_time():
                    break
        except Exception as e:
            logger.warning(f"[crawl] Flow capture stopped: {e}")
