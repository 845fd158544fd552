"""
CaptureService: what the HTTP routes call.

submit() validates the seed, stores a processing job and starts the crawl as
a background task, so the request returns right away. Everything else reads
the job store, which makes any process sharing the store able to answer
status and download requests.
"""

import asyncio
import logging

from sitecapture.archive import archive_filename, package_job
from sitecapture.browser import browser_pool
from sitecapture.config import get_settings
from sitecapture.errors import JobFailedError, JobNotReadyError, SessionNotFoundError
from sitecapture.models import CrawlJob, CrawlOptions, JobStatus, Progress, new_session_id
from sitecapture.orchestrator import CrawlOrchestrator
from sitecapture.polling import PollingCoordinator, PollOutcome, store_fetcher
from sitecapture.store import JobStore, build_store
from sitecapture.urls import normalize_seed_url

logger = logging.getLogger(__name__)


class CaptureService:
    def __init__(self, store: JobStore | None = None, browser=None, settings=None):
        self.settings = settings or get_settings()
        self.store = store or build_store(self.settings)
        self.browser = browser or browser_pool
        self.orchestrator = CrawlOrchestrator(self.browser, self.store, self.settings)
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> list[str]:
        return list(self._tasks)

    async def submit(self, url: str, options: CrawlOptions | None = None) -> CrawlJob:
        """Start a crawl. Raises InvalidURLError before anything is stored."""
        seed = normalize_seed_url(url)
        options = options or CrawlOptions()
        session_id = new_session_id()

        job = CrawlJob(
            session_id=session_id,
            base_url=seed,
            status=JobStatus.PROCESSING,
            options=options.resolved(self.settings),
            progress=Progress(current=0, total=1),
        )
        await self.store.create(session_id, job)

        task = asyncio.create_task(self._run(session_id, seed, options), name=f"crawl-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))
        logger.info(f"[jobs] Submitted {session_id} for {seed}")
        return job

    async def _run(self, session_id: str, seed: str, options: CrawlOptions):
        try:
            job = await self.orchestrator.run(seed, options, session_id=session_id)
        except Exception as e:
            logger.exception(f"[jobs] {session_id} crashed")
            await self._mark_failed(session_id, f"Internal error: {e}")
            return
        logger.info(
            f"[jobs] {session_id} finished {job.status.value}: "
            f"{job.success_count} ok, {job.failure_count} failed"
        )

    async def _mark_failed(self, session_id: str, error: str):
        try:
            await self.store.update(session_id, status=JobStatus.FAILED, error=error)
        except Exception as e:
            # store unreachable; retention cleans the job up later
            logger.error(f"[jobs] Could not mark {session_id} failed: {e}")

    async def status(self, session_id: str) -> CrawlJob:
        job = await self.store.get(session_id)
        if job is None:
            raise SessionNotFoundError(session_id)
        return job

    async def list_sessions(self, status: JobStatus | None = None, limit: int = 20) -> list[CrawlJob]:
        jobs = (await self.store.list_all()).values()
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)[:limit]

    async def _finished_job(self, session_id: str) -> CrawlJob:
        job = await self.status(session_id)
        if job.status == JobStatus.FAILED:
            raise JobFailedError("Capture failed", job.error)
        if job.status != JobStatus.COMPLETED:
            raise JobNotReadyError(
                "Capture still in progress",
                f"{job.progress.current}/{job.progress.total} pages done",
            )
        return job

    async def build_download(self, session_id: str,
                             selected: list[str] | None = None) -> tuple[str, bytes]:
        """
        Zip a completed job. Returns (filename, archive bytes).
        Raises SessionNotFoundError, JobNotReadyError, JobFailedError or
        EmptyArchiveError; the session is left in the store either way.
        """
        job = await self._finished_job(session_id)
        archive = await asyncio.to_thread(package_job, job, selected)
        return archive_filename(job), archive

    async def get_image(self, session_id: str, filename: str) -> bytes:
        job = await self._finished_job(session_id)
        for page in job.pages:
            if page.filename == filename and page.success and page.image_bytes:
                return page.image_bytes
        raise SessionNotFoundError.for_file(session_id, filename)

    async def evict(self, session_id: str) -> bool:
        return await self.store.delete(session_id)

    async def wait(self, session_id: str, **kwargs) -> PollOutcome:
        """Block until the job ends (or polling gives up), reading the store."""
        coordinator = PollingCoordinator(session_id, store_fetcher(self.store), **kwargs)
        return await coordinator.run()

    async def shutdown(self):
        """Cancel running crawls. Their jobs are marked failed on the way out."""
        running = dict(self._tasks)
        for task in running.values():
            task.cancel()
        if not running:
            return
        await asyncio.gather(*running.values(), return_exceptions=True)
        # A task cancelled before it got going never wrote its own terminal state
        for session_id in running:
            job = await self.store.get(session_id)
            if job is not None and not job.status.is_terminal:
                await self._mark_failed(session_id, "Service shut down")
        logger.info(f"[jobs] Cancelled {len(running)} running crawl(s)")
