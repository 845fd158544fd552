"""
Job Store: crawl job state keyed by session id.

JobStore holds the shared rules (per-key locking, forward-only status,
eviction-tolerant updates, retention purge). Backends only implement the
four storage primitives. Records are replaced, never edited in place, so a
reader always sees a whole record.
"""

import asyncio
import logging
from datetime import timedelta

from sitecapture.config import get_settings
from sitecapture.models import CrawlJob, merge_job, utcnow

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    # -- backend primitives -------------------------------------------------

    async def _load(self, session_id: str) -> CrawlJob | None:
        raise NotImplementedError

    async def _save(self, session_id: str, job: CrawlJob) -> None:
        raise NotImplementedError

    async def _remove(self, session_id: str) -> bool:
        raise NotImplementedError

    async def _load_all(self) -> dict[str, CrawlJob]:
        raise NotImplementedError

    # -- public contract ----------------------------------------------------

    async def create(self, session_id: str, job: CrawlJob) -> None:
        async with self._lock(session_id):
            await self._save(session_id, job)
        logger.info(f"[store] Created session {session_id} ({job.status.value})")

    async def get(self, session_id: str) -> CrawlJob | None:
        return await self._load(session_id)

    async def update(self, session_id: str, **changes) -> CrawlJob | None:
        """
        Apply a partial update. A missing session (evicted mid-flight) is a
        logged no-op and returns None.
        """
        async with self._lock(session_id):
            job = await self._load(session_id)
            if job is None:
                logger.warning(f"[store] Update for unknown session {session_id} ignored")
                self._locks.pop(session_id, None)
                return None
            updated = merge_job(job, changes)
            await self._save(session_id, updated)
            return updated

    async def delete(self, session_id: str) -> bool:
        async with self._lock(session_id):
            removed = await self._remove(session_id)
        self._locks.pop(session_id, None)
        if removed:
            logger.info(f"[store] Deleted session {session_id}")
        return removed

    async def list_all(self) -> dict[str, CrawlJob]:
        return await self._load_all()

    async def purge_expired(self, max_age_seconds: float) -> int:
        """Delete jobs created more than `max_age_seconds` ago. Returns the count."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        purged = 0
        for session_id, job in (await self._load_all()).items():
            if job.created_at >= cutoff:
                continue
            async with self._lock(session_id):
                current = await self._load(session_id)
                if current is not None and current.created_at < cutoff:
                    await self._remove(session_id)
                    purged += 1
            self._locks.pop(session_id, None)
        if purged:
            logger.info(f"[store] Purged {purged} expired session(s)")
        return purged


class MemoryJobStore(JobStore):
    """Process-local store. Fine for a single-worker deployment."""

    def __init__(self):
        super().__init__()
        self._jobs: dict[str, CrawlJob] = {}

    @staticmethod
    def _snapshot(job: CrawlJob) -> CrawlJob:
        return job.model_copy(update={"pages": list(job.pages)})

    async def _load(self, session_id):
        job = self._jobs.get(session_id)
        return self._snapshot(job) if job is not None else None

    async def _save(self, session_id, job):
        self._jobs[session_id] = self._snapshot(job)

    async def _remove(self, session_id):
        return self._jobs.pop(session_id, None) is not None

    async def _load_all(self):
        return {sid: self._snapshot(job) for sid, job in self._jobs.items()}

    def __len__(self):
        return len(self._jobs)


def _get_client(settings):
    """Get a Supabase client. Raises if credentials are missing."""
    url = settings.supabase_url
    key = settings.supabase_key
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in .env")
    from supabase import create_client
    return create_client(url, key)


class SupabaseJobStore(JobStore):
    """
    Jobs persisted to a Supabase table so several processes can share them.

    Table columns: session_id (unique), status, error, created_at,
    updated_at, result (jsonb: the whole job, images base64-encoded).
    The client is synchronous, so calls run in a worker thread.
    """

    def __init__(self, settings=None, client=None):
        super().__init__()
        self.settings = settings or get_settings()
        self.table = self.settings.supabase_table
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_client(self.settings)
        return self._client

    @staticmethod
    def _to_row(job: CrawlJob) -> dict:
        return {
            "session_id": job.session_id,
            "status": job.status.value,
            "error": job.error,
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
            "result": job.model_dump(mode="json"),
        }

    @staticmethod
    def _from_row(row: dict) -> CrawlJob:
        return CrawlJob.model_validate(row["result"])

    async def _load(self, session_id):
        def _select():
            result = (
                self.client.table(self.table)
                .select("*")
                .eq("session_id", session_id)
                .limit(1)
                .execute()
            )
            return result.data

        rows = await asyncio.to_thread(_select)
        return self._from_row(rows[0]) if rows else None

    async def _save(self, session_id, job):
        row = self._to_row(job)

        def _upsert():
            self.client.table(self.table).upsert(row, on_conflict="session_id").execute()

        await asyncio.to_thread(_upsert)

    async def _remove(self, session_id):
        def _delete():
            result = self.client.table(self.table).delete().eq("session_id", session_id).execute()
            return result.data

        return bool(await asyncio.to_thread(_delete))

    async def _load_all(self):
        def _select_all():
            result = (
                self.client.table(self.table)
                .select("*")
                .order("created_at", desc=True)
                .execute()
            )
            return result.data

        rows = await asyncio.to_thread(_select_all)
        return {row["session_id"]: self._from_row(row) for row in rows or []}


def build_store(settings=None) -> JobStore:
    settings = settings or get_settings()
    if settings.store_backend == "supabase":
        logger.info("[store] Using Supabase job store")
        return SupabaseJobStore(settings)
    if settings.store_backend != "memory":
        raise ValueError(f"Unknown store backend: {settings.store_backend}")
    return MemoryJobStore()


# ---------------------------------------------------------------------------
# Background retention sweep: purge expired sessions every sweep_interval
# ---------------------------------------------------------------------------

async def _sweep_loop(store: JobStore, settings):
    while True:
        await asyncio.sleep(settings.sweep_interval)
        try:
            await store.purge_expired(settings.session_retention)
        except Exception as e:
            logger.warning(f"[store] Retention sweep failed: {e}")


def start_retention_sweeper(store: JobStore, settings=None) -> asyncio.Task:
    """Start the retention sweep task. Call from server lifespan."""
    return asyncio.create_task(_sweep_loop(store, settings or get_settings()))
