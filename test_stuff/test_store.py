import asyncio
from datetime import timedelta

import pytest

from sitecapture.models import CapturedPage, CrawlJob, JobStatus, Progress, utcnow
from sitecapture.store import MemoryJobStore, SupabaseJobStore, build_store, start_retention_sweeper


def new_job(session_id="capture_1", **kwargs):
    return CrawlJob(session_id=session_id, base_url="https://example.com/", **kwargs)


def page(order, success=True):
    return CapturedPage(
        url=f"https://example.com/{order}",
        filename=f"{order:02d}_p.png",
        success=success,
        error=None if success else "timeout: too slow",
        order=order,
        image_bytes=b"png" if success else b"",
    )


async def test_create_get_delete():
    store = MemoryJobStore()
    await store.create("capture_1", new_job())

    assert (await store.get("capture_1")).base_url == "https://example.com/"
    assert await store.delete("capture_1") is True
    assert await store.get("capture_1") is None
    assert await store.delete("capture_1") is False


async def test_update_unknown_session_is_a_noop(caplog):
    store = MemoryJobStore()

    assert await store.update("capture_gone", status=JobStatus.COMPLETED) is None
    assert "capture_gone" in caplog.text
    assert len(store) == 0


async def test_updates_after_eviction_leave_no_locks_behind():
    store = MemoryJobStore()
    await store.create("capture_1", new_job())
    await store.delete("capture_1")

    for i in range(100):
        await store.update(f"capture_gone_{i}", progress=Progress(current=1, total=2))
    await store.update("capture_1", status=JobStatus.COMPLETED)

    assert store._locks == {}


async def test_readers_get_snapshots_not_live_records():
    store = MemoryJobStore()
    await store.create("capture_1", new_job(status=JobStatus.PROCESSING))
    seen = await store.get("capture_1")

    await store.update("capture_1", pages=[page(1)], progress=Progress(current=1, total=3))

    assert seen.pages == []
    assert len((await store.get("capture_1")).pages) == 1


async def test_status_never_leaves_a_terminal_state():
    store = MemoryJobStore()
    await store.create("capture_1", new_job(status=JobStatus.PROCESSING))
    await store.update("capture_1", status=JobStatus.COMPLETED)

    job = await store.update("capture_1", status=JobStatus.PROCESSING)

    assert job.status == JobStatus.COMPLETED


async def test_status_does_not_regress():
    store = MemoryJobStore()
    await store.create("capture_1", new_job(status=JobStatus.PROCESSING))

    job = await store.update("capture_1", status=JobStatus.PENDING)

    assert job.status == JobStatus.PROCESSING


async def test_progress_current_never_decreases():
    store = MemoryJobStore()
    await store.create("capture_1", new_job(progress=Progress(current=4, total=6)))

    job = await store.update("capture_1", progress=Progress(current=2, total=6))

    assert job.progress.current == 4


async def test_error_only_kept_on_failed_jobs():
    store = MemoryJobStore()
    await store.create("capture_1", new_job(status=JobStatus.PROCESSING))

    job = await store.update("capture_1", error="boom")
    assert job.error is None

    job = await store.update("capture_1", status=JobStatus.FAILED, error="boom")
    assert job.error == "boom"


async def test_list_all():
    store = MemoryJobStore()
    await store.create("capture_1", new_job("capture_1"))
    await store.create("capture_2", new_job("capture_2"))

    assert set(await store.list_all()) == {"capture_1", "capture_2"}


async def test_purge_expired_only_removes_old_sessions():
    store = MemoryJobStore()
    await store.create("capture_old", new_job("capture_old", created_at=utcnow() - timedelta(hours=2)))
    await store.create("capture_new", new_job("capture_new"))

    purged = await store.purge_expired(3600)

    assert purged == 1
    assert await store.get("capture_old") is None
    assert await store.get("capture_new") is not None


async def test_purge_waits_for_in_flight_update():
    store = MemoryJobStore()
    old = utcnow() - timedelta(hours=2)
    await store.create("capture_old", new_job("capture_old", created_at=old))

    async with store._lock("capture_old"):
        purge = asyncio.create_task(store.purge_expired(3600))
        await asyncio.sleep(0.01)
        # Still ours while the lock is held
        assert await store.get("capture_old") is not None
        assert not purge.done()

    assert await purge == 1


async def test_retention_sweeper_runs_periodically(settings):
    store = MemoryJobStore()
    await store.create("capture_old", new_job("capture_old", created_at=utcnow() - timedelta(hours=2)))
    settings.sweep_interval = 0.01

    task = start_retention_sweeper(store, settings)
    try:
        for _ in range(100):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        task.cancel()

    assert len(store) == 0


def test_build_store_backends(settings):
    assert isinstance(build_store(settings), MemoryJobStore)

    settings.store_backend = "supabase"
    assert isinstance(build_store(settings), SupabaseJobStore)

    settings.store_backend = "redis"
    with pytest.raises(ValueError):
        build_store(settings)


# ---------------------------------------------------------------------------
# Supabase backend against a fake client
# ---------------------------------------------------------------------------

class FakeQuery:
    def __init__(self, table, op, payload=None):
        self.table = table
        self.op = op
        self.payload = payload
        self.filters = {}
        self.desc = False

    def eq(self, column, value):
        self.filters[column] = value
        return self

    def limit(self, n):
        return self

    def order(self, column, desc=False):
        self.desc = desc
        return self

    def execute(self):
        rows = self.table.rows
        matching = [r for r in rows.values() if all(r[k] == v for k, v in self.filters.items())]
        if self.op == "select":
            data = sorted(matching, key=lambda r: r["created_at"], reverse=self.desc)
        elif self.op == "upsert":
            rows[self.payload["session_id"]] = self.payload
            data = [self.payload]
        else:
            for r in matching:
                del rows[r["session_id"]]
            data = matching
        return type("Result", (), {"data": data})()


class FakeTable:
    def __init__(self):
        self.rows = {}

    def select(self, columns):
        return FakeQuery(self, "select")

    def upsert(self, row, on_conflict=None):
        assert on_conflict == "session_id"
        return FakeQuery(self, "upsert", row)

    def delete(self):
        return FakeQuery(self, "delete")


class FakeSupabase:
    def __init__(self):
        self.tables = {}

    def table(self, name):
        return self.tables.setdefault(name, FakeTable())


async def test_supabase_store_round_trips_jobs(settings):
    client = FakeSupabase()
    store = SupabaseJobStore(settings, client=client)
    await store.create("capture_1", new_job(status=JobStatus.PROCESSING))

    await store.update("capture_1", pages=[page(1), page(2, success=False)], status=JobStatus.COMPLETED)

    row = client.tables["capture_sessions"].rows["capture_1"]
    assert row["status"] == "completed"
    job = await store.get("capture_1")
    assert job.pages[0].image_bytes == b"png"
    assert job.failure_count == 1
    assert list(await store.list_all()) == ["capture_1"]
    assert await store.delete("capture_1") is True
    assert await store.get("capture_1") is None
