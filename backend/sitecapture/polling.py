"""
Polling Coordinator: wait for a capture job to reach a terminal state.

idle -> waiting (initial delay) -> polling -> completed | failed | timed-out

Each polling round asks `fetch_status(session_id)` for the job's status
payload. A transient query error (network, 5xx) uses up an attempt and the
round is retried; any other query error, a missing session included, fails
immediately. After max_attempts rounds without a terminal status the
coordinator gives up as timed-out. stop() cancels the pending sleep or
request, and nothing is reported after it returns.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from sitecapture.config import get_settings
from sitecapture.errors import CaptureServiceError, SessionNotFoundError, TransientQueryError
from sitecapture.models import JobStatus

logger = logging.getLogger(__name__)

StatusFetcher = Callable[[str], Awaitable[dict]]


class PollState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    STOPPED = "stopped"

    @property
    def is_final(self) -> bool:
        return self not in (PollState.IDLE, PollState.WAITING, PollState.POLLING)


@dataclass
class PollOutcome:
    """What the caller sees: completed, failed or timed-out (or stopped)."""
    state: PollState
    attempts: int = 0
    payload: Optional[dict] = None  # last status payload received
    error: Optional[str] = None


class PollingCoordinator:
    def __init__(self, session_id: str, fetch_status: StatusFetcher,
                 max_attempts: int | None = None, interval: float | None = None,
                 initial_delay: float | None = None,
                 on_progress: Callable[[dict], Any] | None = None):
        settings = get_settings()
        self.session_id = session_id
        self.fetch_status = fetch_status
        self.max_attempts = max_attempts if max_attempts is not None else settings.poll_max_attempts
        self.interval = interval if interval is not None else settings.poll_interval
        self.initial_delay = initial_delay if initial_delay is not None else settings.poll_initial_delay
        self.on_progress = on_progress

        self.state = PollState.IDLE
        self.attempts = 0
        self.last_payload: dict | None = None
        self.last_error: str | None = None
        self._task: asyncio.Task | None = None
        self._stopped = False

    def _set(self, state: PollState):
        logger.debug(f"[poll] {self.session_id}: {self.state.value} -> {state.value}")
        self.state = state

    def _end(self, state: PollState, error: str | None = None) -> PollOutcome:
        self._set(state)
        if state == PollState.COMPLETED:
            logger.info(f"[poll] {self.session_id}: completed after {self.attempts} attempt(s)")
        else:
            logger.warning(f"[poll] {self.session_id}: {state.value} after {self.attempts} attempt(s): {error}")
        return PollOutcome(state=state, attempts=self.attempts, payload=self.last_payload, error=error)

    async def _report(self, payload: dict):
        if self.on_progress is None or self._stopped:
            return
        result = self.on_progress(payload)
        if inspect.isawaitable(result):
            await result

    async def run(self) -> PollOutcome:
        if self._stopped and self.state in (PollState.IDLE, PollState.STOPPED) and not self.attempts:
            return self._end(PollState.STOPPED, error="Stopped before polling began")
        if self.state != PollState.IDLE:
            raise RuntimeError(f"Coordinator for {self.session_id} already ran ({self.state.value})")
        borrowed = self._task is None
        if borrowed:
            # Awaited directly: stop() cancels the caller's task
            self._task = asyncio.current_task()

        try:
            self._set(PollState.WAITING)
            if self.initial_delay > 0:
                await asyncio.sleep(self.initial_delay)

            self._set(PollState.POLLING)
            while self.attempts < self.max_attempts:
                self.attempts += 1
                try:
                    payload = await self.fetch_status(self.session_id)
                except TransientQueryError as e:
                    self.last_error = f"{e.message}: {e.detail}" if e.detail else e.message
                    logger.warning(
                        f"[poll] {self.session_id}: attempt {self.attempts}/{self.max_attempts} "
                        f"failed, will retry ({self.last_error})"
                    )
                except CaptureServiceError as e:
                    # Not found / expired: polling again can't help
                    return self._end(PollState.FAILED, error=e.message)
                except Exception as e:
                    return self._end(PollState.FAILED, error=f"Status query failed: {e}")
                else:
                    self.last_payload = payload
                    self.last_error = None
                    await self._report(payload)
                    status = payload.get("status")
                    if status == JobStatus.COMPLETED.value:
                        return self._end(PollState.COMPLETED)
                    if status == JobStatus.FAILED.value:
                        return self._end(PollState.FAILED, error=payload.get("error") or "Capture failed")

                if self.attempts < self.max_attempts:
                    await asyncio.sleep(self.interval)

            error = self.last_error or (
                f"Still processing after {self.max_attempts} attempts"
            )
            return self._end(PollState.TIMED_OUT, error=error)
        except asyncio.CancelledError:
            self.state = PollState.STOPPED
            raise
        finally:
            if borrowed:
                self._task = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> asyncio.Task:
        """Run in the background. Await the task for the PollOutcome."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"poll-{self.session_id}")
        return self._task

    async def stop(self):
        """Cancel polling. Returns once the pending timer/request is gone."""
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                await asyncio.gather(task, return_exceptions=True)
        if not self.state.is_final:
            self.state = PollState.STOPPED
        logger.info(f"[poll] {self.session_id}: stopped in state {self.state.value}")


# ---------------------------------------------------------------------------
# Status fetchers
# ---------------------------------------------------------------------------

def store_fetcher(store) -> StatusFetcher:
    """Poll a JobStore directly (same process as the orchestrator)."""
    async def fetch(session_id: str) -> dict:
        job = await store.get(session_id)
        if job is None:
            raise SessionNotFoundError(session_id)
        return job.status_payload(include_pages=False)
    return fetch


def http_fetcher(client: httpx.AsyncClient, base_url: str = "") -> StatusFetcher:
    """Poll GET /capture over HTTP."""
    endpoint = f"{base_url.rstrip('/')}/capture"

    async def fetch(session_id: str) -> dict:
        try:
            resp = await client.get(endpoint, params={"sessionId": session_id})
        except httpx.TransportError as e:
            raise TransientQueryError("Status request failed", str(e) or type(e).__name__)

        if resp.status_code == 404:
            raise SessionNotFoundError(session_id)
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientQueryError(f"Status endpoint returned HTTP {resp.status_code}", resp.text[:300])
        if resp.status_code != 200:
            raise CaptureServiceError(f"Status endpoint returned HTTP {resp.status_code}", resp.text[:300])
        return resp.json()
    return fetch
