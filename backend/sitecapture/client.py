"""
Async client for the capture API: submit a site, poll until it's done,
download the zip.

    async with CaptureClient("http://localhost:8000") as client:
        outcome, archive = await client.capture("https://example.com", CrawlOptions(max_links=3))
"""

import asyncio
import logging

import httpx

from sitecapture.errors import (
    CaptureServiceError,
    EmptyArchiveError,
    InvalidURLError,
    JobFailedError,
    JobNotReadyError,
    SessionNotFoundError,
    TransientQueryError,
)
from sitecapture.models import CrawlOptions
from sitecapture.polling import PollingCoordinator, PollOutcome, PollState, http_fetcher

logger = logging.getLogger(__name__)

_ERRORS_BY_STATUS = {
    400: InvalidURLError,
    409: JobFailedError,
    422: EmptyArchiveError,
    425: JobNotReadyError,
    503: TransientQueryError,
}


def _raise_for_error(resp: httpx.Response, session_id: str | None = None):
    if resp.is_success:
        return
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get("error") or f"HTTP {resp.status_code}"
    detail = body.get("detail") if body else resp.text[:300]
    if resp.status_code == 404 and session_id:
        raise SessionNotFoundError(session_id)
    error_cls = _ERRORS_BY_STATUS.get(resp.status_code, CaptureServiceError)
    raise error_cls(message, str(detail) if detail else None)


def _options_body(options) -> dict:
    if options is None:
        return {}
    if isinstance(options, CrawlOptions):
        return options.model_dump(by_alias=True, exclude_none=True, mode="json")
    return dict(options)


class CaptureClient:
    def __init__(self, base_url: str = "http://localhost:8000",
                 http: httpx.AsyncClient | None = None, timeout: float = 60.0):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._poller: PollingCoordinator | None = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        if self._poller is not None:
            await self._poller.stop()
        if self._owns_http:
            await self.http.aclose()

    async def submit(self, url: str, options: CrawlOptions | dict | None = None) -> str:
        """POST /capture. Returns the session id."""
        resp = await self.http.post("/capture", json={"url": url, "options": _options_body(options)})
        _raise_for_error(resp)
        session_id = resp.json()["sessionId"]
        logger.info(f"[client] Submitted {url} as {session_id}")
        return session_id

    async def status(self, session_id: str) -> dict:
        resp = await self.http.get("/capture", params={"sessionId": session_id})
        _raise_for_error(resp, session_id)
        return resp.json()

    async def wait(self, session_id: str, max_attempts: int | None = None,
                   interval: float | None = None, initial_delay: float | None = None,
                   on_progress=None) -> PollOutcome:
        """Poll GET /capture until the job completes, fails or polling times out."""
        poller = self._poller = PollingCoordinator(
            session_id,
            http_fetcher(self.http),
            max_attempts=max_attempts,
            interval=interval,
            initial_delay=initial_delay,
            on_progress=on_progress,
        )
        try:
            return await poller.start()
        except asyncio.CancelledError:
            if not poller.stopped:
                raise
            return PollOutcome(
                state=PollState.STOPPED,
                attempts=poller.attempts,
                payload=poller.last_payload,
                error="Client closed",
            )
        finally:
            self._poller = None

    async def download(self, session_id: str, selected: list[str] | None = None) -> bytes:
        """GET /download. Without `selected` the server drops the session afterwards."""
        params = {"sessionId": session_id}
        if selected:
            params["selectedFiles"] = ",".join(selected)
        resp = await self.http.get("/download", params=params)
        _raise_for_error(resp, session_id)
        return resp.content

    async def capture(self, url: str, options: CrawlOptions | dict | None = None,
                      **poll_kwargs) -> tuple[PollOutcome, bytes | None]:
        """Submit, wait and download in one go. The archive is None unless the job completed."""
        session_id = await self.submit(url, options)
        outcome = await self.wait(session_id, **poll_kwargs)
        if outcome.state != PollState.COMPLETED:
            return outcome, None
        return outcome, await self.download(session_id)
