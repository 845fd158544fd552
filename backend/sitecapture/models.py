"""
Crawl job data model.

A CrawlJob is created per submitted seed URL and owns an ordered list of
CapturedPage records. Options objects carry their defaults from Settings so
every entry point resolves them the same way.
"""

import base64
import logging
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


class WaitStrategy(str, Enum):
    DOM_READY = "dom-ready"
    LOAD_COMPLETE = "load-complete"
    NETWORK_IDLE = "network-idle"

    @classmethod
    def _missing_(cls, value):
        # Accept the browser-native spellings older clients send
        aliases = {
            "domcontentloaded": cls.DOM_READY,
            "load": cls.LOAD_COMPLETE,
            "networkidle": cls.NETWORK_IDLE,
            "networkidle0": cls.NETWORK_IDLE,
            "networkidle2": cls.NETWORK_IDLE,
        }
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None

    @property
    def playwright_value(self) -> str:
        return {
            WaitStrategy.DOM_READY: "domcontentloaded",
            WaitStrategy.LOAD_COMPLETE: "load",
            WaitStrategy.NETWORK_IDLE: "networkidle",
        }[self]


class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    CRASH = "crash"
    NAVIGATION = "navigation"
    SCREENSHOT = "screenshot"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Viewport(_CamelModel):
    width: int = Field(1920, ge=1)
    height: int = Field(1080, ge=1)


class CaptureOptions(_CamelModel):
    """Per-page capture policy handed to the Capture Worker."""

    timeout_ms: int = 30000
    wait_strategy: WaitStrategy = WaitStrategy.NETWORK_IDLE
    viewport: Viewport = Field(default_factory=Viewport)
    full_page: bool = True
    post_load_delay_ms: int = 1000
    lazy_scroll: bool = True
    scroll_distance: int = 400
    scroll_delay_ms: int = 100
    scroll_max_iterations: int = 50

    @property
    def hard_timeout(self) -> float:
        """Seconds allowed for navigation, settle and screenshot together."""
        return (self.timeout_ms * 2 + self.post_load_delay_ms) / 1000


class CrawlOptions(_CamelModel):
    """
    Crawl request options. Any field left as None falls back to Settings
    when the options are resolved.
    """

    max_links: int | None = Field(None, ge=0, le=100)
    max_depth: int | None = Field(None, ge=0, le=5)
    timeout: int | None = Field(None, ge=1000, le=300000)  # ms per page
    wait_until: WaitStrategy | None = None
    concurrency: int | None = Field(None, ge=1, le=8)
    capture_flow: bool = False
    flow_keywords: list[str] | None = None
    max_flow_steps: int | None = Field(None, ge=0, le=20)
    viewport_width: int | None = Field(None, ge=320, le=7680)
    viewport_height: int | None = Field(None, ge=240, le=4320)
    full_page: bool | None = None
    post_load_delay: int | None = Field(None, ge=0, le=60000)
    crawl_budget: float | None = Field(None, gt=0)  # seconds, whole job

    def resolved(self, settings) -> "CrawlOptions":
        defaults = {
            "max_links": settings.max_links,
            "max_depth": settings.max_depth,
            "timeout": settings.page_load_timeout,
            "wait_until": WaitStrategy(settings.wait_strategy),
            "concurrency": settings.concurrency,
            "flow_keywords": list(settings.flow_keywords),
            "max_flow_steps": settings.max_flow_steps,
            "viewport_width": settings.viewport_width,
            "viewport_height": settings.viewport_height,
            "full_page": settings.full_page,
            "post_load_delay": settings.post_load_delay,
            "crawl_budget": float(settings.crawl_budget),
        }
        updates = {k: v for k, v in defaults.items() if getattr(self, k) is None}
        return self.model_copy(update=updates)

    def capture_options(self, settings) -> CaptureOptions:
        """Per-page policy for resolved options."""
        return CaptureOptions(
            timeout_ms=self.timeout,
            wait_strategy=self.wait_until,
            viewport=Viewport(width=self.viewport_width, height=self.viewport_height),
            full_page=self.full_page,
            post_load_delay_ms=self.post_load_delay,
            lazy_scroll=settings.lazy_scroll,
            scroll_distance=settings.scroll_distance,
            scroll_delay_ms=settings.scroll_delay,
            scroll_max_iterations=settings.scroll_max_iterations,
        )


class CapturePageResult(_CamelModel):
    """Outcome of one Capture Worker call. Never raised, always returned."""

    success: bool
    url: str
    final_url: str = ""
    title: str = ""
    image: bytes = b""
    width: int = 0
    height: int = 0
    duration_ms: int = 0
    reason: FailureReason | None = None
    error: str | None = None


class CapturedPage(_CamelModel):
    url: str
    title: str = ""
    filename: str
    success: bool
    error: str | None = None
    reason: FailureReason | None = None
    order: int = Field(ge=1)
    depth: int = Field(0, ge=0)
    width: int = 0
    height: int = 0
    duration_ms: int = 0
    thumbnail: str = ""
    flow_step: int | None = None
    captured_at: datetime = Field(default_factory=utcnow)
    image_bytes: bytes = b""

    @field_serializer("image_bytes", when_used="json")
    def _encode_image(self, value: bytes) -> str:
        return base64.b64encode(value).decode()

    @field_validator("image_bytes", mode="before")
    @classmethod
    def _decode_image(cls, value):
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    def public_dict(self) -> dict:
        """Listing view: everything except the raw image."""
        return self.model_dump(mode="json", by_alias=True, exclude={"image_bytes"})


class Progress(_CamelModel):
    current: int = 0
    total: int = 0


class CrawlJob(_CamelModel):
    session_id: str
    base_url: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    pages: list[CapturedPage] = Field(default_factory=list)
    progress: Progress = Field(default_factory=Progress)
    error: str | None = None
    options: CrawlOptions | None = None

    @property
    def success_count(self) -> int:
        return sum(1 for p in self.pages if p.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for p in self.pages if not p.success)

    def status_payload(self, include_pages: bool = True) -> dict:
        """Body of GET /capture."""
        payload = {
            "sessionId": self.session_id,
            "baseUrl": self.base_url,
            "status": self.status.value,
            "progress": self.progress.model_dump(by_alias=True),
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "createdAt": self.created_at.isoformat(),
        }
        if include_pages:
            payload["pages"] = [p.public_dict() for p in self.pages]
        if self.error:
            payload["error"] = self.error
        return payload


def merge_job(job: CrawlJob, changes: dict) -> CrawlJob:
    """
    Apply a partial update under the job's transition rules and return a new
    record. Status only moves forward and never leaves a terminal state,
    progress.current never decreases, and error is kept only on failed jobs.
    """
    changes = dict(changes)

    new_status = changes.get("status")
    if new_status is not None:
        new_status = JobStatus(new_status)
        if job.status.is_terminal and new_status != job.status:
            logger.warning(
                f"[job] {job.session_id}: ignoring {job.status.value} -> {new_status.value}"
            )
            new_status = job.status
        elif _STATUS_RANK[new_status] < _STATUS_RANK[job.status]:
            logger.warning(
                f"[job] {job.session_id}: ignoring regression "
                f"{job.status.value} -> {new_status.value}"
            )
            new_status = job.status
        changes["status"] = new_status

    progress = changes.get("progress")
    if progress is not None:
        if isinstance(progress, dict):
            progress = Progress(**progress)
        changes["progress"] = Progress(
            current=max(job.progress.current, progress.current),
            total=progress.total,
        )

    status = changes.get("status", job.status)
    if status != JobStatus.FAILED:
        changes["error"] = None

    changes["updated_at"] = utcnow()
    return job.model_copy(update=changes)


def new_session_id() -> str:
    return f"capture_{uuid4().hex}"
