import logging
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from sitecapture.browser import browser_pool
from sitecapture.config import get_settings
from sitecapture.errors import CaptureServiceError
from sitecapture.jobs import CaptureService
from sitecapture.models import CrawlOptions, JobStatus
from sitecapture.store import start_retention_sweeper

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class CaptureRequest(BaseModel):
    url: str
    options: CrawlOptions | None = None


class CaptureResponse(BaseModel):
    sessionId: str
    status: str


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(settings=None, service: CaptureService | None = None) -> FastAPI:
    settings = settings or get_settings()
    service = service or CaptureService(browser=browser_pool, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: retention sweep
        sweeper = None
        try:
            sweeper = start_retention_sweeper(service.store, settings)
        except Exception as e:
            logger.warning(f"[retention] Failed to start: {e}")
        yield
        if sweeper:
            sweeper.cancel()
        await service.shutdown()
        await service.browser.close()

    app = FastAPI(title="Site Capture API", lifespan=lifespan)
    app.state.service = service

    cors_headers = {
        "Access-Control-Allow-Origin": settings.cors_allow_origin,
        "Access-Control-Allow-Methods": settings.cors_allow_methods,
        "Access-Control-Allow-Headers": settings.cors_allow_headers,
    }

    # CORSMiddleware answers 400 to preflights for headers outside its allow-list
    @app.middleware("http")
    async def cors(request: Request, call_next):
        # Preflight always succeeds, whatever path or headers it asks about
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=cors_headers)
        response = await call_next(request)
        response.headers.update(cors_headers)
        return response

    @app.exception_handler(CaptureServiceError)
    async def capture_error(request: Request, exc: CaptureServiceError):
        if exc.status_code >= 500:
            logger.error(f"[api] {request.method} {request.url.path}: {exc.message} ({exc.detail})")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or err['loc'][0]}: {err['msg']}"
            for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": "Invalid request", "detail": problems})

    # ---------------------------------------------------------------------------
    # Routes
    # ---------------------------------------------------------------------------

    @app.get("/")
    def root():
        return {"message": "Site Capture API is running"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/capture", response_model=CaptureResponse, status_code=202)
    async def start_capture(req: CaptureRequest):
        """Start crawling and screenshotting a site. Poll GET /capture for progress."""
        job = await service.submit(req.url, req.options)
        return CaptureResponse(sessionId=job.session_id, status=job.status.value)

    @app.get("/capture")
    async def capture_status(session_id: str = Query(..., alias="sessionId", min_length=1)):
        job = await service.status(session_id)
        return job.status_payload()

    @app.get("/capture-sessions")
    async def list_capture_sessions(status: JobStatus | None = None, limit: int = 20):
        """Recent sessions, newest first. Page lists are left out."""
        jobs = await service.list_sessions(status=status, limit=max(1, min(limit, 100)))
        return {"sessions": [j.status_payload(include_pages=False) for j in jobs]}

    @app.get("/download")
    async def download(background_tasks: BackgroundTasks,
                       session_id: str = Query(..., alias="sessionId", min_length=1),
                       selected_files: str | None = Query(None, alias="selectedFiles")):
        """
        Zip of a completed session's screenshots. A full download removes the
        session once the response has been sent; picking files with
        selectedFiles (comma-separated filenames) leaves it in place.
        """
        selected = [f.strip() for f in selected_files.split(",") if f.strip()] if selected_files else None
        filename, archive = await service.build_download(session_id, selected)
        if not selected:
            background_tasks.add_task(service.evict, session_id)
        logger.info(f"[api] Download {session_id}: {len(archive)} bytes as {filename}")
        return Response(
            content=archive,
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/screenshot")
    async def screenshot(session_id: str = Query(..., alias="sessionId", min_length=1),
                         filename: str = Query(..., min_length=1)):
        """One PNG from a completed session."""
        image = await service.get_image(session_id, filename)
        return Response(
            content=image,
            media_type="image/png",
            headers={"Content-Disposition": f'inline; filename="{filename}"'},
        )

    return app


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
