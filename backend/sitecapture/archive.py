"""
Archive Packager: zip up a job's screenshots.

Output is reproducible: entries keep their given order, every member gets
the same fixed timestamp and the compression level is a module constant.
Zero-length images (failed captures) are left out; if nothing is left to
pack that's an EmptyArchiveError rather than an empty zip.
"""

import io
import json
import logging
import zipfile
from urllib.parse import urlsplit

from sitecapture.errors import EmptyArchiveError
from sitecapture.models import CrawlJob

logger = logging.getLogger(__name__)

COMPRESSION = zipfile.ZIP_DEFLATED
COMPRESS_LEVEL = 6
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)  # earliest date zip can store

METADATA_NAME = "metadata.json"
SUMMARY_NAME = "capture_summary.txt"
FAILURES_NAME = "failures.txt"
_RESERVED = {METADATA_NAME, SUMMARY_NAME, FAILURES_NAME}


def _write(zf: zipfile.ZipFile, name: str, data: bytes):
    info = zipfile.ZipInfo(name, date_time=ZIP_DATE_TIME)
    info.compress_type = COMPRESSION
    info.external_attr = 0o644 << 16
    zf.writestr(info, data, compress_type=COMPRESSION, compresslevel=COMPRESS_LEVEL)


def pack(entries: list[tuple[str, bytes]], metadata: dict,
         text_files: dict[str, str] | None = None) -> bytes:
    """
    Build a zip from (filename, bytes) entries plus metadata.json and any
    extra text files. Raises EmptyArchiveError when no entry has content.
    """
    images = []
    seen = set()
    for filename, data in entries:
        if not data:
            logger.info(f"[archive] Skipping {filename} (empty)")
            continue
        if filename in seen or filename in _RESERVED:
            logger.warning(f"[archive] Skipping duplicate entry {filename}")
            continue
        seen.add(filename)
        images.append((filename, data))

    if not images:
        raise EmptyArchiveError(
            "Nothing to download",
            "No successful screenshots to package",
        )

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=COMPRESSION, compresslevel=COMPRESS_LEVEL) as zf:
        for filename, data in images:
            _write(zf, filename, data)
        _write(
            zf,
            METADATA_NAME,
            json.dumps(metadata, indent=2, sort_keys=True, ensure_ascii=False, default=str).encode("utf-8"),
        )
        for name, text in (text_files or {}).items():
            _write(zf, name, text.encode("utf-8"))

    archive = buf.getvalue()
    logger.info(f"[archive] Packed {len(images)} screenshot(s), {len(archive)} bytes")
    return archive


# ---------------------------------------------------------------------------
# Job -> archive
# ---------------------------------------------------------------------------

def job_entries(job: CrawlJob, selected: list[str] | None = None) -> list[tuple[str, bytes]]:
    """Successful captures in page order, optionally only the `selected` filenames."""
    wanted = set(selected) if selected else None
    return [
        (p.filename, p.image_bytes)
        for p in job.pages
        if p.success and (wanted is None or p.filename in wanted)
    ]


def job_metadata(job: CrawlJob, entries: list[tuple[str, bytes]]) -> dict:
    included = {name for name, data in entries if data}
    return {
        "sessionId": job.session_id,
        "baseUrl": job.base_url,
        "status": job.status.value,
        "createdAt": job.created_at.isoformat(),
        "totalPages": len(job.pages),
        "successCount": job.success_count,
        "failureCount": job.failure_count,
        "files": [name for name, data in entries if data],
        "pages": [
            {
                "order": p.order,
                "url": p.url,
                "title": p.title,
                "filename": p.filename,
                "depth": p.depth,
                "success": p.success,
                "included": p.filename in included,
                "width": p.width,
                "height": p.height,
                "durationMs": p.duration_ms,
                "flowStep": p.flow_step,
                "error": p.error,
            }
            for p in job.pages
        ],
    }


def summary_text(job: CrawlJob, entries: list[tuple[str, bytes]]) -> str:
    lines = [
        "Screenshot capture summary",
        "==========================",
        f"Site:        {job.base_url}",
        f"Session:     {job.session_id}",
        f"Captured at: {job.created_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        f"Pages:       {len(job.pages)} ({job.success_count} ok, {job.failure_count} failed)",
        f"In archive:  {len(entries)}",
        "",
    ]
    for p in job.pages:
        mark = "OK  " if p.success else "FAIL"
        lines.append(f"{p.order:3d}. [{mark}] {p.filename}  {p.url}")
    return "\n".join(lines) + "\n"


def failures_text(job: CrawlJob) -> str | None:
    failed = [p for p in job.pages if not p.success]
    if not failed:
        return None
    lines = [f"{p.order:3d}. {p.url}\n     {p.error}" for p in failed]
    return "Failed captures\n===============\n" + "\n".join(lines) + "\n"


def package_job(job: CrawlJob, selected: list[str] | None = None) -> bytes:
    entries = job_entries(job, selected)
    text_files = {SUMMARY_NAME: summary_text(job, entries)}
    failures = failures_text(job)
    if failures:
        text_files[FAILURES_NAME] = failures
    return pack(entries, job_metadata(job, entries), text_files)


def archive_filename(job: CrawlJob) -> str:
    host = urlsplit(job.base_url).hostname or "site"
    return f"screenshots-{host}-{job.session_id}.zip"
