import pytest
from pydantic import ValidationError

from sitecapture.models import CapturedPage, CrawlJob, CrawlOptions, JobStatus, WaitStrategy


def test_options_fall_back_to_settings(settings):
    opts = CrawlOptions(max_links=2).resolved(settings)

    assert opts.max_links == 2
    assert opts.max_depth == settings.max_depth
    assert opts.wait_until == WaitStrategy.NETWORK_IDLE
    assert opts.flow_keywords == settings.flow_keywords

    capture = opts.capture_options(settings)
    assert capture.viewport.width == 800
    assert capture.timeout_ms == 5000
    assert capture.hard_timeout == 10.0


def test_options_accept_camel_case_and_browser_wait_names():
    opts = CrawlOptions.model_validate({"maxLinks": 3, "waitUntil": "domcontentloaded", "captureFlow": True})

    assert opts.max_links == 3
    assert opts.wait_until == WaitStrategy.DOM_READY
    assert opts.wait_until.playwright_value == "domcontentloaded"
    assert opts.capture_flow is True


def test_options_bounds():
    with pytest.raises(ValidationError):
        CrawlOptions(max_depth=9)
    with pytest.raises(ValidationError):
        CrawlOptions.model_validate({"waitUntil": "whenever"})


def test_status_payload_counts_and_hides_images():
    job = CrawlJob(
        session_id="capture_1",
        base_url="https://example.com/",
        status=JobStatus.FAILED,
        error="Browser failed to start",
        pages=[
            CapturedPage(url="https://example.com/", filename="01_a.png", success=True, order=1, image_bytes=b"x"),
            CapturedPage(url="https://example.com/b", filename="02_b.png", success=False, error="timeout: slow", order=2),
        ],
    )

    payload = job.status_payload()

    assert (payload["successCount"], payload["failureCount"]) == (1, 1)
    assert payload["error"] == "Browser failed to start"
    assert payload["pages"][1]["error"] == "timeout: slow"
    assert "imageBytes" not in payload["pages"][0]
    assert "pages" not in job.status_payload(include_pages=False)


def test_image_bytes_survive_json_round_trip():
    page = CapturedPage(url="https://example.com/", filename="01_a.png", success=True, order=1,
                        image_bytes=b"\x89PNG\x00\xff")

    restored = CapturedPage.model_validate(page.model_dump(mode="json"))

    assert restored.image_bytes == b"\x89PNG\x00\xff"
