from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    supabase_url: str = ""
    supabase_key: str = ""

    # Browser
    headless: bool = True
    browser_args: list[str] = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
    ]
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/131.0.0.0 Safari/537.36"
    )
    browser_idle_timeout: int = 300  # seconds with no open context before closing
    browser_max_age: int = 1800  # seconds before the browser is recycled
    stealth: bool = True

    # Capture defaults
    page_load_timeout: int = 30000  # milliseconds
    viewport_width: int = 1920
    viewport_height: int = 1080
    post_load_delay: int = 1000  # milliseconds
    wait_strategy: str = "network-idle"
    full_page: bool = True
    lazy_scroll: bool = True

    # Scroll-to-bottom pacing
    scroll_distance: int = 400  # pixels per step
    scroll_delay: int = 100  # milliseconds between steps
    scroll_max_iterations: int = 50

    # Crawl defaults
    max_links: int = 5
    max_depth: int = 1
    concurrency: int = 1
    crawl_budget: int = 300  # seconds, whole job
    max_flow_steps: int = 5
    flow_keywords: list[str] = ["다음", "시작", "Next", "Start", "계속", "Continue"]

    # Thumbnails
    thumbnail_width: int = 200
    thumbnail_height: int = 150
    thumbnail_quality: int = 85

    # Job store
    store_backend: str = "memory"  # "memory" or "supabase"
    supabase_table: str = "capture_sessions"
    session_retention: int = 3600  # seconds
    sweep_interval: int = 300  # seconds

    # Polling
    poll_max_attempts: int = 60
    poll_interval: float = 3.0  # seconds
    poll_initial_delay: float = 2.0  # seconds

    # HTTP
    cors_allow_origin: str = "*"
    cors_allow_methods: str = "POST, GET, PUT, DELETE, OPTIONS"
    cors_allow_headers: str = "Content-Type, Authorization"

    class Config:
        # Look for .env in the repo root (two levels up from backend/sitecapture/)
        # In containers, env vars are injected directly, .env is optional
        _env_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file = _env_path if os.path.exists(_env_path) else None
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
