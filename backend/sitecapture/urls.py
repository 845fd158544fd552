"""URL validation, normalization and same-origin helpers."""

import re
from urllib.parse import urljoin, urlsplit, urlunsplit

from sitecapture.errors import InvalidURLError

_DEFAULT_PORTS = {"http": 80, "https": 443}
_HOST_RE = re.compile(r"^(\[[0-9a-f:.]+\]|[a-z0-9_.-]+)$")
_SKIP_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "blob:", "about:")


def _netloc(scheme: str, host: str, port: int | None) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    if port is None or port == _DEFAULT_PORTS.get(scheme):
        return host
    return f"{host}:{port}"


def _split(url: str):
    """urlsplit plus the checks every absolute http(s) URL must pass. Raises ValueError."""
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"unsupported scheme: {parts.scheme or '(none)'}")
    host = (parts.hostname or "").lower()
    if not host or not _HOST_RE.match(host if ":" not in host else f"[{host}]"):
        raise ValueError(f"invalid host in {url!r}")
    port = parts.port  # raises ValueError on a bad port
    return parts, scheme, host, port


def normalize_seed_url(raw: str) -> str:
    """
    Validate a caller-supplied seed URL and return its canonical form.
    A bare host gets https://. The query is kept, the fragment dropped.
    """
    if not raw or not raw.strip():
        raise InvalidURLError("URL is required")
    url = raw.strip()
    if "://" not in url:
        url = "https://" + url
    try:
        parts, scheme, host, port = _split(url)
    except ValueError as e:
        raise InvalidURLError("Invalid URL format", str(e))
    return urlunsplit((scheme, _netloc(scheme, host, port), parts.path or "/", parts.query, ""))


def dedup_key(url: str) -> str:
    """Canonical URL with query and fragment stripped. Raises ValueError."""
    parts, scheme, host, port = _split(url)
    return urlunsplit((scheme, _netloc(scheme, host, port), parts.path or "/", "", ""))


def origin_of(url: str) -> str:
    """scheme://host[:port] with default ports elided. Raises ValueError."""
    _, scheme, host, port = _split(url)
    return f"{scheme}://{_netloc(scheme, host, port)}"


def resolve_same_origin(href: str, page_url: str, base_origin: str) -> str | None:
    """
    Resolve an anchor href against the page URL. Returns the dedup key when
    the result is an http(s) URL on `base_origin`, otherwise None. Malformed
    hrefs also yield None.
    """
    if not href:
        return None
    href = href.strip()
    if not href or href.lower().startswith(_SKIP_SCHEMES):
        return None
    try:
        absolute = urljoin(page_url, href)
        if origin_of(absolute) != base_origin:
            return None
        return dedup_key(absolute)
    except ValueError:
        return None


def slugify_url(url: str, max_length: int = 50) -> str:
    """Filesystem-safe fragment for screenshot filenames."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "page"
    name = re.sub(r"[^a-zA-Z0-9_-]", "", parts.path.replace("/", "_")).strip("_")
    if not name:
        name = re.sub(r"[^a-zA-Z0-9_-]", "", (parts.hostname or "").replace(".", "_"))
    return name[:max_length] or "page"
