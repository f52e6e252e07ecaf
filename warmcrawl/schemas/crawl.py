import hashlib
import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from warmcrawl.config import settings

STATUS_SUCCESS = "Success"
STATUS_FAILED = "Failed"
STATUS_INTERNAL_ERROR = "Internal Error"


class CrawlOverrides(BaseModel):
    """Configuration fields a caller may change per request.

    Every field here is sticky: once a request sets it, later requests keep
    the value until they override it again. ``None`` means "not provided".
    """

    loglevel: str | None = None
    options: dict[str, Any] | None = None  # passed through to the behavior
    worker_metadata: dict[str, Any] | None = None
    cookies: list[dict[str, Any]] | None = None  # Playwright cookie dicts
    headers: dict[str, str] | None = None
    user_agent: str | None = None
    random_user_agent: bool | None = None
    default_accept_language: bool | None = None
    random_accept_language: bool | None = None
    default_navigation_timeout: int | None = Field(default=None, ge=0)  # ms
    intercept_types: list[str] | None = None  # resource types to abort
    timezone: str | None = None  # IANA id, e.g. "Europe/Berlin"
    language: str | None = None  # locale, e.g. "de-DE"
    apply_evasion: bool | None = None
    block_webrtc: bool | None = None
    clear_cookies: bool | None = None

    model_config = {"extra": "ignore"}


OVERRIDABLE_FIELDS = frozenset(CrawlOverrides.model_fields)


class CrawlRequest(CrawlOverrides):
    items: list[str] = []
    crawler: str = ""
    proxy: str | None = None  # upstream proxy URL, None = direct
    no_cache: bool = False
    restart_browser: bool = False

    def overrides(self) -> dict[str, Any]:
        """Allow-listed keys the caller actually provided."""
        return self.model_dump(include=set(OVERRIDABLE_FIELDS), exclude_none=True)


class CrawlConfig(BaseModel):
    # Pinned per process, never taken from a request
    worker_id: int = 1
    headless: bool = True
    proxy_server: str = "http://127.0.0.1:8000"
    request_timeout: int = 15000  # ms

    # Request-overridable
    loglevel: str | None = None
    options: dict[str, Any] = {}
    worker_metadata: dict[str, Any] = {}
    cookies: list[dict[str, Any]] = []
    headers: dict[str, str] = {}
    user_agent: str | None = None
    random_user_agent: bool = False
    default_accept_language: bool = True
    random_accept_language: bool = False
    default_navigation_timeout: int = 30000  # ms
    intercept_types: list[str] = []
    timezone: str | None = None
    language: str | None = None
    apply_evasion: bool = True
    block_webrtc: bool = True
    clear_cookies: bool = False

    @classmethod
    def default(cls) -> "CrawlConfig":
        """Baseline configuration built from the service settings."""
        return cls(
            headless=settings.BROWSER_HEADLESS,
            proxy_server=f"http://{settings.PROXY_HOST}:{settings.PROXY_PORT}",
            request_timeout=settings.REQUEST_TIMEOUT,
            default_navigation_timeout=settings.DEFAULT_NAVIGATION_TIMEOUT,
        )


def merge_config(
    base: CrawlConfig, overrides: CrawlOverrides | dict[str, Any]
) -> CrawlConfig:
    """Return a new config with the provided allow-listed overrides applied.

    Keys outside OVERRIDABLE_FIELDS and keys whose value is None are ignored,
    so everything not overridden keeps the value from ``base``.
    """
    if isinstance(overrides, BaseModel):
        updates = overrides.model_dump(include=set(OVERRIDABLE_FIELDS), exclude_none=True)
    else:
        updates = {
            key: value
            for key, value in overrides.items()
            if key in OVERRIDABLE_FIELDS and value is not None
        }
    if not updates:
        return base
    return CrawlConfig.model_validate({**base.model_dump(), **updates})


def compute_search_id(items: list[str], crawler: str, created_at: str) -> str:
    """Deterministic fingerprint of (items, crawler name, creation timestamp)."""
    data = json.dumps(items, separators=(",", ":")) + crawler + created_at
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SearchMetadata(BaseModel):
    id: str = ""
    status: str = STATUS_SUCCESS
    json_endpoint: str = ""
    created_at: str = ""
    processed_at: str = ""
    raw_html_file: str = ""
    total_time_taken: float = 0  # seconds
    time_taken_crawling: float = 0  # seconds

    @classmethod
    def create(
        cls, items: list[str], crawler: str, results_base_url: str
    ) -> "SearchMetadata":
        created_at = utc_now_iso()
        search_id = compute_search_id(items, crawler, created_at)
        base = results_base_url.rstrip("/")
        return cls(
            id=search_id,
            created_at=created_at,
            json_endpoint=f"{base}/{search_id}.json",
            raw_html_file=f"{base}/{search_id}.html",
        )


class CrawlError(BaseModel):
    error_message: str
    error_trace: str


class CrawlResponse(BaseModel):
    search_metadata: SearchMetadata
    results: list[Any] = []


class CrawlRejected(BaseModel):
    error: str
