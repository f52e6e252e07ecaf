import asyncio
import logging
import random
import time
from enum import Enum
from typing import Callable

from bs4 import BeautifulSoup, Comment
from browserforge.headers import HeaderGenerator
from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from warmcrawl.core.exceptions import BrowserNotReadyError, BrowserSessionError
from warmcrawl.core.metrics import browser_restarts_total
from warmcrawl.schemas.crawl import CrawlConfig
from warmcrawl.services.behaviors.base import CrawlCapabilities

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fingerprint data
# ---------------------------------------------------------------------------

_header_gen = HeaderGenerator()

ACCEPT_LANGUAGES = [
    "en-US,en;q=0.9",
    "en-GB,en;q=0.9",
    "en-US,en;q=0.9,de;q=0.7",
    "en-US,en;q=0.8,fr;q=0.6",
    "en-US,en;q=0.9,es;q=0.8",
]
DEFAULT_ACCEPT_LANGUAGE = ACCEPT_LANGUAGES[0]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
]

_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-background-networking",
    "--disable-sync",
    "--metrics-recording-only",
    "--disable-gpu",
]

_EVASION_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
delete navigator.__proto__.webdriver;
if (!window.chrome) { window.chrome = { runtime: {} }; }
Object.defineProperty(navigator, 'plugins', {
    get: () => [1, 2, 3, 4, 5].map(i => ({ name: 'Plugin ' + i })),
});
"""

_BLOCK_WEBRTC_SCRIPT = """
['RTCPeerConnection', 'webkitRTCPeerConnection', 'RTCDataChannel'].forEach(name => {
    try { Object.defineProperty(window, name, { get: () => undefined }); } catch (e) {}
});
"""

# Substrings of Playwright errors meaning the browser or page is gone
_BROWSER_CLOSED_PHRASES = (
    "browser has been closed",
    "target page, context or browser has been closed",
    "target crashed",
    "page crashed",
    "connection closed",
    "browser closed",
)


def is_browser_closed_error(exc: BaseException) -> bool:
    """Check if an exception indicates the browser process has died."""
    msg = str(exc).lower()
    return any(phrase in msg for phrase in _BROWSER_CLOSED_PHRASES)


async def _setup_route_blocking(
    context: BrowserContext, blocked_types: frozenset[str], request_info: list[dict]
):
    """Abort requests whose resource type is in ``blocked_types``.

    Every intercepted request is appended to ``request_info``.
    """

    async def _route_handler(route, request):
        blocked = request.resource_type in blocked_types
        request_info.append(
            {"url": request.url, "resource_type": request.resource_type, "blocked": blocked}
        )
        if blocked:
            await route.abort()
        else:
            await route.continue_()

    await context.route("**/*", _route_handler)


# ---------------------------------------------------------------------------
# Helpers bound into behavior capabilities
# ---------------------------------------------------------------------------


async def sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


async def random_sleep(min_seconds: float = 1.0, max_seconds: float = 3.0) -> None:
    await asyncio.sleep(random.uniform(min_seconds, max_seconds))


def clean_html(html: str) -> str:
    """Strip scripts, styles, comments and other non-content markup."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript", "svg", "iframe", "template", "link", "meta"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    return str(soup)


def random_user_agent() -> str:
    headers = _header_gen.generate(browser="chrome")
    for key, value in headers.items():
        if key.lower() == "user-agent":
            return value
    return ""


class WorkerStatus(str, Enum):
    healthy = "healthy"
    degraded = "degraded"
    failed = "failed"


class BrowserWorker:
    """One Chromium process with a single active page.

    All traffic goes through ``config.proxy_server``; the page context is
    replaced by ``setup_page()`` between requests while the process stays up.
    """

    def __init__(self, config: CrawlConfig):
        self.config = config
        self.status = WorkerStatus.healthy
        self.request_info: list[dict] = []
        self.page: Page | None = None
        self.logger = logging.getLogger(f"{__name__}.worker{config.worker_id}")
        self._playwright = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None

    async def setup(self) -> None:
        t0 = time.monotonic()
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=_CHROMIUM_ARGS,
            proxy={"server": self.config.proxy_server},
        )
        self._browser.on("disconnected", self._on_disconnected)
        await self.setup_page(self.config.user_agent or "")
        logger.info(
            "Browser worker %d launched in %.0fms (proxy=%s)",
            self.config.worker_id,
            (time.monotonic() - t0) * 1000,
            self.config.proxy_server,
        )

    async def setup_page(self, user_agent: str = "") -> None:
        """Close the current context and open a fresh one with the current config."""
        if self._browser is None or not self._browser.is_connected():
            raise BrowserSessionError("Browser is not running")

        cookies: list[dict] = []
        if self._context is not None:
            if not self.config.clear_cookies:
                try:
                    cookies = await self._context.cookies()
                except PlaywrightError as e:
                    logger.debug(f"Could not carry cookies to the new context: {e}")
            await self._close_context()

        headers = dict(self.config.headers)
        accept_language = self._accept_language()
        if accept_language and not any(k.lower() == "accept-language" for k in headers):
            headers["Accept-Language"] = accept_language

        context_kwargs = dict(
            viewport=random.choice(VIEWPORTS),
            ignore_https_errors=True,
            java_script_enabled=True,
            extra_http_headers=headers,
        )
        ua = self._pick_user_agent(user_agent)
        if ua:
            context_kwargs["user_agent"] = ua
        if self.config.language:
            context_kwargs["locale"] = self.config.language
        if self.config.timezone:
            context_kwargs["timezone_id"] = self.config.timezone

        context = await self._browser.new_context(**context_kwargs)
        if self.config.apply_evasion:
            await context.add_init_script(_EVASION_SCRIPT)
        if self.config.block_webrtc:
            await context.add_init_script(_BLOCK_WEBRTC_SCRIPT)

        self.request_info = []
        if self.config.intercept_types:
            await _setup_route_blocking(
                context, frozenset(self.config.intercept_types), self.request_info
            )

        cookies.extend(self.config.cookies)
        if cookies:
            await context.add_cookies(cookies)

        page = await context.new_page()
        page.set_default_navigation_timeout(self.config.default_navigation_timeout)
        page.set_default_timeout(self.config.request_timeout)
        page.on("crash", self._on_crash)

        self._context = context
        self.page = page
        self.status = WorkerStatus.healthy

    def capabilities(self) -> CrawlCapabilities:
        if self.page is None:
            raise BrowserNotReadyError("Browser worker has no page, call setup() first")
        return CrawlCapabilities(
            page=self.page,
            config=self.config,
            logger=self.logger,
            sleep=sleep,
            random_sleep=random_sleep,
            clean_html=clean_html,
        )

    async def cleanup(self) -> None:
        self.status = WorkerStatus.failed
        await self._close_context()
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.warning(f"Browser close failed: {e}")
            self._browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError as e:
                logger.warning(f"Playwright stop failed: {e}")
            self._playwright = None
        logger.info("Browser worker %d cleaned up", self.config.worker_id)

    async def _close_context(self) -> None:
        if self._context is None:
            return
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.debug(f"Context close failed: {e}")
        self._context = None
        self.page = None

    def _pick_user_agent(self, user_agent: str) -> str:
        if user_agent:
            return user_agent
        if self.config.random_user_agent:
            return random_user_agent()
        return self.config.user_agent or ""

    def _accept_language(self) -> str:
        if self.config.random_accept_language:
            return random.choice(ACCEPT_LANGUAGES)
        if self.config.default_accept_language:
            return DEFAULT_ACCEPT_LANGUAGE
        return ""

    def _on_crash(self, page: Page) -> None:
        logger.warning("Page crashed in browser worker %d", self.config.worker_id)
        self.status = WorkerStatus.degraded

    def _on_disconnected(self, browser: Browser) -> None:
        if self.status is not WorkerStatus.failed:
            logger.warning("Browser worker %d disconnected", self.config.worker_id)
        self.status = WorkerStatus.failed


WorkerFactory = Callable[[CrawlConfig], BrowserWorker]


class BrowserSession:
    """Owns the single live browser worker."""

    def __init__(self, worker_factory: WorkerFactory = BrowserWorker):
        self._factory = worker_factory
        self.worker: BrowserWorker | None = None

    @property
    def status(self) -> WorkerStatus:
        if self.worker is None:
            return WorkerStatus.failed
        return self.worker.status

    async def setup(self, config: CrawlConfig) -> bool:
        """Create and start a worker if none is usable. Returns True if one was created.

        A worker whose browser disconnected is cleaned up and replaced.
        """
        if self.worker is not None:
            if self.worker.status is not WorkerStatus.failed:
                return False
            logger.warning("Browser worker is gone, replacing it")
            dead, self.worker = self.worker, None
            await dead.cleanup()
        worker = self._factory(config)
        try:
            await worker.setup()
        except BaseException:
            await worker.cleanup()
            raise
        self.worker = worker
        return True

    async def restart(self, config: CrawlConfig) -> None:
        """Tear down the current worker and start a new one.

        References to the previous worker or its page must not be used
        afterwards.
        """
        logger.info("Attempting to restart browser worker.")
        t0 = time.monotonic()
        old, self.worker = self.worker, None
        if old is not None:
            await old.cleanup()
        try:
            await self.setup(config)
        except Exception:
            browser_restarts_total.labels(outcome="error").inc()
            raise
        browser_restarts_total.labels(outcome="ok").inc()
        logger.info("Restarted browser worker in %.0fms.", (time.monotonic() - t0) * 1000)

    async def shutdown(self) -> None:
        if self.worker is not None:
            worker, self.worker = self.worker, None
            await worker.cleanup()
