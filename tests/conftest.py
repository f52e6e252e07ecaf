"""Shared fakes and fixtures for the crawl handler tests.

The fakes stand in for Playwright and the forward proxy so the handler's
sequencing can be tested without launching a browser or binding ports.
"""

import logging

import pytest
from httpx import ASGITransport, AsyncClient

from warmcrawl.schemas.crawl import CrawlConfig
from warmcrawl.services.archive import ResultArchiver
from warmcrawl.services.behaviors import BEHAVIORS, Behavior, BehaviorRecipe, CrawlCapabilities
from warmcrawl.services.browser import BrowserSession, WorkerStatus, clean_html
from warmcrawl.services.handler import PersistentCrawlHandler
from warmcrawl.services.proxy import ProxySession


class FakeBrowserWorker:
    """Records lifecycle calls instead of driving Chromium."""

    def __init__(self, config: CrawlConfig, events: list, fail_setup: bool = False):
        self.config = config
        self.status = WorkerStatus.healthy
        self.page = object()
        self.request_info: list[dict] = []
        self.events = events
        self.fail_setup = fail_setup
        self.setup_page_calls: list[str] = []
        self.cleaned_up = False

    async def setup(self):
        self.events.append("browser.setup")
        if self.fail_setup:
            raise RuntimeError("chromium failed to launch")

    async def setup_page(self, user_agent: str = ""):
        self.events.append("browser.setup_page")
        self.setup_page_calls.append(user_agent)
        self.status = WorkerStatus.healthy

    def capabilities(self) -> CrawlCapabilities:
        async def _sleep(seconds):
            return None

        async def _random_sleep(min_seconds=1.0, max_seconds=3.0):
            return None

        return CrawlCapabilities(
            page=self.page,
            config=self.config,
            logger=logging.getLogger("tests.worker"),
            sleep=_sleep,
            random_sleep=_random_sleep,
            clean_html=clean_html,
        )

    async def cleanup(self):
        self.events.append("browser.cleanup")
        self.cleaned_up = True
        self.status = WorkerStatus.failed


class FakeWorkerFactory:
    def __init__(self, events: list):
        self.events = events
        self.workers: list[FakeBrowserWorker] = []
        self.fail_setup = False

    def __call__(self, config: CrawlConfig) -> FakeBrowserWorker:
        worker = FakeBrowserWorker(config, self.events, fail_setup=self.fail_setup)
        self.workers.append(worker)
        return worker


class FakeProxyServer:
    def __init__(self, upstream: str | None, events: list):
        self.upstream = upstream
        self.events = events
        self.closed_with: bool | None = None

    def close_connections(self) -> int:
        return 0

    async def close(self, force: bool = False):
        self.events.append(f"proxy.close({self.upstream})")
        self.closed_with = force


class FakeProxyFactory:
    def __init__(self, events: list):
        self.events = events
        self.servers: list[FakeProxyServer] = []

    async def __call__(self, upstream: str | None, host: str, port: int) -> FakeProxyServer:
        self.events.append(f"proxy.start({upstream})")
        server = FakeProxyServer(upstream, self.events)
        self.servers.append(server)
        return server


class ScriptedBehavior(Behavior):
    """Outcome is picked by the item text.

    - ``fail:<msg>``: raises RuntimeError(msg)
    - ``crash``: raises a Playwright-style "browser has been closed" error
    - ``degrade``: succeeds, then marks the worker degraded
    - ``disconnect``: succeeds, then marks the worker failed (browser gone)
    - anything else: succeeds with a page dict including html
    """

    def __init__(self, recipe: BehaviorRecipe, worker_lookup):
        super().__init__(recipe)
        self._worker_lookup = worker_lookup
        self.seen: list[str] = []

    async def crawl(self, item: str, caps: CrawlCapabilities):
        self.seen.append(item)
        if item.startswith("fail:"):
            raise RuntimeError(item[len("fail:"):])
        if item == "crash":
            raise RuntimeError("Target page, context or browser has been closed")
        if item == "disconnect":
            self._worker_lookup().status = WorkerStatus.failed
        if item == "degrade":
            self._worker_lookup().status = WorkerStatus.degraded
        return {"item": item, "title": f"Title of {item}", "html": f"<html>{item}</html>"}


class FakeBehaviorCache:
    def __init__(self, worker_lookup):
        self._worker_lookup = worker_lookup
        self.calls: list[tuple[str, bool]] = []
        self.behaviors: dict[str, ScriptedBehavior] = {}

    @property
    def cached_names(self) -> list[str]:
        return sorted(self.behaviors)

    async def resolve(self, name: str, no_cache: bool = False):
        self.calls.append((name, no_cache))
        if name not in BEHAVIORS:
            return None
        if name not in self.behaviors or no_cache:
            self.behaviors[name] = ScriptedBehavior(BehaviorRecipe(name=name), self._worker_lookup)
        return self.behaviors[name]

    def invalidate(self, name: str | None = None):
        if name is None:
            self.behaviors.clear()
        else:
            self.behaviors.pop(name, None)


class FakeObjectStore:
    def __init__(self):
        self.objects: dict[str, tuple[bytes, str | None]] = {}

    async def upload(self, key, data, overwrite, content_type=None):
        if key in self.objects and not overwrite:
            raise FileExistsError(key)
        self.objects[key] = (data, content_type)
        return len(data)


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def workers(events) -> FakeWorkerFactory:
    return FakeWorkerFactory(events)


@pytest.fixture
def proxy_servers(events) -> FakeProxyFactory:
    return FakeProxyFactory(events)


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def handler(workers, proxy_servers, store) -> PersistentCrawlHandler:
    browser = BrowserSession(worker_factory=workers)
    return PersistentCrawlHandler(
        browser=browser,
        proxy=ProxySession(host="127.0.0.1", port=0, server_factory=proxy_servers),
        behaviors=FakeBehaviorCache(lambda: browser.worker),
        archiver=ResultArchiver(store),
        max_consecutive_failures=3,
    )


@pytest.fixture
async def client(handler, monkeypatch):
    """HTTP client bound to the app, with the module handler swapped for the fake-backed one."""
    from warmcrawl.main import app

    monkeypatch.setattr("warmcrawl.api.v1.crawl.crawl_handler", handler)
    monkeypatch.setattr("warmcrawl.api.v1.health.crawl_handler", handler)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
