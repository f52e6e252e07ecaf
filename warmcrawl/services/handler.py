"""Persistent crawl handler.

Keeps one browser worker and one forward proxy alive across requests. Every
request merges its overrides into the sticky config, resolves the crawler,
recycles the page context, swaps the proxy to the requested upstream and then
crawls the items one by one. Item failures are reported inline; anything that
escapes the item loop is an internal error and triggers a browser restart.
"""

import asyncio
import logging
import time
import traceback
from enum import Enum
from typing import Any

from pydantic import ValidationError

from warmcrawl.config import settings
from warmcrawl.core.exceptions import (
    BrowserSessionError,
    InvalidProxyError,
    UnsupportedProxyError,
)
from warmcrawl.core.logging_config import set_package_log_level
from warmcrawl.core.metrics import (
    crawl_blocks_detected_total,
    crawl_item_duration_seconds,
    crawl_items_total,
    crawl_request_duration_seconds,
    crawl_requests_total,
    handler_state,
)
from warmcrawl.middleware.request_id import get_request_id
from warmcrawl.schemas.crawl import (
    STATUS_FAILED,
    STATUS_INTERNAL_ERROR,
    CrawlConfig,
    CrawlError,
    CrawlRejected,
    CrawlRequest,
    CrawlResponse,
    SearchMetadata,
    merge_config,
    utc_now_iso,
)
from warmcrawl.services.archive import ResultArchiver, build_object_store
from warmcrawl.services.behaviors import BEHAVIORS, BehaviorCache, get_entry
from warmcrawl.services.browser import BrowserSession, WorkerStatus, is_browser_closed_error
from warmcrawl.services.proxy import ProxySession, parse_upstream

logger = logging.getLogger(__name__)

# Error substrings that mean the proxy failed or the target blocked us
BLOCK_SIGNATURES = (
    "ERR_PROXY_CONNECTION_FAILED",
    "ERR_TUNNEL_CONNECTION_FAILED",
    "ERR_CONNECTION_RESET",
    "ERR_CONNECTION_CLOSED",
    "ERR_CONNECTION_REFUSED",
    "ERR_CONNECTION_TIMED_OUT",
    "ERR_EMPTY_RESPONSE",
    "ERR_TIMED_OUT",
    "ERR_NAME_NOT_RESOLVED",
    "ERR_HTTP2_PROTOCOL_ERROR",
    "captcha detected",
    "Request blocked/detected",
)


def detect_block(message: str) -> list[str]:
    """Return every block signature contained in ``message``."""
    return [needle for needle in BLOCK_SIGNATURES if needle in message]


class State(str, Enum):
    initial = "initial"
    running = "running"
    failed = "failed"


_STATE_GAUGE = {State.initial: 0, State.running: 1, State.failed: 2}


def _invalid_crawler_error() -> str:
    return f"invalid crawler property. Allowed: {', '.join(BEHAVIORS)}"


class PersistentCrawlHandler:
    """Serializes crawl requests over one warm browser and one proxy."""

    def __init__(
        self,
        browser: BrowserSession | None = None,
        proxy: ProxySession | None = None,
        behaviors: BehaviorCache | None = None,
        archiver: ResultArchiver | None = None,
        max_consecutive_failures: int | None = None,
    ):
        self.browser = browser or BrowserSession()
        self.proxy = proxy or ProxySession()
        self.behaviors = behaviors or BehaviorCache()
        self.archiver = archiver if archiver is not None else ResultArchiver(build_object_store())
        self.max_consecutive_failures = (
            settings.MAX_CONSECUTIVE_FAILURES
            if max_consecutive_failures is None
            else max_consecutive_failures
        )
        self.config = CrawlConfig.default()
        self.counter = 0
        self.consecutive_failures = 0
        self.state = State.initial
        self.last_search_id: str | None = None
        self.last_request_id: str | None = None
        self._lock = asyncio.Lock()
        handler_state.set(_STATE_GAUGE[self.state])

    def _set_state(self, state: State) -> None:
        if state is not self.state:
            logger.info("Crawl handler state %s -> %s", self.state.value, state.value)
        self.state = state
        handler_state.set(_STATE_GAUGE[state])

    async def handle(self, body: CrawlRequest | dict[str, Any]) -> dict[str, Any]:
        """Run one crawl request and return the response envelope or an error dict."""
        if not isinstance(body, CrawlRequest):
            try:
                body = CrawlRequest.model_validate(body)
            except ValidationError as e:
                crawl_requests_total.labels(status="rejected").inc()
                return CrawlRejected(error=f"invalid request: {e}").model_dump()

        async with self._lock:
            return await self._run(body)

    async def _run(self, request: CrawlRequest) -> dict[str, Any]:
        if self.state is State.failed:
            crawl_requests_total.labels(status="rejected").inc()
            return CrawlRejected(
                error=(
                    f"crawl handler is in failed state after {self.consecutive_failures} "
                    "consecutive internal errors, reset required"
                )
            ).model_dump()

        t0 = time.monotonic()
        metadata = SearchMetadata.create(request.items, request.crawler, settings.RESULTS_BASE_URL)
        self.last_search_id = metadata.id
        self.last_request_id = get_request_id() or None
        logger.info(
            "Crawl %s started: crawler=%s items=%d request_id=%s",
            metadata.id,
            request.crawler,
            len(request.items),
            self.last_request_id or "-",
        )

        self.config = merge_config(self.config, request)
        set_package_log_level(self.config.loglevel)

        behavior = await self.behaviors.resolve(request.crawler, no_cache=request.no_cache)
        if behavior is None:
            crawl_requests_total.labels(status="rejected").inc()
            return CrawlRejected(error=_invalid_crawler_error()).model_dump()

        try:
            parse_upstream(request.proxy)
        except (InvalidProxyError, UnsupportedProxyError) as e:
            crawl_requests_total.labels(status="rejected").inc()
            return CrawlRejected(error=str(e)).model_dump()

        entry = get_entry(request.crawler)
        results: list[Any] = []
        crawling_seconds = 0.0
        internal_error = False
        archived = False

        try:
            created = await self.browser.setup(self.config)
            if self.state is State.initial:
                self._set_state(State.running)
            worker = self.browser.worker
            worker.config = self.config
            # A freshly created worker already has a page built from this config
            if self.counter > 0 and not created:
                await worker.setup_page(request.user_agent or "")

            await self.proxy.restart(request.proxy)

            for i, item in enumerate(request.items):
                if self.browser.status is not WorkerStatus.healthy:
                    logger.warning(
                        "[%d] Browser worker is %s, skipping %d remaining items",
                        i,
                        self.browser.status.value,
                        len(request.items) - i,
                    )
                    break

                t_item = time.monotonic()
                try:
                    result = await behavior.crawl(item, worker.capabilities())
                except BrowserSessionError:
                    raise
                except Exception as e:
                    if is_browser_closed_error(e):
                        raise BrowserSessionError(str(e)) from e
                    elapsed = time.monotonic() - t_item
                    crawling_seconds += elapsed
                    metadata.status = STATUS_FAILED
                    logger.error(f"[{i}] Failed to crawl item {item} with error: {e}")
                    for signature in detect_block(str(e)):
                        logger.info(f"Request blocked/detected in browser worker: {signature}")
                        crawl_blocks_detected_total.labels(signature=signature).inc()
                    crawl_items_total.labels(crawler=request.crawler, outcome="error").inc()
                    results.append(
                        CrawlError(
                            error_message=f"{type(e).__name__}: {e}",
                            error_trace=traceback.format_exc(),
                        ).model_dump()
                    )
                    continue

                elapsed = time.monotonic() - t_item
                crawling_seconds += elapsed
                crawl_item_duration_seconds.labels(crawler=request.crawler).observe(elapsed)
                crawl_items_total.labels(crawler=request.crawler, outcome="ok").inc()
                logger.debug(f"[{i}] Successfully crawled item {item} in {elapsed * 1000:.0f}ms")
                if self.config.intercept_types:
                    logger.debug(f"[{i}] Intercepted requests: {worker.request_info}")
                results.append(result)

                # Objects are keyed by the search id, so only the first result is stored
                if entry.archive_results and self.archiver.enabled and not archived:
                    self.archiver.schedule(metadata.id, result)
                    archived = True

            self.counter += 1
        except Exception as e:
            internal_error = True
            metadata.status = f"{STATUS_INTERNAL_ERROR}: {e}"
            logger.exception(f"Internal error while handling crawler {request.crawler}")

        metadata.processed_at = utc_now_iso()
        metadata.total_time_taken = round(time.monotonic() - t0, 3)
        metadata.time_taken_crawling = round(crawling_seconds, 3)

        # A disconnected browser stops the loop without raising
        browser_lost = not internal_error and self.browser.status is WorkerStatus.failed
        if browser_lost:
            logger.warning(f"Browser worker disconnected during crawl {metadata.id}")

        restart_failed = False
        if internal_error or browser_lost or request.restart_browser:
            restart_failed = not await self._restart_browser()

        self._record_outcome(internal_error or restart_failed)

        crawl_request_duration_seconds.observe(time.monotonic() - t0)
        crawl_requests_total.labels(status=metadata.status.split(":", 1)[0]).inc()
        return CrawlResponse(search_metadata=metadata, results=results).model_dump()

    async def _restart_browser(self) -> bool:
        try:
            await self.browser.restart(self.config)
        except Exception as e:
            logger.error(f"Browser restart failed: {e}")
            return False
        if self.state is State.initial:
            self._set_state(State.running)
        return True

    def _record_outcome(self, failed: bool) -> None:
        if not failed:
            self.consecutive_failures = 0
            return
        self.consecutive_failures += 1
        if 0 < self.max_consecutive_failures <= self.consecutive_failures:
            logger.error(
                "Crawl handler failed %d times in a row, rejecting requests until reset",
                self.consecutive_failures,
            )
            self._set_state(State.failed)

    async def reset(self) -> dict[str, Any]:
        """Restart the browser and return to running. Raises if the restart fails."""
        async with self._lock:
            logger.info("Resetting crawl handler (state=%s)", self.state.value)
            await self.browser.restart(self.config)
            self.consecutive_failures = 0
            self._set_state(State.running)
            return self.snapshot()

    async def shutdown(self) -> None:
        async with self._lock:
            await self.browser.shutdown()
            await self.proxy.shutdown()
            await self.archiver.drain()

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "counter": self.counter,
            "consecutive_failures": self.consecutive_failures,
            "worker_status": self.browser.status.value,
            "proxy_upstream": self.proxy.upstream,
            "cached_behaviors": self.behaviors.cached_names,
            "archive_pending": self.archiver.pending,
            "last_search_id": self.last_search_id,
            "last_request_id": self.last_request_id,
        }


crawl_handler = PersistentCrawlHandler()
