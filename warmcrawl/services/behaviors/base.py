"""Behavior contract shared by every crawler.

A behavior knows how to turn one crawl item into a result using a live page.
It never owns the page: the handler passes a capability bundle on every call,
so the same behavior instance works across browser restarts.

Behaviors are parameterized by a ``BehaviorRecipe``: plain JSON data (URL
templates, selectors, waits) loaded from the recipe source. Recipes carry no
code; the logic lives in the statically registered classes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, Field

from warmcrawl.schemas.crawl import CrawlConfig


class BehaviorRecipe(BaseModel):
    name: str
    version: str = "1"
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "load"
    settle_ms: int = Field(default=0, ge=0)  # extra wait after navigation
    url_template: str | None = None  # e.g. "https://www.bing.com/search?q={query}"
    num_pages: int = Field(default=1, ge=1, le=10)
    selectors: dict[str, str] = {}
    include_html: bool = True

    model_config = {"extra": "ignore"}


@dataclass
class CrawlCapabilities:
    """Live session primitives handed to a behavior for one request."""

    page: Any  # playwright.async_api.Page
    config: CrawlConfig
    logger: logging.Logger
    sleep: Callable[[float], Awaitable[None]]
    random_sleep: Callable[[float, float], Awaitable[None]]
    clean_html: Callable[[str], str]

    @property
    def options(self) -> dict[str, Any]:
        return self.config.options


class Behavior:
    """Base class for crawl behaviors."""

    name = "base"

    def __init__(self, recipe: BehaviorRecipe):
        self.recipe = recipe

    async def crawl(self, item: str, caps: CrawlCapabilities) -> Any:
        raise NotImplementedError

    async def _goto(self, caps: CrawlCapabilities, url: str):
        """Navigate and wait per recipe. Returns the Playwright response."""
        response = await caps.page.goto(
            url,
            wait_until=self.recipe.wait_until,
            timeout=caps.config.default_navigation_timeout,
        )
        if self.recipe.settle_ms:
            await caps.sleep(self.recipe.settle_ms / 1000)
        return response

    def __repr__(self) -> str:
        return f"<{type(self).__name__} recipe={self.recipe.name} v{self.recipe.version}>"


def normalize_url(item: str) -> str:
    """Prepend https:// if no protocol is present."""
    item = item.strip()
    if item and not item.startswith(("http://", "https://", "about:", "data:")):
        item = f"https://{item}"
    return item
