"""Crawl behaviors: page rendering, search engines and browser probes."""

from warmcrawl.services.behaviors.base import Behavior, BehaviorRecipe, CrawlCapabilities
from warmcrawl.services.behaviors.registry import (
    BEHAVIORS,
    BehaviorCache,
    BehaviorEntry,
    get_entry,
)

__all__ = [
    "Behavior", "BehaviorRecipe", "CrawlCapabilities",
    "BEHAVIORS", "BehaviorCache", "BehaviorEntry", "get_entry",
]
