"""Named crawler registry and the in-memory recipe cache.

The set of crawler names is fixed here. Each name maps to a behavior class
and to a recipe file; the recipe is fetched from BEHAVIOR_SOURCE_URL on first
use (or read from the packaged recipes when no source is configured) and kept
in memory until a request asks for ``no_cache`` or ``invalidate()`` is called.
"""

import logging
from dataclasses import dataclass
from importlib import resources

import httpx
from pydantic import ValidationError

from warmcrawl.config import settings
from warmcrawl.core.metrics import behavior_fetches_total
from warmcrawl.services.behaviors.base import Behavior, BehaviorRecipe
from warmcrawl.services.behaviors.probes import FingerprintBehavior, WebRtcBehavior
from warmcrawl.services.behaviors.render import RawBehavior, RenderBehavior
from warmcrawl.services.behaviors.serp import SerpBehavior

logger = logging.getLogger(__name__)

RECIPES_PACKAGE = "warmcrawl.services.behaviors.recipes"


@dataclass(frozen=True)
class BehaviorEntry:
    name: str
    filename: str
    behavior_cls: type[Behavior]
    archive_results: bool = False


BEHAVIORS: dict[str, BehaviorEntry] = {
    entry.name: entry
    for entry in (
        BehaviorEntry("render", "render.json", RenderBehavior),
        BehaviorEntry("google", "google.json", SerpBehavior, archive_results=True),
        BehaviorEntry("bing", "bing.json", SerpBehavior, archive_results=True),
        BehaviorEntry("raw", "raw.json", RawBehavior),
        BehaviorEntry("fp", "fp.json", FingerprintBehavior),
        BehaviorEntry("webrtc", "webrtc.json", WebRtcBehavior),
    )
}


def get_entry(name: str) -> BehaviorEntry | None:
    return BEHAVIORS.get(name)


class BehaviorCache:
    """Resolves crawler names to ready behaviors, caching their recipes."""

    def __init__(
        self,
        source_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._source_url = (
            settings.BEHAVIOR_SOURCE_URL if source_url is None else source_url
        ).rstrip("/")
        self._timeout = settings.BEHAVIOR_FETCH_TIMEOUT if timeout is None else timeout
        self._transport = transport
        self._recipes: dict[str, BehaviorRecipe] = {}

    @property
    def cached_names(self) -> list[str]:
        return sorted(self._recipes)

    async def resolve(self, name: str, no_cache: bool = False) -> Behavior | None:
        """Return a behavior for ``name`` or None if it cannot be resolved.

        Unknown names return None without any network access. Fetch failures
        are logged and also return None.
        """
        entry = BEHAVIORS.get(name)
        if entry is None:
            return None

        recipe = self._recipes.get(name)
        if recipe is not None and not no_cache:
            logger.info("Using cache for crawler %s", name)
            return entry.behavior_cls(recipe)

        recipe = await self._load(entry)
        if recipe is None:
            return None
        self._recipes[name] = recipe
        return entry.behavior_cls(recipe)

    def invalidate(self, name: str | None = None) -> None:
        """Drop one cached recipe, or all of them."""
        if name is None:
            self._recipes.clear()
        else:
            self._recipes.pop(name, None)

    async def _load(self, entry: BehaviorEntry) -> BehaviorRecipe | None:
        if not self._source_url:
            return self._load_packaged(entry)

        url = f"{self._source_url}/{entry.filename}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
            recipe = BehaviorRecipe.model_validate_json(resp.content)
        except (httpx.HTTPError, ValidationError) as e:
            logger.error("Failed obtaining crawler recipe from %s: %s", url, e)
            behavior_fetches_total.labels(crawler=entry.name, outcome="error").inc()
            return None

        logger.info("Downloaded %d bytes of recipe from %s", len(resp.content), url)
        behavior_fetches_total.labels(crawler=entry.name, outcome="fetched").inc()
        return recipe

    def _load_packaged(self, entry: BehaviorEntry) -> BehaviorRecipe | None:
        try:
            raw = resources.files(RECIPES_PACKAGE).joinpath(entry.filename).read_text("utf-8")
            recipe = BehaviorRecipe.model_validate_json(raw)
        except (OSError, ValidationError) as e:
            logger.error("Packaged recipe %s is unusable: %s", entry.filename, e)
            behavior_fetches_total.labels(crawler=entry.name, outcome="error").inc()
            return None
        behavior_fetches_total.labels(crawler=entry.name, outcome="packaged").inc()
        return recipe
