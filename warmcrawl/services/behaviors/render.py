import logging

from warmcrawl.services.behaviors.base import Behavior, CrawlCapabilities, normalize_url

logger = logging.getLogger(__name__)


class RenderBehavior(Behavior):
    """Load the item URL in the browser and return the rendered document."""

    name = "render"

    async def crawl(self, item: str, caps: CrawlCapabilities) -> dict:
        url = normalize_url(item)
        response = await self._goto(caps, url)
        html = await caps.page.content()
        if caps.options.get("clean_html"):
            html = caps.clean_html(html)

        result = {
            "url": caps.page.url,
            "status_code": response.status if response else None,
            "title": await caps.page.title(),
        }
        if self.recipe.include_html:
            result["html"] = html
        caps.logger.debug("Rendered %s (%d chars)", url, len(html))
        return result


class RawBehavior(Behavior):
    """Fetch the item URL without rendering, through the page's network stack.

    Uses the context's request client, so the active proxy, headers and
    cookies apply exactly as they would to a navigation.
    """

    name = "raw"

    async def crawl(self, item: str, caps: CrawlCapabilities) -> dict:
        url = normalize_url(item)
        response = await caps.page.context.request.get(
            url,
            headers=caps.config.headers or None,
            timeout=caps.config.request_timeout,
        )
        body = await response.text()
        return {
            "url": response.url,
            "status_code": response.status,
            "headers": response.headers,
            "html": body,
        }
