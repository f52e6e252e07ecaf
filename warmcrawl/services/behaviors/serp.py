"""Search engine result page crawler.

One class serves every engine; the recipe supplies the search URL template
and the CSS selectors for result blocks, pagination and captcha pages.

Recipe selectors:
- result: container of one organic result (required)
- title / link / snippet: looked up inside the result container
- next_page: link to the following result page
- total_results: element holding the "About N results" text
- captcha: present only when the engine served a block page
"""

import logging
from urllib.parse import quote_plus

from warmcrawl.core.exceptions import WarmCrawlError
from warmcrawl.services.behaviors.base import Behavior, CrawlCapabilities

logger = logging.getLogger(__name__)

_JS_EXTRACT_RESULTS = """
(nodes, sel) => nodes.map(n => {
    const t = sel.title ? n.querySelector(sel.title) : null;
    const l = sel.link ? n.querySelector(sel.link) : null;
    const s = sel.snippet ? n.querySelector(sel.snippet) : null;
    return {
        title: t ? t.innerText.trim() : '',
        link: l ? l.href : '',
        snippet: s ? s.innerText.trim() : '',
    };
}).filter(r => r.link)
"""


class BlockedPageError(WarmCrawlError):
    """The search engine answered with a captcha or block page."""


class SerpBehavior(Behavior):
    name = "serp"

    async def crawl(self, item: str, caps: CrawlCapabilities) -> list[dict]:
        if not self.recipe.url_template:
            raise ValueError(f"Recipe '{self.recipe.name}' has no url_template")

        selectors = self.recipe.selectors
        num_pages = int(caps.options.get("num_pages", self.recipe.num_pages))
        url = self.recipe.url_template.format(query=quote_plus(item))
        await self._goto(caps, url)

        pages = []
        for page_num in range(1, num_pages + 1):
            if await self._is_blocked(caps):
                raise BlockedPageError(
                    f"Request blocked/detected: captcha detected at {caps.page.url}"
                )
            pages.append(await self._parse_page(caps, item, page_num))

            next_sel = selectors.get("next_page")
            if page_num == num_pages or not next_sel:
                break
            if await caps.page.query_selector(next_sel) is None:
                caps.logger.debug("No next page after page %d for %r", page_num, item)
                break
            await caps.random_sleep(0.5, 1.5)
            await caps.page.click(next_sel)
            await caps.page.wait_for_load_state(
                "domcontentloaded" if self.recipe.wait_until == "commit" else self.recipe.wait_until
            )

        return pages

    async def _is_blocked(self, caps: CrawlCapabilities) -> bool:
        captcha = self.recipe.selectors.get("captcha")
        if not captcha:
            return False
        return await caps.page.query_selector(captcha) is not None

    async def _parse_page(self, caps: CrawlCapabilities, query: str, page_num: int) -> dict:
        selectors = self.recipe.selectors
        results = []
        if selectors.get("result"):
            raw = await caps.page.eval_on_selector_all(
                selectors["result"],
                _JS_EXTRACT_RESULTS,
                {
                    "title": selectors.get("title"),
                    "link": selectors.get("link"),
                    "snippet": selectors.get("snippet"),
                },
            )
            results = [{"rank": i + 1, **r} for i, r in enumerate(raw)]

        total_results = ""
        if selectors.get("total_results"):
            node = await caps.page.query_selector(selectors["total_results"])
            if node is not None:
                total_results = (await node.inner_text()).strip()

        page = {
            "url": caps.page.url,
            "search_information": {
                "query_displayed": query,
                "page_num": page_num,
                "total_results": total_results,
                "organic_results_state": "Results for exact spelling" if results else "No results",
            },
            "results": results,
        }
        if self.recipe.include_html:
            page["html"] = await caps.page.content()
        return page
