class WarmCrawlError(Exception):
    """Base class for errors raised inside the crawl service."""


class BrowserSessionError(WarmCrawlError):
    """The browser process or its page died while an item was being crawled.

    Unlike an ordinary item failure this invalidates the whole session, so the
    handler reports the request as an internal error and restarts the browser.
    """


class BrowserNotReadyError(WarmCrawlError):
    """A page operation was requested before the worker was set up."""


class UnsupportedProxyError(WarmCrawlError):
    """The upstream proxy URL uses a scheme the forward proxy cannot chain to."""

    def __init__(self, url: str, scheme: str):
        self.url = url
        self.scheme = scheme
        super().__init__(f"Unsupported upstream proxy {url} (scheme '{scheme}')")


class InvalidProxyError(WarmCrawlError):
    """The upstream proxy URL cannot be parsed (bad port, missing host)."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid upstream proxy {url}: {reason}")
