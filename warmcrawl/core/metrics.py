from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Request / item counters
# ---------------------------------------------------------------------------
crawl_requests_total = Counter(
    "crawl_requests_total",
    "Total number of crawl requests by final status",
    ["status"],
)
crawl_items_total = Counter(
    "crawl_items_total",
    "Total number of crawled items by outcome",
    ["crawler", "outcome"],
)
crawl_blocks_detected_total = Counter(
    "crawl_blocks_detected_total",
    "Item failures matching a proxy/block signature",
    ["signature"],
)

# ---------------------------------------------------------------------------
# Histograms
# ---------------------------------------------------------------------------
crawl_request_duration_seconds = Histogram(
    "crawl_request_duration_seconds",
    "Wall time of a whole crawl request",
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300],
)
crawl_item_duration_seconds = Histogram(
    "crawl_item_duration_seconds",
    "Time spent crawling a single item",
    ["crawler"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60],
)

# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------
browser_restarts_total = Counter(
    "browser_restarts_total",
    "Number of browser session restarts",
    ["outcome"],
)
proxy_restarts_total = Counter(
    "proxy_restarts_total",
    "Number of forward proxy restarts",
    ["upstream"],
)
proxy_active_connections = Gauge(
    "proxy_active_connections",
    "Connections currently open through the forward proxy",
)
handler_state = Gauge(
    "handler_state",
    "Crawl handler state (0=initial, 1=running, 2=failed)",
)

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
behavior_fetches_total = Counter(
    "behavior_fetches_total",
    "Behavior recipe loads by outcome",
    ["crawler", "outcome"],
)
archive_uploads_total = Counter(
    "archive_uploads_total",
    "Result archive attempts by outcome",
    ["status"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
