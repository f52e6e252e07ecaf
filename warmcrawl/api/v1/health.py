import json
import logging

from fastapi import APIRouter
from fastapi.responses import Response

from warmcrawl.config import settings
from warmcrawl.core.metrics import get_metrics, get_metrics_content_type
from warmcrawl.services.handler import State, crawl_handler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get(
    "/health",
    summary="Liveness check",
    description="Basic liveness probe that returns HTTP 200 if the application process is running.",
)
async def liveness():
    """Liveness probe, returns 200 if the process is running."""
    return {"status": "healthy"}


@router.get(
    "/health/ready",
    summary="Readiness check",
    description="Readiness probe reporting the crawl handler state, browser worker health and "
    "current proxy upstream. Returns HTTP 503 while the handler is parked in the failed state "
    "or the browser worker is not healthy.",
)
async def readiness():
    """Readiness probe, reports the crawl handler snapshot."""
    snapshot = crawl_handler.snapshot()

    # The browser starts lazily on the first crawl, so initial counts as ready
    if crawl_handler.state is State.initial:
        ready = True
    else:
        ready = crawl_handler.state is State.running and snapshot["worker_status"] == "healthy"

    return Response(
        content=json.dumps({"status": "ready" if ready else "not ready", "checks": snapshot}),
        status_code=200 if ready else 503,
        media_type="application/json",
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose application metrics in Prometheus exposition format. Returns HTTP 404 if metrics collection is disabled in the application configuration.",
)
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.METRICS_ENABLED:
        return Response(content="Metrics disabled", status_code=404)

    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type(),
    )
