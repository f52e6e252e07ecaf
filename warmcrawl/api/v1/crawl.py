import logging
from typing import Any

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from warmcrawl.services.handler import State, crawl_handler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "",
    summary="Crawl items",
    description="Crawl every item with the named crawler on the warm browser session. "
    "Returns search metadata and one result (or error record) per item. Configuration "
    "overrides in the body are sticky and apply to later requests too.",
)
async def crawl(body: dict[str, Any] = Body(...)):
    result = await crawl_handler.handle(body)
    if "error" in result:
        status_code = 503 if crawl_handler.state is State.failed else 400
        return JSONResponse(content=result, status_code=status_code)
    return result


@router.post(
    "/reset",
    summary="Reset the crawl handler",
    description="Restart the browser session and clear the failure count. This is the only "
    "way out of the failed state.",
)
async def reset():
    try:
        return await crawl_handler.reset()
    except Exception as e:
        logger.error(f"Crawl handler reset failed: {e}")
        return JSONResponse(
            content={"error": f"reset failed: {e}", **crawl_handler.snapshot()},
            status_code=503,
        )
