from fastapi import APIRouter

from warmcrawl.api.v1 import crawl

api_router = APIRouter(prefix="/v1")

api_router.include_router(crawl.router, prefix="/crawl", tags=["Crawl"])
