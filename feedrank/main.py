from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from feedrank.constants import DEFAULT_PAGE_LIMIT, READ_FILTER_UNREAD, TOPIC_ALL
from feedrank.errors import StoreError
from feedrank.logging_config import get_logger
from feedrank.service import FeedService

logger = get_logger(__name__)


class FeedCreateRequest(BaseModel):
    url: str
    title: str = ""


class ReadRequest(BaseModel):
    read: bool = True


class EngagementRequest(BaseModel):
    event_type: str
    duration_ms: Optional[int] = None


def create_app(service: FeedService | None = None, run_background: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = service or FeedService.from_config()
        app.state.service = svc
        if run_background:
            svc.start_background()
        logger.info("api started", background=run_background)
        try:
            yield
        finally:
            if service is None:
                await svc.aclose()
            else:
                svc.stop_background()
                await svc.scheduler.wait_stopped()
            logger.info("api stopped")

    app = FastAPI(title="feedrank", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _svc() -> FeedService:
        return app.state.service

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/status")
    async def status():
        svc = _svc()
        payload = dict(svc.get_pending_status().to_dict())
        payload["ai_available"] = await svc.ai_available()
        return payload

    @app.get("/feed")
    async def ranked_feed(
        page: int = 0,
        limit: int = DEFAULT_PAGE_LIMIT,
        topic: str = TOPIC_ALL,
        similar_to: Optional[int] = Query(default=None),
        read_filter: str = READ_FILTER_UNREAD,
    ):
        try:
            result = await _svc().get_ranked_feed(page, limit, topic, similar_to, read_filter)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return result.to_dict()

    @app.post("/pending/apply")
    async def apply_pending():
        return _svc().apply_pending()

    @app.get("/feeds")
    async def list_feeds():
        return [f.to_dict() for f in _svc().list_feeds()]

    @app.post("/feeds", status_code=201)
    async def add_feed(req: FeedCreateRequest):
        try:
            feed = _svc().subscribe(req.url, req.title)
        except StoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return feed.to_dict()

    @app.delete("/feeds/{feed_id}")
    async def remove_feed(feed_id: int):
        if not _svc().unsubscribe(feed_id):
            raise HTTPException(status_code=404, detail="feed not found")
        return {"status": "success"}

    @app.post("/items/{item_id}/read")
    async def mark_read(item_id: int, req: ReadRequest | None = None):
        read = req.read if req is not None else True
        if not _svc().mark_read(item_id, read):
            raise HTTPException(status_code=404, detail="item not found")
        return {"status": "success"}

    @app.post("/items/{item_id}/engagement")
    async def record_engagement(item_id: int, req: EngagementRequest):
        try:
            found = _svc().record_engagement(item_id, req.event_type, req.duration_ms)
        except StoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not found:
            raise HTTPException(status_code=404, detail="item not found")
        return {"status": "success"}

    @app.get("/items/{item_id}/cluster")
    async def item_cluster(item_id: int):
        cluster = _svc().get_cluster_for_item(item_id)
        if cluster is None:
            raise HTTPException(status_code=404, detail="item is not clustered")
        return cluster.to_dict()

    @app.get("/clusters/{cluster_id}")
    async def get_cluster(cluster_id: int):
        cluster = _svc().get_cluster(cluster_id)
        if cluster is None:
            raise HTTPException(status_code=404, detail="cluster not found")
        return cluster.to_dict()

    return app
