"""HTTP query service."""

import logging
import threading
import time
from typing import Any

import anyio
import anyio.to_thread
import uvicorn
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from convo_search import __version__
from convo_search.cache import CachedSearchEngine
from convo_search.config import Settings, get_settings
from convo_search.errors import IndexUnavailable
from convo_search.models import Index
from convo_search.searcher import SearchEngine, recency_key, result_to_dict, status_message

logger = logging.getLogger(__name__)

Engine = SearchEngine | CachedSearchEngine


class IndexHandle:
    """The process-wide reference to the active index generation.

    Readers call current() once per request and keep that engine for the
    whole request; swap() replaces the reference for later readers only.
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._swap_lock = threading.Lock()

    def current(self) -> Engine:
        engine = self._engine
        if engine is None:
            raise IndexUnavailable("No index has been loaded yet")
        return engine

    def swap(self, engine: Engine) -> Engine | None:
        """Install a new generation and return the previous one."""
        with self._swap_lock:
            previous, self._engine = self._engine, engine
        if previous is not None:
            logger.info(
                "Swapped index generation %s -> %s",
                previous.index.fingerprint[:12],
                engine.index.fingerprint[:12],
            )
        return previous

    @property
    def ready(self) -> bool:
        return self._engine is not None


def build_engine(index: Index, settings: Settings) -> Engine:
    """Create the engine for one generation, cached when enabled."""
    engine = SearchEngine(
        index,
        snippet_window=settings.snippet_window,
        max_document_ratio=settings.max_document_ratio,
        max_limit=settings.max_limit,
    )
    if settings.cache_size > 0:
        return CachedSearchEngine(engine, maxsize=settings.cache_size)
    return engine


# Response models
class SearchResultResponse(BaseModel):
    conversation_id: str
    title: str
    snippet: str
    highlight: list[int]
    score: float
    date: str | None = None


class SearchResponse(BaseModel):
    query: str
    status: str
    message: str | None = None
    total: int
    time_ms: float
    results: list[SearchResultResponse]


class ConversationSummary(BaseModel):
    id: str
    title: str
    date: str | None = None
    message_count: int


class ConversationListResponse(BaseModel):
    total: int
    conversations: list[ConversationSummary]


def unavailable_response(query: str = "") -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "query": query,
            "status": "unavailable",
            "message": "Search is temporarily unavailable",
            "total": 0,
            "time_ms": 0.0,
            "results": [],
        },
    )


def create_app(handle: IndexHandle, settings: Settings | None = None) -> FastAPI:
    """Create the API app serving whatever generation `handle` points at."""
    settings = settings or get_settings()
    limiter = anyio.CapacityLimiter(settings.max_concurrency)

    app = FastAPI(title="convo-search API", version=__version__)
    app.add_middleware(
        CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
    )
    app.state.handle = handle
    app.state.settings = settings

    @app.get("/api/search", response_model=SearchResponse)
    async def search(
        q: str = Query("", description="Search query"),
        limit: int = Query(settings.default_limit, ge=1, le=settings.max_limit),
    ):
        try:
            engine = handle.current()
        except IndexUnavailable:
            return unavailable_response(q)

        start_time = time.perf_counter()
        # scoring is synchronous; run it off the event loop, bounded by the limiter
        outcome = await anyio.to_thread.run_sync(engine.query, q, limit, limiter=limiter)
        time_ms = round((time.perf_counter() - start_time) * 1000, 3)

        logger.info(
            "Search query=%r status=%s total=%d in %.1fms",
            q,
            outcome.status.value,
            outcome.total,
            time_ms,
        )

        results = [SearchResultResponse(**result_to_dict(r)) for r in outcome.results]
        return SearchResponse(
            query=outcome.query,
            status=outcome.status.value,
            message=status_message(outcome, engine.ngram_size),
            total=outcome.total,
            time_ms=time_ms,
            results=results,
        )

    @app.get("/api/conversations", response_model=ConversationListResponse)
    def conversations():
        try:
            index = handle.current().index
        except IndexUnavailable:
            return JSONResponse(status_code=503, content={"total": 0, "conversations": []})

        records = sorted(index.records.values(), key=lambda r: (recency_key(r), r.id))
        return ConversationListResponse(
            total=len(records),
            conversations=[
                ConversationSummary(
                    id=r.id,
                    title=r.title,
                    date=r.created_at.isoformat() if r.created_at else None,
                    message_count=r.message_count,
                )
                for r in records
            ],
        )

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        if not handle.ready:
            return {
                "status": "unavailable",
                "version": __version__,
                "records": 0,
                "fingerprint": None,
            }
        index = handle.current().index
        return {
            "status": "ok",
            "version": __version__,
            "records": index.record_count,
            "fingerprint": index.fingerprint,
        }

    return app


def refresh_index(handle: IndexHandle, settings: Settings, force: bool = False) -> Index:
    """Load or rebuild the index from the archive and make it the active generation.

    Requests already running keep the engine they started with.
    """
    from convo_search.indexer import prepare_index

    index = prepare_index(settings, force=force)
    handle.swap(build_engine(index, settings))
    return index


def serve(settings: Settings, force: bool = False) -> None:
    """Build or load the index, then run the API until interrupted."""
    handle = IndexHandle()
    refresh_index(handle, settings, force=force)

    app = create_app(handle, settings)
    logger.info(
        "Search API available at http://%s:%d/api/search?q=<query>", settings.host, settings.port
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
