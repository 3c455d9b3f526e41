"""FastAPI application for the web novel tracker.

This module defines the JSON API and the dashboard page. All state is
reached through a :class:`Services` bundle created by
:func:`create_app` and stored on ``app.state``; handlers receive it via
``Depends(get_services)``. Nothing is kept in module-level globals apart
from the default ``app`` instance that ASGI servers import.

On startup the lifespan handler configures logging, opens the JSON
store, warns about missing AI credentials and starts the background
timers.

Errors are returned as ``{"message": ...}``: unknown books map to 404,
duplicate or missing URLs to 400, a busy reconciliation loop to 409, and
anything else to a 500 without internal details.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, load_settings
from .errors import DuplicateBook, NotFound, RunInProgress, UpstreamFetchError
from .extractor import Scraper
from .illustrator import IMAGE_URL_PREFIX, Illustrator
from .logs import setup_logging
from .models import parse_timestamp
from .pacing import RateGate
from .reconciler import ReconciliationLoop
from .registry import BookRegistry
from .scheduler import Scheduler
from .storage import JSONStore
from .summarizer import Summarizer

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


@dataclass
class Services:
    settings: Settings
    store: JSONStore
    registry: BookRegistry
    loop: ReconciliationLoop
    scheduler: Scheduler


def build_services(settings: Settings, scraper=None, summarizer=None, illustrator=None) -> Services:
    """Wire the store, registry, loop and scheduler together.

    Collaborators default to the real network-backed implementations.
    """
    scraper = scraper or Scraper(timeout=settings.request_timeout_seconds)
    summarizer = summarizer or Summarizer(
        settings.anthropic_api_key, model=settings.summary_model, timeout=settings.request_timeout_seconds * 2
    )
    illustrator = illustrator or Illustrator(
        settings.together_api_key, settings.images_dir, model=settings.image_model,
        timeout=settings.request_timeout_seconds * 2,
    )
    store = JSONStore(settings.data_dir)
    registry = BookRegistry(store, scraper)
    loop = ReconciliationLoop(
        store, registry, scraper, summarizer, illustrator,
        book_gate=RateGate(settings.book_delay_seconds),
        chapter_gate=RateGate(settings.chapter_delay_seconds),
        initial_chapters=settings.initial_chapters,
        max_summary_retries=settings.max_summary_retries,
        retention_days=settings.retention_days,
    )
    return Services(settings=settings, store=store, registry=registry, loop=loop,
                    scheduler=Scheduler(loop, settings))


def get_services(request: Request) -> Services:
    return request.app.state.services


def _newest_first(summary) -> datetime:
    return parse_timestamp(summary.date)


def _format_summary(summary) -> Dict[str, Any]:
    return {
        "bookTitle": summary.book_title,
        "summary": summary.summary,
        "date": summary.date,
        "chapterCount": len(summary.chapters),
        "imageUrl": summary.image_url,
    }


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        services.store.open()
        settings.images_dir.mkdir(parents=True, exist_ok=True)
        if not settings.summarizer_enabled:
            logger.warning("ANTHROPIC_API_KEY not set, chapter summaries are disabled")
        if not settings.illustrator_enabled:
            logger.warning("TOGETHER_API_KEY not set, image generation is disabled")
        if settings.enable_scheduler:
            services.scheduler.start()
        logger.info("Web Novel Tracker ready (%s mode)", settings.environment)
        yield
        await services.scheduler.stop()

    app = FastAPI(title="Web Novel Tracker", lifespan=lifespan)
    app.state.services = services
    app.mount(IMAGE_URL_PREFIX, StaticFiles(directory=str(settings.images_dir), check_dir=False), name="images")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        level = logging.ERROR if response.status_code >= 400 else logging.INFO
        logger.log(level, "%s %s - %d - %.0fms", request.method, request.url.path,
                   response.status_code, duration_ms)
        return response

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse({"message": "Book not found"}, status_code=404)

    @app.exception_handler(DuplicateBook)
    async def duplicate_handler(request: Request, exc: DuplicateBook) -> JSONResponse:
        return JSONResponse({"message": "Book already exists"}, status_code=400)

    @app.exception_handler(RunInProgress)
    async def busy_handler(request: Request, exc: RunInProgress) -> JSONResponse:
        return JSONResponse({"message": str(exc)}, status_code=409)

    @app.exception_handler(UpstreamFetchError)
    async def upstream_handler(request: Request, exc: UpstreamFetchError) -> JSONResponse:
        logger.error("Upstream failure on %s: %s", request.url.path, exc)
        return JSONResponse({"message": "Failed to reach the book's site"}, status_code=500)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"message": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Server error on %s", request.url.path)
        return JSONResponse({"message": "Internal server error"}, status_code=500)

    @app.get("/api/books")
    async def list_books(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
        return [book.to_dict() for book in services.registry.list()]

    @app.post("/api/books", status_code=201)
    async def add_book(request: Request, services: Services = Depends(get_services)) -> Response:
        """Start tracking a book and summarize its latest chapters.

        The book is kept even if summarization fails; the response then
        carries ``summaryError`` instead of ``initialSummaries``.
        """
        try:
            data = await request.json()
        except ValueError:
            data = {}
        url = (data.get("url") or "").strip() if isinstance(data, dict) else ""
        if not url:
            raise HTTPException(status_code=400, detail="URL is required")

        book, info = await services.registry.register(url)
        payload = book.to_dict()
        try:
            summaries = await services.loop.summarize_initial(book, info.chapters)
            payload["initialSummaries"] = [s.to_dict() for s in summaries]
        except Exception as exc:
            logger.error("Error generating initial summaries for %r: %s", book.title, exc)
            payload["summaryError"] = "Failed to generate initial summaries, but book was added successfully"
        return JSONResponse(payload, status_code=201)

    @app.delete("/api/books/{book_id}")
    async def remove_book(book_id: str, services: Services = Depends(get_services)) -> Dict[str, str]:
        services.registry.remove(book_id)
        return {"message": "Book and associated summaries removed successfully"}

    @app.get("/api/books/{book_id}/check")
    async def check_book(book_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
        result = await services.loop.check_book(book_id)
        return result.to_dict()

    @app.get("/api/summary")
    async def list_summaries(date: Optional[str] = None,
                             services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
        summaries = sorted(services.store.list_summaries(date), key=_newest_first, reverse=True)
        return [_format_summary(s) for s in summaries]

    @app.post("/api/summarize")
    async def summarize(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
        results = await services.loop.daily_summary()
        return [r.to_dict() for r in results]

    @app.post("/api/check-all")
    async def check_all(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
        results = await services.loop.check_all()
        return [r.to_dict() for r in results]

    @app.get("/api/history")
    @app.get("/api/history/{book_id}")
    async def history(book_id: Optional[str] = None,
                      services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in services.store.list_history(book_id)]

    @app.get("/api/health")
    async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
        return {
            "status": "ok",
            "running": services.loop.running,
            "summarizer": services.loop.summarizer.enabled,
            "illustrator": services.loop.illustrator.enabled,
        }

    @app.get("/", response_class=HTMLResponse)
    async def dashboard(request: Request, services: Services = Depends(get_services)) -> HTMLResponse:
        books = services.registry.list()
        summaries = sorted(services.store.list_summaries(), key=_newest_first, reverse=True)[:20]
        return templates.TemplateResponse(
            request,
            "index.html",
            {"books": books, "summaries": summaries, "running": services.loop.running},
        )

    return app


app = create_app()
