"""FastAPI application entry point."""

import asyncio
import contextlib
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from noteapi.config import Settings, get_settings
from noteapi.dependencies import PayloadTooLargeError, RateLimitedError, VaultError, logger
from noteapi.graph import router as graph_router
from noteapi.graph.tools import LinkGraph
from noteapi.models import ErrorDetail, ErrorResponse
from noteapi.notes import router as notes_router
from noteapi.notes.paths import VaultSandbox
from noteapi.notes.store import NoteStore
from noteapi.search import router as search_router
from noteapi.search.index import IndexClient, MeiliIndexClient
from noteapi.search.reindex import ReindexCoordinator
from noteapi.watcher.models import IndexedHashCache
from noteapi.watcher.service import ChangeWatcher

APP_NAME = "NoteAPI"
APP_VERSION = "0.1.0"

RequestHandler = Callable[[Request], Awaitable[Response]]

# Response hardening headers applied to every response
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "X-DNS-Prefetch-Control": "off",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
}


async def run_reindex(reindexer: ReindexCoordinator) -> None:
    try:
        result = await reindexer.reindex_all()
    except OSError as e:
        logger.error("reindex_failed", extra={"error": str(e)})
        return
    if result.skipped:
        logger.warning("reindex_skipped", extra={"reason": result.reason})


async def monitor_index(app: FastAPI) -> None:
    """Re-check an unavailable index and rebuild it once it comes back."""
    settings: Settings = app.state.settings
    index: IndexClient = app.state.index
    while True:
        await asyncio.sleep(settings.index_retry_interval)
        if index.available:
            continue
        try:
            if await index.ensure():
                logger.info("index_recovered")
                await run_reindex(app.state.reindexer)
        except Exception:
            logger.exception("index_monitor_failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    if settings.file_umask:
        os.umask(int(settings.file_umask, 8))
    if not app.state.store.sandbox.exists():
        logger.warning("vault_root_missing", extra={"vault_root": str(settings.vault_root)})

    if await app.state.index.ensure():
        await run_reindex(app.state.reindexer)
    else:
        logger.warning("search_disabled", extra={"host": settings.meili_host})

    if settings.watcher_enabled and app.state.store.sandbox.exists():
        app.state.watcher.start()
    monitor = asyncio.create_task(monitor_index(app))
    logger.info(
        "app_startup",
        extra={"host": settings.host, "port": settings.port, "version": APP_VERSION},
    )
    try:
        yield
    finally:
        monitor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await monitor
        await app.state.watcher.stop()
        logger.info("app_shutdown")


def error_response(exc: VaultError) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(message=str(exc), type=exc.error_type, code=exc.code))
    return JSONResponse(status_code=exc.status_code, content={"detail": body.model_dump()})


async def vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
    """Render taxonomy errors in the same envelope as HTTPException details."""
    if exc.status_code >= 500:
        logger.error("request_failed", extra={"path": request.url.path, "error": str(exc)})
    return error_response(exc)


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render rate limit rejections; slowapi calls this synchronously."""
    logger.warning("rate_limited", extra={"path": request.url.path, "limit": exc.detail})
    return error_response(RateLimitedError(f"Rate limit exceeded: {exc.detail}"))


def create_app(settings: Settings | None = None, index: IndexClient | None = None) -> FastAPI:
    """Build the application and its long-lived collaborators.

    Args:
        settings: Settings to use instead of the environment
        index: Search index client; a Meilisearch client is built by default
    """
    settings = settings or get_settings()
    if index is None:
        index = MeiliIndexClient(
            settings.meili_host,
            settings.meili_master_key,
            settings.meili_index,
            timeout=settings.meili_timeout,
        )

    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        lifespan=lifespan,
        servers=[{"url": settings.base_url}],
    )

    sandbox = VaultSandbox(settings.vault_root)
    hashes = IndexedHashCache()
    store = NoteStore(
        sandbox,
        trash_enabled=settings.trash_enabled,
        owner=settings.file_owner,
        index=index,
        hashes=hashes,
    )
    app.state.settings = settings
    app.state.index = index
    app.state.store = store
    app.state.reindexer = ReindexCoordinator(
        store, index, hashes, chunk_size=settings.reindex_chunk_size
    )
    app.state.watcher = ChangeWatcher(
        sandbox,
        index,
        hashes,
        flush_interval=settings.watcher_flush_interval,
        summary_interval=settings.watcher_summary_interval,
        ignored_dirs=settings.watcher_ignored_dirs_list,
    )
    app.state.graph = LinkGraph(store)

    app.state.limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit],
        enabled=settings.rate_limit_enabled,
    )
    app.add_middleware(SlowAPIMiddleware)

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next: RequestHandler) -> Response:
        length = request.headers.get("content-length", "")
        if length.isdigit() and int(length) > settings.max_body_bytes:
            return error_response(
                PayloadTooLargeError(f"Request body exceeds {settings.max_body_bytes} bytes")
            )
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next: RequestHandler) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag"],
    )
    app.add_exception_handler(VaultError, vault_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    app.include_router(notes_router.router)
    app.include_router(search_router.router)
    app.include_router(graph_router.router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, str | bool]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": APP_VERSION,
            "search": request.app.state.index.available,
        }

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API info."""
        return {"name": APP_NAME, "version": APP_VERSION, "docs": "/docs"}

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("noteapi.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
