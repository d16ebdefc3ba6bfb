"""FastAPI router for full-text search and index administration."""

from fastapi import APIRouter, Depends, Query

from noteapi.dependencies import (
    IndexUnavailableError,
    ReindexInFlightError,
    get_change_watcher,
    get_index_client,
    get_reindex_coordinator,
    logger,
    require_api_key,
)
from noteapi.search.index import IndexClient
from noteapi.search.models import ReindexResult, SearchResponse
from noteapi.search.reindex import ReindexCoordinator
from noteapi.watcher.models import WatcherStats
from noteapi.watcher.service import ChangeWatcher

router = APIRouter(dependencies=[Depends(require_api_key)])


@router.get("/search", tags=["search"])
async def search(
    q: str = Query(..., description="Full-text query"),
    limit: int = Query(default=10, ge=1, le=50),
    index: IndexClient = Depends(get_index_client),
) -> SearchResponse:
    """Query the search index.

    Raises:
        IndexUnavailableError: When the index is disabled (503)
    """
    if not index.available:
        raise IndexUnavailableError("Search index is disabled")
    hits = await index.search(q, limit=limit)
    logger.debug("search_completed", extra={"query": q, "hits": len(hits)})
    return SearchResponse(hits=hits)


@router.post("/admin/reindex", tags=["admin"])
async def reindex(
    reindexer: ReindexCoordinator = Depends(get_reindex_coordinator),
) -> ReindexResult:
    """Rebuild the index from the vault.

    Returns 409 while another reindex runs and 503 when the index is disabled.
    """
    result = await reindexer.reindex_all()
    if result.reason == "in-flight":
        raise ReindexInFlightError("Reindex already in progress")
    if result.reason == "disabled":
        raise IndexUnavailableError("Search index is disabled")
    return result


@router.get("/admin/watcher", tags=["admin"])
async def watcher_stats(
    watcher: ChangeWatcher = Depends(get_change_watcher),
) -> WatcherStats:
    return watcher.stats()
