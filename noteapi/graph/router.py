"""FastAPI router for link graph queries.

Every query walks and parses the whole vault, so it runs in a worker thread.
"""

import asyncio

from fastapi import APIRouter, Depends

from noteapi.dependencies import get_link_graph, require_api_key
from noteapi.graph.models import AliasesResponse, BacklinksResponse, NeighborsResponse
from noteapi.graph.tools import LinkGraph

router = APIRouter(prefix="/graph", tags=["graph"], dependencies=[Depends(require_api_key)])


@router.get("/backlinks/{path:path}")
async def backlinks(path: str, graph: LinkGraph = Depends(get_link_graph)) -> BacklinksResponse:
    """Notes linking to this note by name or alias."""
    return BacklinksResponse(backlinks=await asyncio.to_thread(graph.backlinks, path))


@router.get("/aliases/{path:path}")
async def aliases(path: str, graph: LinkGraph = Depends(get_link_graph)) -> AliasesResponse:
    return AliasesResponse(aliases=await asyncio.to_thread(graph.aliases, path))


@router.get("/neighbors/{path:path}")
async def neighbors(path: str, graph: LinkGraph = Depends(get_link_graph)) -> NeighborsResponse:
    """Outgoing links plus backlinks."""
    return NeighborsResponse(neighbors=await asyncio.to_thread(graph.neighbors, path))
