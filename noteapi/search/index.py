"""Search engine boundary.

IndexClient is the protocol the core consumes: bulk upsert returning an
asynchronous task handle, bulk and single delete by id, full-text search
with a limit and snippet extraction, and an availability check.
MeiliIndexClient implements it on top of the official Meilisearch SDK,
whose blocking calls are pushed to worker threads so the event loop keeps
serving requests and watcher callbacks while the engine works.
"""

import asyncio
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

import meilisearch
from meilisearch.errors import (
    MeilisearchApiError,
    MeilisearchCommunicationError,
    MeilisearchError,
    MeilisearchTimeoutError,
)

from noteapi.dependencies import (
    IndexUnavailableError,
    IndexWriteError,
    SearchIndexError,
    logger,
)
from noteapi.search.models import IndexTask, SearchDocument, SearchHit
from noteapi.search.projector import decode_path

T = TypeVar("T")

PRIMARY_KEY = "id"
SNIPPET_MAX_LENGTH = 400

INDEX_SETTINGS = {
    "searchableAttributes": ["title", "headings", "content"],
    "displayedAttributes": ["id", "title", "headings", "frontmatter", "content", "mtime"],
    "sortableAttributes": ["mtime"],
}


class IndexClient(Protocol):
    """Document store operations the core relies on."""

    @property
    def available(self) -> bool: ...

    async def ensure(self) -> bool: ...

    async def health(self) -> bool: ...

    async def add_documents(self, documents: list[SearchDocument]) -> IndexTask: ...

    async def wait_for_task(self, task: IndexTask) -> IndexTask: ...

    async def delete_documents(self, ids: list[str]) -> IndexTask: ...

    async def delete_document(self, doc_id: str) -> IndexTask: ...

    async def search(self, query: str, limit: int = 10) -> list[SearchHit]: ...


def _task_from(info: Any) -> IndexTask:
    return IndexTask(task_uid=info.task_uid, status=getattr(info, "status", "enqueued"))


class MeiliIndexClient:
    """IndexClient backed by a Meilisearch server."""

    def __init__(
        self,
        host: str,
        api_key: str,
        index_name: str,
        timeout: float = 5.0,
        task_timeout_ms: int = 60_000,
    ) -> None:
        self.host = host
        self.index_name = index_name
        self.task_timeout_ms = task_timeout_ms
        self._client = meilisearch.Client(host, api_key or None, timeout=timeout)
        self._index = self._client.index(index_name)
        self._available = False

    @property
    def available(self) -> bool:
        return self._available

    def _translate(self, e: MeilisearchError) -> SearchIndexError:
        """Map an SDK error onto the index error taxonomy.

        Communication failures and request timeouts mark the client
        unavailable until the next successful ensure().
        """
        if isinstance(e, (MeilisearchCommunicationError, MeilisearchTimeoutError)):
            self._available = False
            return IndexUnavailableError(f"Search engine unreachable: {e}")
        if isinstance(e, MeilisearchApiError):
            return IndexWriteError(f"Search engine rejected request: {e}")
        return IndexWriteError(str(e))

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call off the loop, translating SDK errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except MeilisearchError as e:
            raise self._translate(e) from e

    async def ensure(self) -> bool:
        """Create the index, its primary key and settings; then check health.

        Setup failures are logged and tolerated; availability is decided by
        the final health check alone.
        """
        try:
            info = await self._call(
                self._client.create_index, self.index_name, {"primaryKey": PRIMARY_KEY}
            )
            created = await self.wait_for_task(_task_from(info))
            if created.succeeded:
                logger.info("index_created", extra={"index": self.index_name})
        except IndexWriteError as e:
            logger.debug("index_create_skipped", extra={"index": self.index_name, "error": str(e)})
        except IndexUnavailableError as e:
            logger.warning("index_create_failed", extra={"index": self.index_name, "error": str(e)})

        try:
            raw = await self._call(self._client.get_raw_index, self.index_name)
            if not raw.get("primaryKey"):
                info = await self._call(self._index.update, primary_key=PRIMARY_KEY)
                await self.wait_for_task(_task_from(info))
                logger.info("index_primary_key_set", extra={"index": self.index_name})
            info = await self._call(self._index.update_settings, INDEX_SETTINGS)
            await self.wait_for_task(_task_from(info))
        except IndexWriteError as e:
            logger.warning(
                "index_settings_failed", extra={"index": self.index_name, "error": str(e)}
            )
        except IndexUnavailableError:
            pass

        self._available = await self.health()
        if self._available:
            logger.info("index_healthy", extra={"host": self.host, "index": self.index_name})
        else:
            logger.error("index_health_failed", extra={"host": self.host})
        return self._available

    async def health(self) -> bool:
        try:
            await self._call(self._client.health)
        except (IndexUnavailableError, IndexWriteError):
            return False
        return True

    async def add_documents(self, documents: list[SearchDocument]) -> IndexTask:
        payload = [doc.model_dump(mode="json") for doc in documents]
        info = await self._call(self._index.add_documents, payload, PRIMARY_KEY)
        return _task_from(info)

    async def wait_for_task(self, task: IndexTask) -> IndexTask:
        """Block until the engine finishes a task.

        A task still pending after task_timeout_ms is a failed write, not a
        sign that the engine is down.
        """
        try:
            result = await asyncio.to_thread(
                self._client.wait_for_task, task.task_uid, timeout_in_ms=self.task_timeout_ms
            )
        except MeilisearchTimeoutError as e:
            raise IndexWriteError(
                f"Task {task.task_uid} not finished after {self.task_timeout_ms} ms"
            ) from e
        except MeilisearchError as e:
            raise self._translate(e) from e
        error = getattr(result, "error", None)
        return IndexTask(
            task_uid=task.task_uid,
            status=str(result.status),
            error=str(error) if error else None,
        )

    async def delete_documents(self, ids: list[str]) -> IndexTask:
        info = await self._call(self._index.delete_documents, ids)
        return _task_from(info)

    async def delete_document(self, doc_id: str) -> IndexTask:
        info = await self._call(self._index.delete_document, doc_id)
        return _task_from(info)

    async def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        if not self._available:
            raise IndexUnavailableError("Search index is disabled")
        res = await self._call(
            self._index.search,
            query,
            {
                "limit": limit,
                "attributesToHighlight": ["title", "content"],
                "attributesToCrop": ["content"],
                "cropLength": 60,
                "showMatchesPosition": True,
            },
        )
        hits: list[SearchHit] = []
        for hit in res.get("hits", []):
            formatted = hit.get("_formatted") or {}
            matches = hit.get("_matchesPosition")
            hits.append(
                SearchHit(
                    path=decode_path(hit[PRIMARY_KEY]),
                    title=hit.get("title", ""),
                    snippet=(formatted.get("content") or "")[:SNIPPET_MAX_LENGTH],
                    score=float(len(matches)) if matches else None,
                )
            )
        return hits
