"""Single-flight full rebuild of the search index from the vault."""

import asyncio

from noteapi.dependencies import SearchIndexError, logger
from noteapi.notes.store import NoteStore
from noteapi.notes.tools import parse_note
from noteapi.search.index import IndexClient
from noteapi.search.models import ReindexResult, SearchDocument
from noteapi.search.projector import to_search_document
from noteapi.watcher.models import IndexedHashCache, content_hash

DEFAULT_CHUNK_SIZE = 200


class ReindexCoordinator:
    """Walks the vault and resubmits every note in fixed-size chunks.

    Only one walk runs at a time; a concurrent request is rejected with
    reason "in-flight" instead of being queued. A chunk whose task fails
    aborts the run with zero indexed. Chunks already committed stay in
    the index.
    """

    def __init__(
        self,
        store: NoteStore,
        index: IndexClient,
        hashes: IndexedHashCache,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.store = store
        self.index = index
        self.hashes = hashes
        self.chunk_size = max(1, chunk_size)
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _collect(self) -> list[tuple[SearchDocument, str, str]]:
        """Project every note in the vault; returns (document, abs path, hash)."""
        sandbox = self.store.sandbox
        collected: list[tuple[SearchDocument, str, str]] = []
        for abs_path in self.store.walk():
            try:
                data = abs_path.read_bytes()
                mtime = abs_path.stat().st_mtime
                parsed = parse_note(data.decode("utf-8"))
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(
                    "reindex_note_skipped",
                    extra={"path": sandbox.relative(abs_path), "error": str(e)},
                )
                continue
            rel = sandbox.relative(abs_path)
            doc = to_search_document(rel, parsed.frontmatter, parsed.body, mtime)
            collected.append((doc, str(abs_path), content_hash(data)))
        return collected

    async def reindex_all(self) -> ReindexResult:
        if not self.index.available:
            return ReindexResult(skipped=True, reason="disabled")
        if self._in_flight:
            logger.info("reindex_rejected", extra={"reason": "in-flight"})
            return ReindexResult(skipped=True, reason="in-flight")

        self._in_flight = True
        try:
            if not self.store.sandbox.exists():
                logger.warning(
                    "reindex_vault_missing", extra={"root": str(self.store.sandbox.root)}
                )
                return ReindexResult(indexed=0)

            collected = await asyncio.to_thread(self._collect)
            indexed = 0
            for start in range(0, len(collected), self.chunk_size):
                chunk = collected[start : start + self.chunk_size]
                task = await self.index.add_documents([doc for doc, _, _ in chunk])
                result = await self.index.wait_for_task(task)
                if not result.succeeded:
                    logger.error(
                        "reindex_chunk_failed",
                        extra={"task": result.task_uid, "offset": start, "error": result.error},
                    )
                    return ReindexResult(indexed=0)
                for _, abs_path, digest in chunk:
                    self.hashes.record(abs_path, digest)
                indexed += len(chunk)

            logger.info("reindex_completed", extra={"indexed": indexed})
            return ReindexResult(indexed=indexed)
        except SearchIndexError as e:
            logger.error("reindex_failed", extra={"error": str(e)})
            return ReindexResult(indexed=0)
        finally:
            self._in_flight = False

