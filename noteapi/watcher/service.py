"""Change watcher: filesystem notifications → search index.

Pipeline:
    watchdog thread ──call_soon_threadsafe──▶ record()  filter + coalesce
    flush timer  ──▶ flush()    swap pending map, hash-dedup, two bulk calls
    summary timer ──▶ summarize()  log counters and reset them

All state is touched from the event loop only. watchdog delivers events on
its observer thread, so the handler just hands them to the loop.
"""

import asyncio
import contextlib
import os
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from noteapi.dependencies import SearchIndexError, logger
from noteapi.notes.paths import VaultSandbox
from noteapi.notes.tools import parse_note
from noteapi.search.index import IndexClient
from noteapi.search.models import SearchDocument
from noteapi.search.projector import encode_path, to_search_document
from noteapi.watcher.filters import IgnoreMatcher
from noteapi.watcher.models import (
    FlushReport,
    IndexedHashCache,
    PendingAction,
    WatcherStats,
    content_hash,
)

IGNORED_SAMPLE_SIZE = 20

# watchdog event type -> pending action
EVENT_ACTIONS = {
    "created": PendingAction.UPSERT,
    "modified": PendingAction.UPSERT,
    "deleted": PendingAction.DELETE,
}


def _decode(path: Any) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", "surrogateescape")
    return str(path)


class _VaultEventHandler(FileSystemEventHandler):
    """Forwards file events from the observer thread to the watcher's loop."""

    def __init__(self, watcher: "ChangeWatcher", loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self.watcher = watcher
        self.loop = loop

    def _schedule(self, callback: Callable[..., None], *args: Any) -> None:
        with contextlib.suppress(RuntimeError):  # loop already closed
            self.loop.call_soon_threadsafe(callback, *args)

    def _forward(self, event_type: str, path: Any) -> None:
        self._schedule(self.watcher.record, event_type, _decode(path))

    def _forward_tree(self, path: Any) -> None:
        self._schedule(self.watcher.record_tree_delete, _decode(path))

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            # Files inside a folder that leaves the vault get no events of their own
            if event.event_type == "deleted":
                self._forward_tree(event.src_path)
            elif event.event_type == "moved" and not self.watcher.sandbox.contains(
                _decode(event.dest_path)
            ):
                self._forward_tree(event.src_path)
            return
        if event.event_type == "moved":
            self._forward("deleted", event.src_path)
            self._forward("created", event.dest_path)
        elif event.event_type in EVENT_ACTIONS:
            self._forward(event.event_type, event.src_path)


class ChangeWatcher:
    """Keeps the search index converging on out-of-band vault edits."""

    def __init__(
        self,
        sandbox: VaultSandbox,
        index: IndexClient,
        hashes: IndexedHashCache,
        *,
        flush_interval: float = 1.0,
        summary_interval: float = 60.0,
        ignored_dirs: list[str] | None = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.sandbox = sandbox
        self.index = index
        self.hashes = hashes
        self.flush_interval = flush_interval
        self.summary_interval = summary_interval
        self.matcher = IgnoreMatcher(ignored_dirs=ignored_dirs)
        self.observer_factory = observer_factory

        self._pending: dict[str, PendingAction] = {}
        self._event_counts: dict[str, int] = {}
        self._events_received = 0
        self._documents_sent = 0
        self._ignored = 0
        self._ignored_sample: deque[str] = deque(maxlen=IGNORED_SAMPLE_SIZE)

        self._observer: Any = None
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._closing = False
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> dict[str, PendingAction]:
        """Snapshot of the actions waiting for the next flush."""
        return dict(self._pending)

    # -------------------------------------------------------------------------
    # Event intake
    # -------------------------------------------------------------------------

    def record(self, event_type: str, abs_path: str) -> None:
        """Filter one filesystem event and coalesce it into the pending map.

        A later event for a path replaces the earlier one, so a burst of
        saves collapses into a single upsert of the final content.
        """
        action = EVENT_ACTIONS.get(event_type)
        if action is None or self._closing:
            return
        self._events_received += 1

        reason = "outside_vault"
        if self.sandbox.contains(abs_path):
            reason = self.matcher.reason(self.sandbox.relative(abs_path))
        if reason is not None:
            self._ignored += 1
            self._ignored_sample.append(abs_path)
            logger.debug("watcher_event_ignored", extra={"path": abs_path, "reason": reason})
            return

        self._pending[abs_path] = action
        self._event_counts[abs_path] = self._event_counts.get(abs_path, 0) + 1

    def record_tree_delete(self, abs_dir: str) -> None:
        """Queue deletes for every known note below a folder that disappeared.

        Known notes are those with an indexed hash or a pending action.
        """
        if self._closing:
            return
        self._events_received += 1
        prefix = abs_dir.rstrip(os.sep) + os.sep
        known = set(self.hashes.paths_under(abs_dir))
        known.update(path for path in self._pending if path.startswith(prefix))
        for abs_path in known:
            self._pending[abs_path] = PendingAction.DELETE
            self._event_counts[abs_path] = self._event_counts.get(abs_path, 0) + 1
        logger.debug("watcher_tree_deleted", extra={"path": abs_dir, "notes": len(known)})

    # -------------------------------------------------------------------------
    # Flush
    # -------------------------------------------------------------------------

    def _stage_upsert(self, abs_path: str) -> tuple[SearchDocument, str] | None:
        """Read and project a note; None when its content is already indexed."""
        path = Path(abs_path)
        data = path.read_bytes()
        digest = content_hash(data)
        if self.hashes.matches(abs_path, digest):
            return None
        parsed = parse_note(data.decode("utf-8"))
        rel = self.sandbox.relative(path)
        doc = to_search_document(rel, parsed.frontmatter, parsed.body, path.stat().st_mtime)
        return doc, digest

    async def flush(self) -> FlushReport:
        """Push the current batch of pending actions to the index.

        The pending and counter maps are swapped for empty ones before any
        I/O, so events arriving while the batch is processed start a new
        batch. Each bulk call fails independently; a failed sub-batch is
        logged and dropped.
        """
        report = FlushReport()
        if not self.index.available:
            return report

        pending, self._pending = self._pending, {}
        counts, self._event_counts = self._event_counts, {}
        if not pending:
            return report

        additions: list[SearchDocument] = []
        staged_hashes: dict[str, str] = {}
        deletions: list[str] = []

        for abs_path, action in pending.items():
            if action is PendingAction.UPSERT:
                try:
                    staged = self._stage_upsert(abs_path)
                except FileNotFoundError:
                    # Gone before we got to it; the delete event may not arrive
                    action = PendingAction.DELETE
                except (OSError, UnicodeDecodeError) as e:
                    report.failed += 1
                    logger.warning("watcher_read_failed", extra={"path": abs_path, "error": str(e)})
                    continue
                else:
                    if staged is None:
                        report.unchanged += 1
                        continue
                    doc, digest = staged
                    additions.append(doc)
                    staged_hashes[abs_path] = digest
                    continue

            deletions.append(encode_path(self.sandbox.relative(abs_path)))
            self.hashes.discard(abs_path)

        if additions:
            try:
                await self.index.add_documents(additions)
            except SearchIndexError as e:
                report.failed += len(additions)
                logger.error(
                    "watcher_upsert_failed", extra={"count": len(additions), "error": str(e)}
                )
            else:
                for abs_path, digest in staged_hashes.items():
                    self.hashes.record(abs_path, digest)
                report.upserts = len(additions)

        if deletions:
            try:
                await self.index.delete_documents(deletions)
            except SearchIndexError as e:
                report.failed += len(deletions)
                logger.error(
                    "watcher_delete_failed", extra={"count": len(deletions), "error": str(e)}
                )
            else:
                report.deletes = len(deletions)

        self._documents_sent += report.upserts + report.deletes
        logger.info(
            "watcher_flush",
            extra={
                "paths": len(pending),
                "events": sum(counts.values()),
                "upserts": report.upserts,
                "deletes": report.deletes,
                "unchanged": report.unchanged,
                "failed": report.failed,
            },
        )
        return report

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    def stats(self) -> WatcherStats:
        return WatcherStats(
            running=self._running,
            events_received=self._events_received,
            documents_sent=self._documents_sent,
            ignored=self._ignored,
            ignored_sample=list(self._ignored_sample),
            queue_depth=len(self._pending),
            indexed_paths=len(self.hashes),
        )

    def summarize(self) -> WatcherStats:
        """Log the aggregate counters and reset them."""
        snapshot = self.stats()
        logger.info("watcher_summary", extra=snapshot.model_dump(exclude={"ignored_sample"}))
        self._events_received = 0
        self._documents_sent = 0
        self._ignored = 0
        self._ignored_sample.clear()
        return snapshot

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _every(self, interval: float, action: Callable[[], Awaitable[Any] | Any]) -> None:
        """Run `action` every `interval` seconds until stop() is requested.

        An action already running when stop() is called finishes first.
        """
        while True:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                pass
            else:
                return
            try:
                result = action()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("watcher_timer_failed")

    def start(self) -> None:
        """Subscribe to the vault and start the flush and summary timers.

        Must be called from the running event loop.
        """
        if self._running:
            return
        loop = asyncio.get_running_loop()
        root = self.sandbox.real_root
        self._observer = self.observer_factory()
        self._observer.schedule(_VaultEventHandler(self, loop), str(root), recursive=True)
        self._observer.start()
        self._closing = False
        self._stopping = asyncio.Event()
        self._tasks = [
            loop.create_task(self._every(self.flush_interval, self.flush)),
            loop.create_task(self._every(self.summary_interval, self.summarize)),
        ]
        self._running = True
        logger.info("watcher_started", extra={"root": str(root)})

    async def stop(self) -> None:
        """Stop timers, flush once more, clear state, release the subscription."""
        if not self._running:
            return
        self._running = False
        self._closing = True
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.flush()

        self._pending.clear()
        self._event_counts.clear()
        self.hashes.clear()
        self._events_received = 0
        self._documents_sent = 0
        self._ignored = 0
        self._ignored_sample.clear()

        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        logger.info("watcher_stopped")
