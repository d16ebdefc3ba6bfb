"""Models for the change watcher's in-memory state."""

import hashlib
import os
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


class PendingAction(str, Enum):
    """Latest observed intent for a path since the last flush."""

    UPSERT = "upsert"
    DELETE = "delete"


def content_hash(data: bytes) -> str:
    """sha256 hex digest of a note's on-disk bytes."""
    return hashlib.sha256(data).hexdigest()


class IndexedHashCache:
    """Per-path hash of the content last accepted by the search index.

    Keys are canonical absolute paths. Shared by the watcher, the store's
    inline index writes and the reindexer so each can suppress the others'
    echoes.
    """

    def __init__(self) -> None:
        self._hashes: dict[str, str] = {}

    def matches(self, path: str, digest: str) -> bool:
        return self._hashes.get(path) == digest

    def record(self, path: str, digest: str) -> None:
        self._hashes[path] = digest

    def discard(self, path: str) -> None:
        self._hashes.pop(path, None)

    def clear(self) -> None:
        self._hashes.clear()

    def paths_under(self, directory: str) -> list[str]:
        """Cached paths that live below a directory."""
        prefix = directory.rstrip(os.sep) + os.sep
        return [path for path in self._hashes if path.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._hashes)

    def __contains__(self, path: object) -> bool:
        return path in self._hashes


@dataclass
class FlushReport:
    """What a single flush did."""

    upserts: int = 0
    deletes: int = 0
    unchanged: int = 0
    failed: int = 0


class WatcherStats(BaseModel):
    """Aggregate watcher counters for diagnostics and the periodic summary."""

    running: bool = False
    events_received: int = Field(default=0, ge=0)
    documents_sent: int = Field(default=0, ge=0)
    ignored: int = Field(default=0, ge=0)
    ignored_sample: list[str] = Field(default_factory=list)
    queue_depth: int = Field(default=0, ge=0)
    indexed_paths: int = Field(default=0, ge=0)
