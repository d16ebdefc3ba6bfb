"""Crash-safe note persistence with optimistic concurrency.

Every mutating call takes the caller's If-Match token, compares it with the
ETag of the bytes currently on disk and only then writes. Writes go through
atomic_write(): a hidden sibling temp file is written, fsynced and renamed
over the target, so readers never observe a partial file and a crash leaves
either the old note or no note, never a torn one.

After a successful write the store projects the note and pushes it to the
search index inline. Index failures are logged and swallowed; the watcher or
a full reindex converges the index later.
"""

import asyncio
import contextlib
import hashlib
import os
import uuid
import weakref
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

from noteapi.dependencies import (
    InvalidInputError,
    NoteExistsError,
    NotMarkdownError,
    PreconditionFailedError,
    PreconditionMissingError,
    SearchIndexError,
    VaultNotFoundError,
    logger,
)
from noteapi.notes.models import (
    ExportedNote,
    FrontMatter,
    NoteRecord,
    NoteWriteResult,
)
from noteapi.notes.paths import VaultSandbox, is_excluded_name, is_excluded_path, is_markdown
from noteapi.notes.tools import build_toc, parse_note, render_note
from noteapi.search.index import IndexClient
from noteapi.search.projector import encode_path, to_search_document
from noteapi.watcher.models import IndexedHashCache, content_hash

TRASH_DIR = ".trash"


def compute_etag(data: bytes) -> str:
    """Strong ETag for a note's exact on-disk bytes."""
    return f'"{hashlib.sha256(data).hexdigest()}"'


@contextmanager
def atomic_write(target: Path, owner: tuple[int, int] | None = None) -> Iterator[BinaryIO]:
    """Open a temp sibling of `target`, then durably replace `target` with it.

    The yielded file is flushed, fsynced and closed before the rename. On any
    failure, including one raised by the caller's block, the temp file is
    removed and `target` is left untouched.

    Args:
        target: Final path of the file
        owner: Optional (uid, gid) applied to the file before it is renamed
    """
    tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        if owner is not None:
            os.chown(tmp, *owner)
        os.replace(tmp, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


def _write_file(target: Path, data: bytes, owner: tuple[int, int] | None) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with atomic_write(target, owner) as fh:
        fh.write(data)


class NoteStore:
    """Read/write/delete of note files inside a sandboxed vault."""

    def __init__(
        self,
        sandbox: VaultSandbox,
        *,
        trash_enabled: bool = False,
        owner: tuple[int, int] | None = None,
        index: IndexClient | None = None,
        hashes: IndexedHashCache | None = None,
    ) -> None:
        self.sandbox = sandbox
        self.trash_enabled = trash_enabled
        self.owner = owner
        self.index = index
        self.hashes = hashes if hashes is not None else IndexedHashCache()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # -------------------------------------------------------------------------
    # Path helpers
    # -------------------------------------------------------------------------

    def resolve_note(self, path: str) -> Path:
        abs_path = self.sandbox.resolve(path)
        if not is_markdown(abs_path):
            raise NotMarkdownError(f"Not a Markdown path: {path}")
        return abs_path

    def _lock_for(self, abs_path: Path) -> asyncio.Lock:
        key = str(abs_path)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def _locked(self, *paths: Path) -> AsyncIterator[None]:
        """Hold the per-path locks of every given path, in a stable order."""
        locks = [self._lock_for(p) for p in sorted(set(paths), key=str)]
        async with contextlib.AsyncExitStack() as stack:
            for lock in locks:
                await stack.enter_async_context(lock)
            yield

    @staticmethod
    def _read_bytes(abs_path: Path, path: str) -> bytes:
        try:
            return abs_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise VaultNotFoundError(f"Note not found: {path}") from e

    @staticmethod
    def _decode(data: bytes, path: str) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidInputError(f"Note is not valid UTF-8: {path}") from e

    @staticmethod
    def _check_precondition(if_match: str | None, current: bytes) -> None:
        if not if_match:
            raise PreconditionMissingError("Missing If-Match")
        if if_match.strip() != compute_etag(current):
            raise PreconditionFailedError("ETag mismatch")

    # -------------------------------------------------------------------------
    # Inline index sync
    # -------------------------------------------------------------------------

    async def _index_upsert(self, abs_path: Path, data: bytes) -> None:
        if self.index is None or not self.index.available:
            return
        rel = self.sandbox.relative(abs_path)
        if is_excluded_path(rel):
            logger.debug("index_write_skipped", extra={"path": rel, "reason": "excluded"})
            return
        try:
            parsed = parse_note(data.decode("utf-8"))
            doc = to_search_document(rel, parsed.frontmatter, parsed.body, abs_path.stat().st_mtime)
            task = await self.index.add_documents([doc])
            result = await self.index.wait_for_task(task)
        except (SearchIndexError, OSError, UnicodeDecodeError) as e:
            logger.warning("index_write_failed", extra={"path": rel, "error": str(e)})
            return
        if result.succeeded:
            self.hashes.record(str(abs_path), content_hash(data))
        else:
            logger.warning(
                "index_write_failed",
                extra={"path": rel, "task": result.task_uid, "error": result.error},
            )

    async def _index_delete(self, abs_path: Path) -> None:
        self.hashes.discard(str(abs_path))
        if self.index is None or not self.index.available:
            return
        rel = self.sandbox.relative(abs_path)
        try:
            await self.index.delete_document(encode_path(rel))
        except SearchIndexError as e:
            logger.warning("index_delete_failed", extra={"path": rel, "error": str(e)})

    # -------------------------------------------------------------------------
    # Note operations
    # -------------------------------------------------------------------------

    async def read(self, path: str) -> NoteRecord:
        """Read a note with its parsed front matter, TOC and ETag.

        Raises:
            VaultSecurityError: If the path escapes the vault
            NotMarkdownError: If the path is not a .md file
            VaultNotFoundError: If the note does not exist
            InvalidInputError: If the file is not valid UTF-8
        """
        abs_path = self.resolve_note(path)
        data = self._read_bytes(abs_path, path)
        parsed = parse_note(self._decode(data, path))
        return NoteRecord(
            path=self.sandbox.relative(abs_path),
            frontmatter=parsed.frontmatter,
            body=parsed.body,
            toc=build_toc(parsed.body),
            etag=compute_etag(data),
            mtime=abs_path.stat().st_mtime,
        )

    async def create(self, path: str, fm: FrontMatter, body: str) -> NoteWriteResult:
        """Create a new note; parent folders are created as needed.

        Raises:
            NoteExistsError: If something already exists at the path
        """
        abs_path = self.resolve_note(path)
        async with self._locked(abs_path):
            if abs_path.exists():
                raise NoteExistsError(f"Note already exists: {path}")
            data = render_note(fm, body).encode("utf-8")
            await asyncio.to_thread(_write_file, abs_path, data, self.owner)

        rel = self.sandbox.relative(abs_path)
        logger.info("note_created", extra={"path": rel})
        await self._index_upsert(abs_path, data)
        return NoteWriteResult(path=rel, etag=compute_etag(data))

    async def update(
        self,
        path: str,
        if_match: str | None,
        fm: FrontMatter | None = None,
        body: str | None = None,
        new_path: str | None = None,
    ) -> NoteWriteResult:
        """Rewrite a note, optionally renaming it in the same step.

        Omitted front matter or body keep their stored values. When renaming,
        the old file is removed only after the new one is durably written.

        Raises:
            PreconditionMissingError: If no If-Match token was supplied
            PreconditionFailedError: If the token is not the current ETag
            NoteExistsError: If the rename destination is taken
        """
        abs_path = self.resolve_note(path)
        dest = abs_path
        if new_path is not None:
            dest = self.resolve_note(new_path)

        async with self._locked(abs_path, dest):
            current = self._read_bytes(abs_path, path)
            self._check_precondition(if_match, current)
            if dest != abs_path and dest.exists():
                raise NoteExistsError(f"Note already exists: {new_path}")

            parsed = parse_note(self._decode(current, path))
            data = render_note(
                fm if fm is not None else parsed.frontmatter,
                body if body is not None else parsed.body,
            ).encode("utf-8")
            await asyncio.to_thread(_write_file, dest, data, self.owner)
            if dest != abs_path:
                abs_path.unlink()

        rel = self.sandbox.relative(dest)
        if dest != abs_path:
            logger.info("note_moved", extra={"path": self.sandbox.relative(abs_path), "to": rel})
            await self._index_delete(abs_path)
        else:
            logger.info("note_updated", extra={"path": rel})
        await self._index_upsert(dest, data)
        return NoteWriteResult(path=rel, etag=compute_etag(data))

    async def move(self, path: str, new_path: str, if_match: str | None = None) -> NoteWriteResult:
        """Rename a note keeping its bytes; If-Match is checked when supplied."""
        abs_path = self.resolve_note(path)
        dest = self.resolve_note(new_path)

        async with self._locked(abs_path, dest):
            current = self._read_bytes(abs_path, path)
            if if_match is not None:
                self._check_precondition(if_match, current)
            if dest == abs_path:
                return NoteWriteResult(path=self.sandbox.relative(dest), etag=compute_etag(current))
            if dest.exists():
                raise NoteExistsError(f"Note already exists: {new_path}")
            await asyncio.to_thread(_write_file, dest, current, self.owner)
            abs_path.unlink()

        rel = self.sandbox.relative(dest)
        logger.info("note_moved", extra={"path": self.sandbox.relative(abs_path), "to": rel})
        await self._index_delete(abs_path)
        await self._index_upsert(dest, current)
        return NoteWriteResult(path=rel, etag=compute_etag(current))

    async def delete(self, path: str, if_match: str | None) -> None:
        """Delete a note, or move it under .trash/<timestamp>/ when trash is on.

        Raises:
            PreconditionMissingError: If no If-Match token was supplied
            PreconditionFailedError: If the token is not the current ETag
        """
        abs_path = self.resolve_note(path)
        async with self._locked(abs_path):
            current = self._read_bytes(abs_path, path)
            self._check_precondition(if_match, current)
            rel = self.sandbox.relative(abs_path)
            if self.trash_enabled:
                stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S.%fZ")
                trash_path = self.sandbox.resolve(f"{TRASH_DIR}/{stamp}/{rel}")
                trash_path.parent.mkdir(parents=True, exist_ok=True)
                os.replace(abs_path, trash_path)
            else:
                abs_path.unlink()

        logger.info("note_deleted", extra={"path": rel, "trashed": self.trash_enabled})
        await self._index_delete(abs_path)

    # -------------------------------------------------------------------------
    # Enumeration
    # -------------------------------------------------------------------------

    def _scan(self, directory: Path) -> Iterator[os.DirEntry[str]]:
        """Yield visible entries of a directory; a vanished directory yields none."""
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except (FileNotFoundError, NotADirectoryError):
            return
        for entry in entries:
            if not is_excluded_name(entry.name):
                yield entry

    def walk(self, path: str = "") -> Iterator[Path]:
        """Yield absolute paths of every note under a vault folder."""
        base = self.sandbox.resolve(path)
        stack = [base]
        while stack:
            directory = stack.pop()
            subdirs: list[Path] = []
            for entry in self._scan(directory):
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False) and is_markdown(entry.name):
                    yield Path(entry.path)
            stack.extend(reversed(subdirs))

    def walk_folders(self, path: str = "") -> Iterator[Path]:
        """Yield absolute paths of every folder under a vault folder."""
        stack = [self.sandbox.resolve(path)]
        while stack:
            directory = stack.pop()
            subdirs = [
                Path(e.path) for e in self._scan(directory) if e.is_dir(follow_symlinks=False)
            ]
            yield from subdirs
            stack.extend(reversed(subdirs))

    async def list_notes(self, path: str = "") -> list[str]:
        """List vault paths of all notes under a folder."""
        return sorted(self.sandbox.relative(p) for p in self.walk(path))

    async def list_folders(self, path: str = "") -> list[str]:
        """List vault paths of all folders under a folder."""
        return sorted(self.sandbox.relative(p) for p in self.walk_folders(path))

    async def create_folder(self, path: str) -> str:
        abs_path = self.sandbox.resolve(path)
        abs_path.mkdir(parents=True, exist_ok=True)
        rel = self.sandbox.relative(abs_path)
        logger.info("folder_created", extra={"path": rel})
        return rel

    async def export(self, path: str = "") -> list[ExportedNote]:
        """Export every note under a folder as structured data."""
        notes: list[ExportedNote] = []
        for abs_path in self.walk(path):
            try:
                data = abs_path.read_bytes()
            except FileNotFoundError:
                continue
            rel = self.sandbox.relative(abs_path)
            try:
                parsed = parse_note(data.decode("utf-8"))
            except UnicodeDecodeError as e:
                logger.warning("export_note_skipped", extra={"path": rel, "error": str(e)})
                continue
            notes.append(
                ExportedNote(
                    path=rel,
                    frontmatter=parsed.frontmatter,
                    content=parsed.body,
                )
            )
        return notes
