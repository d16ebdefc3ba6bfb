"""FastAPI router for notes, folders and subtree export."""

from fastapi import APIRouter, Depends, Header, Query, Response, status

from noteapi.dependencies import VaultNotFoundError, get_note_store, require_api_key
from noteapi.models import WriteResponse
from noteapi.notes.models import (
    ExportedNote,
    FolderCreateRequest,
    NoteCreateRequest,
    NoteMoveRequest,
    NoteReadResponse,
    NoteUpdateRequest,
)
from noteapi.notes.store import NoteStore
from noteapi.notes.tools import slice_lines, slice_section

router = APIRouter(tags=["notes"], dependencies=[Depends(require_api_key)])


def _write_response(response: Response, path: str, etag: str) -> WriteResponse:
    response.headers["ETag"] = etag
    return WriteResponse(path=path, etag=etag)


# =============================================================================
# Notes
# =============================================================================


@router.get("/notes")
async def list_notes(
    path: str = Query(default="", description="Folder to list, vault root by default"),
    store: NoteStore = Depends(get_note_store),
) -> list[str]:
    """List every note under a folder, recursively."""
    return await store.list_notes(path)


@router.get("/notes/{path:path}")
async def read_note(
    path: str,
    response: Response,
    section: str | None = Query(default=None, description="Return only this heading's text"),
    lines: str | None = Query(default=None, description="1-based line range: N, N-M or N-"),
    store: NoteStore = Depends(get_note_store),
) -> NoteReadResponse:
    """Read a note; the ETag header carries its concurrency token.

    Args:
        path: Vault-relative note path
        section: Optional heading title; content is narrowed to that section
        lines: Optional line range applied to the body (after section narrowing)
    """
    record = await store.read(path)
    response.headers["ETag"] = record.etag

    content = record.body
    if section:
        sliced = slice_section(content, record.toc, section)
        if sliced is None:
            raise VaultNotFoundError(f"Section not found: {section}")
        content = sliced
    if lines:
        content = slice_lines(content, lines)

    return NoteReadResponse(
        frontmatter=record.frontmatter,
        content=content,
        toc=[{"level": e.level, "title": e.title} for e in record.toc],
    )


@router.post("/notes", status_code=status.HTTP_201_CREATED)
async def create_note(
    body: NoteCreateRequest,
    response: Response,
    store: NoteStore = Depends(get_note_store),
) -> WriteResponse:
    result = await store.create(body.path, body.frontmatter, body.content)
    return _write_response(response, result.path, result.etag)


@router.patch("/notes/{path:path}")
async def update_note(
    path: str,
    body: NoteUpdateRequest,
    response: Response,
    if_match: str | None = Header(default=None),
    store: NoteStore = Depends(get_note_store),
) -> WriteResponse:
    """Rewrite a note's front matter and/or body, optionally renaming it.

    Requires If-Match equal to the note's current ETag.
    """
    new_path = body.path if body.path and body.path != path else None
    result = await store.update(
        path, if_match, fm=body.frontmatter, body=body.content, new_path=new_path
    )
    return _write_response(response, result.path, result.etag)


@router.post("/notes/{path:path}/move")
async def move_note(
    path: str,
    body: NoteMoveRequest,
    response: Response,
    if_match: str | None = Header(default=None),
    store: NoteStore = Depends(get_note_store),
) -> WriteResponse:
    result = await store.move(path, body.new_path, if_match)
    return _write_response(response, result.path, result.etag)


@router.delete("/notes/{path:path}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_note(
    path: str,
    if_match: str | None = Header(default=None),
    store: NoteStore = Depends(get_note_store),
) -> Response:
    await store.delete(path, if_match)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Folders & Export
# =============================================================================


@router.get("/folders")
async def list_folders(
    path: str = Query(default=""),
    store: NoteStore = Depends(get_note_store),
) -> list[str]:
    return await store.list_folders(path)


@router.post("/folders", status_code=status.HTTP_201_CREATED)
async def create_folder(
    body: FolderCreateRequest,
    store: NoteStore = Depends(get_note_store),
) -> dict[str, bool | str]:
    rel = await store.create_folder(body.path)
    return {"ok": True, "path": rel}


@router.get("/export")
async def export_notes(
    path: str = Query(default="", description="Folder to export, vault root by default"),
    store: NoteStore = Depends(get_note_store),
) -> list[ExportedNote]:
    """Export every note under a folder with parsed front matter."""
    return await store.export(path)
