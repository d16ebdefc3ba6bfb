"""Pydantic models for note operations."""

from datetime import date, datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import TypeAliasType

# Tagged variant for front-matter values; parse_note() coerces anything
# YAML produces outside this set before it reaches a model.
FrontMatterValue = TypeAliasType(
    "FrontMatterValue",
    "Union[bool, int, float, datetime, date, str, None, "
    "list[FrontMatterValue], dict[str, FrontMatterValue]]",
)

FrontMatter = dict[str, FrontMatterValue]


class TocEntry(BaseModel):
    """A heading in a note's table of contents.

    Attributes:
        level: Heading level (1-3)
        title: Heading text without the leading hashes
        line: Zero-based line index within the note body
    """

    level: int = Field(..., ge=1, le=3, description="Heading level")
    title: str = Field(..., description="Heading text")
    line: int = Field(..., ge=0, description="Body line index")


class NoteContent(BaseModel):
    """Parsed note with frontmatter and body separated.

    Attributes:
        frontmatter: Ordered front-matter mapping (empty if absent)
        body: The markdown content after the frontmatter
        raw: The original unparsed content
    """

    frontmatter: FrontMatter = Field(default_factory=dict)
    body: str = ""
    raw: str = ""


class NoteRecord(BaseModel):
    """A note as read from disk, with its concurrency token."""

    path: str
    frontmatter: FrontMatter = Field(default_factory=dict)
    body: str = ""
    toc: list[TocEntry] = Field(default_factory=list)
    etag: str
    mtime: float = 0.0


class NoteWriteResult(BaseModel):
    """Outcome of a successful note write."""

    path: str
    etag: str


class ExportedNote(BaseModel):
    """A note in a subtree export."""

    path: str
    frontmatter: FrontMatter = Field(default_factory=dict)
    content: str = ""


# =============================================================================
# Request / Response Bodies
# =============================================================================


class NoteReadResponse(BaseModel):
    """Body of GET /notes/{path}."""

    frontmatter: FrontMatter = Field(default_factory=dict)
    content: str = ""
    toc: list[dict[str, Any]] = Field(default_factory=list)


class NoteCreateRequest(BaseModel):
    """Body of POST /notes."""

    path: str = Field(..., min_length=1, description="Vault-relative note path")
    frontmatter: FrontMatter = Field(default_factory=dict)
    content: str = ""


class NoteUpdateRequest(BaseModel):
    """Body of PATCH /notes/{path}; omitted fields keep their stored value."""

    frontmatter: FrontMatter | None = None
    content: str | None = None
    path: str | None = Field(default=None, description="Optional rename target")


class NoteMoveRequest(BaseModel):
    """Body of POST /notes/{path}/move."""

    model_config = ConfigDict(populate_by_name=True)

    new_path: str = Field(..., alias="newPath", min_length=1)


class FolderCreateRequest(BaseModel):
    """Body of POST /folders."""

    path: str = Field(..., min_length=1)
