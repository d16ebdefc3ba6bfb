"""Pydantic models for the search index.

This module defines the documents sent to the search engine, the hits
returned from it and the outcome of a full reindex. Models follow the
same pattern as notes/models.py.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class SearchDocument(BaseModel):
    """Projection of a note into the search engine's document space.

    Attributes:
        id: Reversible, charset-safe encoding of the note's vault path
        title: First H1 heading, or the filename without extension
        headings: All heading texts (levels 1-6) in document order
        frontmatter: JSON-safe front matter
        content: Full note body
        mtime: Last-modified time in epoch milliseconds
    """

    id: str = Field(..., description="Encoded vault path")
    title: str = Field(..., description="Note title")
    headings: list[str] = Field(default_factory=list, description="Heading texts")
    frontmatter: dict[str, Any] = Field(default_factory=dict, description="Front matter")
    content: str = Field(default="", description="Note body")
    mtime: int = Field(default=0, ge=0, description="Modified time (ms)")


class SearchHit(BaseModel):
    """A single search result.

    Attributes:
        path: Relative path to note in vault (e.g., 'Projects/API.md')
        title: Note title
        snippet: Context snippet around the match, with highlight markup
        score: Number of matched attributes, when the engine reports it
    """

    path: str = Field(..., description="Relative path to note")
    title: str = Field(default="", description="Note title")
    snippet: str = Field(default="", description="Match context snippet")
    score: float | None = Field(default=None, description="Match score")


class SearchResponse(BaseModel):
    """Body of GET /search."""

    hits: list[SearchHit] = Field(default_factory=list)


class IndexTask(BaseModel):
    """Handle for an asynchronous engine task."""

    task_uid: int
    status: str = "enqueued"
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class ReindexResult(BaseModel):
    """Outcome of a full reindex request."""

    indexed: int = Field(default=0, ge=0)
    skipped: bool = False
    reason: Literal["disabled", "in-flight"] | None = None
