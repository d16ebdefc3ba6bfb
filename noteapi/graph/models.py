"""Pydantic models for the link graph."""

from pydantic import BaseModel, Field


class NoteLinks(BaseModel):
    """Link metadata of a single note.

    Attributes:
        path: Relative path to note in vault
        links: Outgoing wikilink targets, normalized to .md paths
        aliases: Alternative names from front matter
    """

    path: str
    links: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)


class BacklinksResponse(BaseModel):
    backlinks: list[str] = Field(default_factory=list)


class AliasesResponse(BaseModel):
    aliases: list[str] = Field(default_factory=list)


class NeighborsResponse(BaseModel):
    neighbors: list[str] = Field(default_factory=list)
