"""Projection of notes into search documents.

Pure functions, no I/O. The document id is the vault path in base64url
without padding, so it fits the engine's key alphabet ([A-Za-z0-9_-]) and
decodes back to the exact original path, Unicode and spaces included.
"""

import base64
import re
from datetime import date, datetime
from pathlib import PurePosixPath
from typing import Any

from noteapi.notes.models import FrontMatter
from noteapi.notes.tools import split_lines
from noteapi.search.models import SearchDocument

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.*)$")


def encode_path(path: str) -> str:
    """Encode a vault path as a document id.

    Examples:
        >>> encode_path("a/b.md")
        'YS9iLm1k'
    """
    return base64.urlsafe_b64encode(path.encode("utf-8")).decode("ascii").rstrip("=")


def decode_path(doc_id: str) -> str:
    """Recover the vault path from a document id."""
    padded = doc_id + "=" * (-len(doc_id) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


def extract_title_and_headings(body: str) -> tuple[str, list[str]]:
    """Extract the first H1 and every heading text from a note body.

    Returns:
        (title, headings); title is empty when the body has no H1

    Examples:
        >>> extract_title_and_headings("# A\\n## B\\ntext\\n# C")
        ('A', ['A', 'B', 'C'])
    """
    title = ""
    headings: list[str] = []
    for line in split_lines(body):
        match = HEADING_PATTERN.match(line)
        if match:
            text = match.group(2).strip()
            headings.append(text)
            if not title and len(match.group(1)) == 1:
                title = text
    return title, headings


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    return value


def to_search_document(path: str, fm: FrontMatter, body: str, mtime: float) -> SearchDocument:
    """Project a note into a SearchDocument.

    Args:
        path: Vault-relative note path
        fm: Parsed front matter
        body: Note body without front matter
        mtime: Last-modified time in seconds since the epoch

    Returns:
        The document to send to the index
    """
    title, headings = extract_title_and_headings(body)
    if not title:
        title = PurePosixPath(path).stem
    return SearchDocument(
        id=encode_path(path),
        title=title,
        headings=headings,
        frontmatter=_json_safe(fm),
        content=body,
        mtime=max(0, int(mtime * 1000)),
    )
