"""Note codec: front-matter parsing, rendering and body slicing.

Notes are UTF-8 Markdown files with an optional leading YAML front-matter
block delimited by `---` lines. python-frontmatter does the split; this
module adds the ordered round trip, table-of-contents extraction and the
section / line-range slicing used by GET /notes/{path}.
"""

import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

import frontmatter
import yaml

from noteapi.dependencies import InvalidInputError
from noteapi.notes.models import FrontMatter, NoteContent, TocEntry

# Headings that make it into the table of contents (levels 1-3)
TOC_HEADING_PATTERN = re.compile(r"^(#{1,3})\s+(.*)$")

LINE_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d*)\s*)?$")


def split_lines(text: str) -> list[str]:
    """Split on LF or CRLF only, unlike str.splitlines()."""
    return re.split(r"\r?\n", text)


def normalize_path(path: str) -> str:
    """Normalize a link target into a note path.

    - Strips leading/trailing whitespace
    - Strips leading/trailing slashes
    - Appends .md extension if not present

    Examples:
        >>> normalize_path("test")
        'test.md'
        >>> normalize_path("/Projects/API Design/")
        'Projects/API Design.md'
        >>> normalize_path("note.MD")
        'note.MD'
    """
    path = path.strip().strip("/")
    if not path.lower().endswith(".md"):
        path = f"{path}.md"
    return path


def coerce_frontmatter_value(value: Any) -> Any:
    """Map a YAML-loaded value onto the front-matter variant.

    Scalars, dates, lists and string-keyed mappings pass through (recursively);
    tuples and sets become lists, non-string keys become strings, and any
    other object is replaced by its string form.
    """
    if value is None or isinstance(value, (bool, int, float, str, datetime, date)):
        return value
    if isinstance(value, Mapping):
        return {str(k): coerce_frontmatter_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [coerce_frontmatter_value(v) for v in value]
    return str(value)


def parse_note(content: str) -> NoteContent:
    """Parse note content into frontmatter and body.

    Uses python-frontmatter to separate YAML frontmatter from
    markdown body. A malformed front-matter block is treated as part
    of the body rather than failing the read.

    Args:
        content: Raw note content (may or may not have frontmatter)

    Returns:
        NoteContent with ordered frontmatter (empty if absent) and body
    """
    try:
        post = frontmatter.loads(content)
    except (yaml.YAMLError, ValueError, TypeError):
        return NoteContent(frontmatter={}, body=content, raw=content)

    fm = coerce_frontmatter_value(dict(post.metadata)) if post.metadata else {}
    return NoteContent(frontmatter=fm, body=post.content, raw=content)


def render_note(fm: FrontMatter, body: str) -> str:
    """Serialize front matter and body into the on-disk representation.

    Key order is preserved. A note without front matter is written as its
    body alone, so plain Markdown files stay plain.

    Example output:
        ---
        tag: x
        ---

        hello
    """
    if not fm:
        return body if body.endswith("\n") or not body else body + "\n"
    post = frontmatter.Post(body)
    post.metadata = dict(fm)
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def build_toc(body: str) -> list[TocEntry]:
    """Collect level 1-3 headings with their body line index."""
    toc: list[TocEntry] = []
    for idx, line in enumerate(split_lines(body)):
        match = TOC_HEADING_PATTERN.match(line)
        if match:
            toc.append(TocEntry(level=len(match.group(1)), title=match.group(2).strip(), line=idx))
    return toc


def slice_section(body: str, toc: list[TocEntry], section: str) -> str | None:
    """Return the text under a heading, up to the next TOC heading.

    Returns:
        The trimmed section text, or None if no heading has that title
    """
    for i, entry in enumerate(toc):
        if entry.title == section:
            lines = split_lines(body)
            end = toc[i + 1].line if i + 1 < len(toc) else len(lines)
            return "\n".join(lines[entry.line + 1 : end]).strip()
    return None


def slice_lines(body: str, line_range: str) -> str:
    """Return a 1-based inclusive line range of the body.

    Accepts "N" (single line), "N-M" and "N-" (to the end).

    Raises:
        InvalidInputError: If the range is malformed or empty
    """
    match = LINE_RANGE_PATTERN.match(line_range)
    if not match:
        raise InvalidInputError(f"Invalid line range: {line_range}")
    start = int(match.group(1))
    end_group = match.group(2)
    if end_group is None:
        end = start
    elif end_group == "":
        end = None
    else:
        end = int(end_group)
    if start < 1 or (end is not None and end < start):
        raise InvalidInputError(f"Invalid line range: {line_range}")
    lines = split_lines(body)
    return "\n".join(lines[start - 1 : end])
