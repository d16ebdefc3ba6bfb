"""Wikilink graph over the vault.

The graph is recomputed from disk on every query: notes are walked with the
store's exclusion rules, their wikilinks and aliases extracted, and the
requested relation derived. Nothing is cached between calls.
"""

import re
from pathlib import PurePosixPath

from noteapi.dependencies import VaultNotFoundError, logger
from noteapi.graph.models import NoteLinks
from noteapi.notes.models import FrontMatter
from noteapi.notes.store import NoteStore
from noteapi.notes.tools import normalize_path, parse_note

# [[target]], [[target#section]], [[target|alias]], [[target#section|alias]]
WIKILINK_PATTERN = re.compile(r"\[\[([^\]|#]+)(?:#[^\]|]+)?(?:\|[^\]]+)?\]\]")


def extract_wikilinks(body: str) -> list[str]:
    """Extract wikilink targets as .md paths, in order of appearance.

    Examples:
        >>> extract_wikilinks("See [[API Design#Auth]] and [[Projects/Plan|Plan]]")
        ['API Design.md', 'Projects/Plan.md']
    """
    return [normalize_path(match) for match in WIKILINK_PATTERN.findall(body) if match.strip()]


def extract_aliases(fm: FrontMatter) -> list[str]:
    """Read `aliases` (or `alias`) from front matter as a list of strings."""
    value = fm.get("aliases")
    if value is None:
        value = fm.get("alias")
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _link_key(path: str) -> str:
    return re.sub(r"\.md$", "", path, flags=re.IGNORECASE).lower()


class LinkGraph:
    """Read-only link relations between the notes of a vault."""

    def __init__(self, store: NoteStore) -> None:
        self.store = store

    def load_notes(self) -> list[NoteLinks]:
        notes: list[NoteLinks] = []
        for abs_path in self.store.walk():
            try:
                text = abs_path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except UnicodeDecodeError as e:
                logger.warning(
                    "graph_note_skipped",
                    extra={"path": self.store.sandbox.relative(abs_path), "error": str(e)},
                )
                continue
            parsed = parse_note(text)
            notes.append(
                NoteLinks(
                    path=self.store.sandbox.relative(abs_path),
                    links=extract_wikilinks(parsed.body),
                    aliases=extract_aliases(parsed.frontmatter),
                )
            )
        return notes

    def _find(self, notes: list[NoteLinks], path: str) -> NoteLinks:
        """Locate a note, validating the path first.

        Raises:
            VaultSecurityError: If the path escapes the vault
            NotMarkdownError: If the path is not a .md file
            VaultNotFoundError: If no such note exists
        """
        rel = self.store.sandbox.relative(self.store.resolve_note(path))
        for note in notes:
            if note.path == rel:
                return note
        raise VaultNotFoundError(f"Note not found: {path}")

    @staticmethod
    def _backlinks_of(notes: list[NoteLinks], target: NoteLinks) -> list[str]:
        keys = {_link_key(target.path), PurePosixPath(target.path).stem.lower()}
        keys.update(alias.lower() for alias in target.aliases)
        return [
            note.path
            for note in notes
            if note.path != target.path and any(_link_key(link) in keys for link in note.links)
        ]

    def backlinks(self, path: str) -> list[str]:
        """Notes whose wikilinks point at the note's name or one of its aliases."""
        notes = self.load_notes()
        target = self._find(notes, path)
        result = self._backlinks_of(notes, target)
        logger.debug("graph_backlinks", extra={"path": target.path, "count": len(result)})
        return result

    def aliases(self, path: str) -> list[str]:
        notes = self.load_notes()
        return self._find(notes, path).aliases

    def neighbors(self, path: str) -> list[str]:
        """Outgoing links followed by backlinks, first occurrence wins."""
        notes = self.load_notes()
        target = self._find(notes, path)
        combined = target.links + self._backlinks_of(notes, target)
        return list(dict.fromkeys(combined))
