"""Ignore rules for filesystem events.

Editors and sync tools litter the vault with swap files, lock files,
backups and conflict copies. Each artifact family is one IgnoreRule;
adding a new family means appending a rule, not another conditional.
"""

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Literal

from noteapi.notes.paths import SYNC_METADATA_DIRS, is_markdown

RuleKind = Literal["name", "prefix", "suffix", "contains", "regex"]


@dataclass(frozen=True)
class IgnoreRule:
    """A single name-matching rule applied to one path component."""

    kind: RuleKind
    value: str
    reason: str
    _regex: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.kind == "regex":
            object.__setattr__(self, "_regex", re.compile(self.value))

    def matches(self, name: str) -> bool:
        lower = name.lower()
        if self.kind == "name":
            return lower == self.value
        if self.kind == "prefix":
            return lower.startswith(self.value)
        if self.kind == "suffix":
            return lower.endswith(self.value)
        if self.kind == "contains":
            return self.value in lower
        return bool(self._regex and self._regex.search(name))


DEFAULT_IGNORE_RULES: tuple[IgnoreRule, ...] = (
    IgnoreRule("prefix", ".", "hidden"),
    *(IgnoreRule("name", d.lower(), "sync_metadata") for d in sorted(SYNC_METADATA_DIRS)),
    IgnoreRule("contains", "sync-conflict", "conflict"),
    IgnoreRule("contains", "(conflicted copy)", "conflict"),
    IgnoreRule("contains", ".conflict", "conflict"),
    IgnoreRule("suffix", "~", "backup"),
    IgnoreRule("suffix", ".bak", "backup"),
    IgnoreRule("suffix", ".orig", "backup"),
    IgnoreRule("regex", r"\.sw[a-p]$", "swap"),
    IgnoreRule("suffix", ".tmp", "temp"),
    IgnoreRule("suffix", ".temp", "temp"),
    IgnoreRule("suffix", ".part", "temp"),
    IgnoreRule("suffix", ".crdownload", "temp"),
    IgnoreRule("regex", r"^#.*#$", "lock"),
    IgnoreRule("prefix", "~$", "lock"),
    IgnoreRule("suffix", ".lock", "lock"),
    IgnoreRule("name", "4913", "temp"),
)


class IgnoreMatcher:
    """Decides whether a vault-relative event path should be dropped."""

    def __init__(
        self,
        rules: tuple[IgnoreRule, ...] = DEFAULT_IGNORE_RULES,
        ignored_dirs: list[str] | None = None,
    ) -> None:
        self.rules = rules
        self.ignored_dirs = [PurePosixPath(d) for d in (ignored_dirs or []) if d]

    def reason(self, rel_path: str) -> str | None:
        """Return why a path is ignored, or None if it should be indexed.

        Examples:
            >>> IgnoreMatcher().reason("notes/.note.md.swp")
            'hidden'
            >>> IgnoreMatcher().reason("notes/idea.md") is None
            True
        """
        path = PurePosixPath(rel_path)
        if not path.parts:
            return "root"
        for ignored in self.ignored_dirs:
            if path == ignored or ignored in path.parents:
                return "ignored_dir"
        for part in path.parts:
            for rule in self.rules:
                if rule.matches(part):
                    return rule.reason
        if not is_markdown(path.name):
            return "not_markdown"
        return None

    def is_ignored(self, rel_path: str) -> bool:
        return self.reason(rel_path) is not None
