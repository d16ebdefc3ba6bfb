"""Vault path sandboxing and enumeration exclusion rules.

Every filesystem path the service touches is derived from an untrusted
relative path through VaultSandbox.resolve(). The canonical vault root is
computed once; the resolved target must equal it or live beneath it after
symlinks are followed, which covers `..` segments, absolute-path injection
and symlinked descendants pointing elsewhere.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from noteapi.dependencies import VaultSecurityError

# Folders created by sync tools and NAS software that never hold notes
SYNC_METADATA_DIRS = frozenset(
    {".stfolder", ".stversions", ".sync", ".dropbox.cache", "@eaDir", "#recycle"}
)

# Substrings sync tools put into the names of conflicting copies
CONFLICT_MARKERS = ("sync-conflict", "(conflicted copy)", ".conflict")


def is_markdown(path: str | os.PathLike[str]) -> bool:
    """Classify a path as a note by its extension alone.

    Examples:
        >>> is_markdown("Projects/API.MD")
        True
        >>> is_markdown("image.png")
        False
    """
    return str(path).lower().endswith(".md")


def is_conflict_name(name: str) -> bool:
    """Check whether a filename carries a sync-tool conflict marker."""
    lower = name.lower()
    return any(marker in lower for marker in CONFLICT_MARKERS)


def is_excluded_name(name: str) -> bool:
    """Check whether a directory entry is excluded from enumeration and indexing.

    Hidden entries, sync metadata folders and conflict copies are excluded
    from every walk, the watcher and the link graph.
    """
    return name.startswith(".") or name in SYNC_METADATA_DIRS or is_conflict_name(name)


def is_excluded_path(rel_path: str) -> bool:
    """Check whether any component of a vault path is excluded.

    Examples:
        >>> is_excluded_path(".obsidian/workspace.md")
        True
        >>> is_excluded_path("Projects/plan.md")
        False
    """
    return any(is_excluded_name(part) for part in PurePosixPath(rel_path).parts)


@dataclass
class VaultSandbox:
    """Maps untrusted relative paths onto the vault root."""

    root: Path
    real_root: Path = field(init=False)

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.real_root = Path(os.path.realpath(self.root))

    def resolve(self, relative_path: str) -> Path:
        """Resolve a relative path to a canonical absolute path in the vault.

        Existing components are resolved through symlinks; a leaf that does
        not exist yet (a note about to be created) keeps its lexical form,
        while its existing parents are still resolved and checked.

        Args:
            relative_path: Untrusted path relative to the vault root

        Returns:
            Canonical absolute path inside the vault

        Raises:
            VaultSecurityError: If the target resolves outside the vault root
        """
        if "\x00" in relative_path:
            raise VaultSecurityError(f"Path traversal detected: {relative_path!r}")

        root = str(self.real_root)
        joined = os.path.normpath(os.path.join(root, relative_path))
        real = os.path.realpath(joined)

        if real != root and not real.startswith(root.rstrip(os.sep) + os.sep):
            raise VaultSecurityError(f"Path traversal detected: {relative_path}")
        return Path(real)

    def relative(self, absolute_path: str | os.PathLike[str]) -> str:
        """Return the slash-separated vault path of an absolute path.

        Raises:
            VaultSecurityError: If the path is not inside the vault root
        """
        try:
            rel = Path(absolute_path).relative_to(self.real_root)
        except ValueError as e:
            raise VaultSecurityError(f"Path outside vault: {absolute_path}") from e
        return PurePosixPath(*rel.parts).as_posix() if rel.parts else ""

    def contains(self, absolute_path: str | os.PathLike[str]) -> bool:
        """Check whether an absolute path lies under the vault root."""
        try:
            Path(absolute_path).relative_to(self.real_root)
        except ValueError:
            return False
        return True

    def exists(self) -> bool:
        return self.real_root.is_dir()
