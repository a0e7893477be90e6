"""
Entry model and lazy path resolution for MCastFSv2 directory trees

Entry records only carry their own name and a parent id. Full paths are
resolved after decoding, walking parent ids through directory entries, so
records may arrive in any order. A missing ancestor degrades to a
partial path instead of failing the whole tree.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Mapping, Optional, Tuple

from .errors import UnresolvedParent

logger = logging.getLogger(__name__)

ROOT_PARENT_ID = 0


class EntryKind(Enum):
    """Entry kind, taken from the high byte of the entry's mode field"""
    DIRECTORY = 0x41
    FILE = 0x81


@dataclass
class Entry:
    """One directory or file record of the container"""
    entry_id: int
    parent_id: int
    kind: EntryKind
    name: str
    mode: int = 0                # Unix st_mode as stored in the record
    declared_size: int = 0       # Observed, not used for decoding
    mtime: int = 0               # Seconds since epoch as stored

    @property
    def is_directory(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def permissions(self) -> int:
        return self.mode & 0o7777


@dataclass(frozen=True)
class ResolvedPath:
    """Path of an entry relative to the extraction root"""
    parts: Tuple[str, ...]
    unresolved_parent: Optional[int] = None

    @property
    def path(self) -> str:
        return '/'.join(self.parts)

    @property
    def is_partial(self) -> bool:
        return self.unresolved_parent is not None

    def issue(self, entry: Entry) -> Optional[UnresolvedParent]:
        """UnresolvedParent condition for this path, if it is partial"""
        if not self.is_partial:
            return None
        return UnresolvedParent(
            f"{entry.name}: parent directory {self.unresolved_parent} unknown, "
            f"extracting as '{self.path}'",
            entry_id=entry.entry_id,
            path=self.path,
        )


class DirectoryTree:
    """
    Resolves entry paths on demand.

    Example:
        tree = DirectoryTree(decoder.state.entries)
        for entry, resolved in tree.files():
            print(resolved.path)
    """

    def __init__(self, entries: Mapping[int, Entry]):
        self.entries = entries
        self._cache: Dict[int, ResolvedPath] = {}

    @property
    def directories(self) -> Dict[int, Entry]:
        return {eid: e for eid, e in self.entries.items() if e.is_directory}

    def resolve(self, entry_id: int) -> ResolvedPath:
        """
        Resolve the path of an entry.

        Args:
            entry_id: Id of a classified entry

        Returns:
            ResolvedPath; `unresolved_parent` is set when the walk hit an
            unknown (or cyclic) ancestor, in which case `parts` only holds
            the components below it.

        Raises:
            KeyError: entry_id was never classified
        """
        if entry_id in self._cache:
            return self._cache[entry_id]

        entry = self.entries[entry_id]
        components = [entry.name]
        visited = {entry_id}
        unresolved = None
        current = entry.parent_id

        while current != ROOT_PARENT_ID:
            parent = self.entries.get(current)
            if parent is None or not parent.is_directory or current in visited:
                unresolved = current
                break
            components.append(parent.name)
            visited.add(current)
            current = parent.parent_id

        parts = tuple(part for part in reversed(components) if part)
        resolved = ResolvedPath(parts=parts, unresolved_parent=unresolved)
        if unresolved is not None:
            logger.debug(f"Entry {entry_id} ({entry.name}): ancestor {unresolved} unresolved")
        self._cache[entry_id] = resolved
        return resolved

    def _walk(self, kind: EntryKind) -> Iterator[Tuple[Entry, ResolvedPath]]:
        for entry_id in sorted(self.entries):
            entry = self.entries[entry_id]
            if entry.kind is kind:
                yield entry, self.resolve(entry_id)

    def directory_entries(self) -> Iterator[Tuple[Entry, ResolvedPath]]:
        """Directories with their resolved paths, ordered by entry id"""
        return self._walk(EntryKind.DIRECTORY)

    def files(self) -> Iterator[Tuple[Entry, ResolvedPath]]:
        """Files with their resolved paths, ordered by entry id"""
        return self._walk(EntryKind.FILE)
