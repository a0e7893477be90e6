"""
Extract a decoded MCastFSv2 image to disk

Directories are created first, then every file with a content buffer is
written, gunzipped on the way when its name carries a compressed suffix.
Problems with a single file are recorded in the ExtractionReport and the
batch carries on.
"""

import gzip
import logging
import os
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .container_decoder import DecoderState
from .directory_tree import Entry, ResolvedPath
from .errors import (
    CorruptStream, ExtractionIssue, MissingOrIncompleteFile, UnsafePath, WriteFailed,
)

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSED_SUFFIXES = ('.gz',)


@dataclass
class ExtractionReport:
    """Outcome of one extraction"""
    output_dir: Path
    directories_created: List[Path] = field(default_factory=list)
    files_written: List[Path] = field(default_factory=list)
    issues: List[ExtractionIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def add_issue(self, issue: ExtractionIssue):
        logger.warning(str(issue))
        self.issues.append(issue)


class Extractor:
    """
    Writes directories and files of a DecoderState under output_dir.

    Example:
        extractor = Extractor('/tmp/firmware', names=['rootfs.gz'])
        report = extractor.extract(decoder.state)
    """

    def __init__(self, output_dir: Union[str, Path],
                 names: Optional[Iterable[str]] = None,
                 decompress: bool = True,
                 compressed_suffixes: Sequence[str] = DEFAULT_COMPRESSED_SUFFIXES,
                 keep_partial: bool = True,
                 preserve_attributes: bool = False):
        """
        Args:
            output_dir: Extraction root, created if missing
            names: Only extract entries with one of these names or paths
            decompress: Gunzip files ending in a compressed suffix
            compressed_suffixes: Suffixes that select the gzip filter
            keep_partial: Write incompletely received files (zero-filled)
            preserve_attributes: Apply stored permission bits and mtimes
        """
        self.output_dir = Path(output_dir)
        self.names = set(names) if names else set()
        self.decompress = decompress
        self.compressed_suffixes = tuple(compressed_suffixes)
        self.keep_partial = keep_partial
        self.preserve_attributes = preserve_attributes

    def selected(self, entry: Entry, resolved: ResolvedPath) -> bool:
        if not self.names:
            return True
        return entry.name in self.names or resolved.path in self.names

    def extract(self, state: DecoderState) -> ExtractionReport:
        root = self.output_dir.resolve()
        root.mkdir(parents=True, exist_ok=True)
        report = ExtractionReport(output_dir=root)
        tree = state.tree()
        created_dirs: List[Tuple[Path, Entry]] = []

        if not self.names:
            logger.info("Creating directories")
            for entry, resolved in tree.directory_entries():
                target = self._target(root, entry, resolved, report)
                if target is None:
                    continue
                if not target.is_dir():
                    logger.debug(f"Creating {resolved.path}")
                    try:
                        target.mkdir(parents=True, exist_ok=True)
                    except OSError as e:
                        report.add_issue(WriteFailed(
                            f"{resolved.path}: cannot create directory ({e})",
                            entry_id=entry.entry_id, path=resolved.path))
                        continue
                    report.directories_created.append(target)
                created_dirs.append((target, entry))

        logger.info("Saving files")
        for entry, resolved in tree.files():
            if not self.selected(entry, resolved):
                continue
            issue = resolved.issue(entry)
            if issue is not None:
                report.add_issue(issue)
            target = self._target(root, entry, resolved, report)
            if target is None:
                continue
            self._write_file(state, entry, resolved, target, report)

        orphans = sorted(set(state.buffers) - set(state.files))
        if orphans and not self.names:
            logger.warning(f"{len(orphans)} file buffers have no file entry: {orphans}")

        if self.preserve_attributes:
            # Deepest first, so a read-only directory is locked last
            for target, entry in sorted(created_dirs, key=lambda d: len(d[0].parts), reverse=True):
                self._apply_attributes(target, entry)

        logger.info(
            f"Extracted {len(report.files_written)} files into {root} "
            f"({len(report.issues)} issues)")
        return report

    def _target(self, root: Path, entry: Entry, resolved: ResolvedPath,
                report: ExtractionReport) -> Optional[Path]:
        if not resolved.parts:
            report.add_issue(UnsafePath(
                f"Entry {entry.entry_id} has an empty path", entry_id=entry.entry_id))
            return None
        # Path calls reject NUL, and a separator would split one entry into several
        bad = [part for part in resolved.parts if '\x00' in part or '/' in part]
        if bad:
            report.add_issue(UnsafePath(
                f"{resolved.path!r}: invalid path component {bad[0]!r}, skipped",
                entry_id=entry.entry_id, path=resolved.path))
            return None
        target = root.joinpath(*resolved.parts).resolve()
        if root not in target.parents:
            report.add_issue(UnsafePath(
                f"{resolved.path}: resolves outside {root}, skipped",
                entry_id=entry.entry_id, path=resolved.path))
            return None
        return target

    def _write_file(self, state: DecoderState, entry: Entry, resolved: ResolvedPath,
                    target: Path, report: ExtractionReport):
        buffer = state.buffers.get(entry.entry_id)
        if buffer is None:
            report.add_issue(MissingOrIncompleteFile(
                f"{resolved.path} not found in data buffers",
                entry_id=entry.entry_id, path=resolved.path))
            return

        if not buffer.is_complete:
            missing = buffer.capacity - buffer.bytes_written
            report.add_issue(MissingOrIncompleteFile(
                f"{resolved.path} incomplete: {missing} of {buffer.capacity} bytes missing",
                entry_id=entry.entry_id, path=resolved.path))
            if not self.keep_partial:
                return

        data = buffer.tobytes()
        suffix = self._compressed_suffix(entry.name)
        if suffix is not None:
            try:
                data = gzip.decompress(data)
                target = target.with_name(target.name[:-len(suffix)])
            except (OSError, EOFError, zlib.error) as e:
                report.add_issue(CorruptStream(
                    f"{resolved.path}: decompression failed ({e}), writing compressed data",
                    entry_id=entry.entry_id, path=resolved.path))

        logger.info(f"Extracting {resolved.path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            report.add_issue(WriteFailed(
                f"{resolved.path}: cannot write {target} ({e})",
                entry_id=entry.entry_id, path=resolved.path))
            return
        report.files_written.append(target)

        if self.preserve_attributes:
            self._apply_attributes(target, entry)

    def _compressed_suffix(self, name: str) -> Optional[str]:
        if not self.decompress:
            return None
        for suffix in self.compressed_suffixes:
            if name.endswith(suffix) and len(name) > len(suffix):
                return suffix
        return None

    @staticmethod
    def _apply_attributes(target: Path, entry: Entry):
        try:
            if entry.mtime:
                os.utime(target, (entry.mtime, entry.mtime))
            if entry.permissions:
                os.chmod(target, entry.permissions)
        except OSError as e:
            logger.warning(f"Could not apply attributes to {target}: {e}")
