from __future__ import annotations

import concurrent.futures as _fut
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .constants import DEFAULT_JOBS, MAX_SAFE_OFFSET
from .errors import BuildError, PathNotFoundError
from .header import pack_header
from .pathutil import split_path
from . import tree as _tree


logger = logging.getLogger(__name__)

Segments = Tuple[str, ...]


@dataclass
class _Staged:
    segments: Segments
    fs_path: Optional[str] = None
    data: Optional[bytes] = None

    def load(self) -> bytes:
        if self.data is not None:
            return self.data
        try:
            with open(self.fs_path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            raise BuildError(f"Cannot read source file {self.fs_path}: {exc}") from exc


def _arc_segments(arc_path: str) -> Segments:
    try:
        segments = tuple(split_path(arc_path))
    except PathNotFoundError as exc:
        raise BuildError(str(exc)) from exc
    if not segments:
        raise BuildError(f"Empty archive path: {arc_path!r}")
    return segments


class ArchiveBuilder:
    """Collects files and serializes them into a single container.

    Nothing is laid out until :meth:`to_bytes`; at that point entries are
    ordered lexicographically by path segment so offsets depend only on the
    input set, never on the order files were added or read.
    """

    def __init__(self, jobs: int = DEFAULT_JOBS):
        self.jobs = max(1, int(jobs))
        self._files: Dict[Segments, _Staged] = {}
        self._dirs: set[Segments] = set()

    @property
    def file_count(self) -> int:
        return len(self._files)

    def add_bytes(self, arc_path: str, data: bytes) -> None:
        """Stage in-memory ``data`` under ``arc_path``."""
        segments = _arc_segments(arc_path)
        self._stage(_Staged(segments=segments, data=bytes(data)))

    def add_file(self, arc_path: str, fs_path: str) -> None:
        """Stage a filesystem file; its bytes are read during serialization."""
        segments = _arc_segments(arc_path)
        self._stage(_Staged(segments=segments, fs_path=str(fs_path)))

    def add_empty_dir(self, arc_path: str) -> None:
        self._dirs.add(_arc_segments(arc_path))

    def add_directory(self, fs_root: str, prefix: str = "") -> None:
        """Stage every file and directory below ``fs_root``.

        Symlinks are skipped. Entry names containing a backslash are rejected,
        since readers treat backslashes as separators and could never reach them.
        """
        root = Path(fs_root)
        if not root.exists():
            raise BuildError(f"Source directory not found: {fs_root}")
        if not root.is_dir():
            raise BuildError(f"Source path is not a directory: {fs_root}")
        base: Segments = _arc_segments(prefix) if prefix.strip("/\\") else ()
        if base:
            self._dirs.add(base)

        def _onerror(exc: OSError) -> None:
            raise BuildError(f"Cannot scan {exc.filename}: {exc}") from exc

        for dirpath, dirnames, filenames in os.walk(str(root), onerror=_onerror):
            rel = os.path.relpath(dirpath, start=str(root))
            rel_parts: Segments = () if rel == "." else tuple(Path(rel).parts)
            # prune symlink directories to avoid walking into them
            kept = []
            for d in dirnames:
                if os.path.islink(os.path.join(dirpath, d)):
                    logger.warning("Skipping symlinked directory %s", os.path.join(dirpath, d))
                    continue
                self._check_name(d, dirpath)
                kept.append(d)
                self._dirs.add(base + rel_parts + (d,))
            dirnames[:] = kept
            for f in filenames:
                full = os.path.join(dirpath, f)
                if os.path.islink(full):
                    logger.warning("Skipping symlink %s", full)
                    continue
                self._check_name(f, dirpath)
                self._stage(_Staged(segments=base + rel_parts + (f,), fs_path=full))

    def to_bytes(self) -> bytes:
        """Lay out the staged entries and return the complete container."""
        files = sorted(self._files.values(), key=lambda s: s.segments)
        contents = self._load_contents(files)

        root = _tree.new_dir()
        ordered: List[Tuple[Segments, Optional[int]]] = [(d, None) for d in self._dirs]
        ordered.extend((s.segments, i) for i, s in enumerate(files))
        ordered.sort(key=lambda item: item[0])

        offset = 0
        for segments, idx in ordered:
            if idx is None:
                _tree.ensure_dir(root, segments)
                continue
            size = len(contents[idx])
            if offset + size > MAX_SAFE_OFFSET:
                raise BuildError(
                    f"Offset range exceeded at '{'/'.join(segments)}': "
                    f"{offset + size} > {MAX_SAFE_OFFSET}"
                )
            _tree.insert_file(root, segments, size, offset)
            offset += size

        header = pack_header(root)
        logger.info("Packed %d files, %d bytes of data, %d byte header", len(files), offset, len(header))
        return b"".join([header, *contents])

    def write(self, out_path: str) -> int:
        """Serialize to ``out_path`` atomically and return the byte count.

        The archive is written to a sibling temporary file first so a failed
        build never leaves a partial container behind.
        """
        blob = self.to_bytes()
        out_dir = os.path.dirname(os.path.abspath(out_path)) or "."
        os.makedirs(out_dir, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".cask-", suffix=".tmp", dir=out_dir)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(blob)
            os.replace(tmp, out_path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        return len(blob)

    # internals
    def _stage(self, staged: _Staged) -> None:
        if staged.segments in self._files:
            raise BuildError(f"Name collision: '{'/'.join(staged.segments)}' added twice")
        self._files[staged.segments] = staged

    @staticmethod
    def _check_name(name: str, where: str) -> None:
        if "\\" in name:
            raise BuildError(f"Entry name contains a backslash: {os.path.join(where, name)!r}")

    def _load_contents(self, files: List[_Staged]) -> List[bytes]:
        if self.jobs == 1 or len(files) < 2:
            return [s.load() for s in files]
        # map() yields in submission order, so completion order cannot leak
        # into offset assignment.
        with _fut.ThreadPoolExecutor(max_workers=self.jobs) as ex:
            return list(ex.map(_Staged.load, files))


def build(root_directory: str, *, jobs: int = DEFAULT_JOBS) -> bytes:
    """Build a container from every file below ``root_directory``."""
    builder = ArchiveBuilder(jobs=jobs)
    builder.add_directory(root_directory)
    return builder.to_bytes()


def build_mapping(files: Mapping[str, bytes], *, empty_dirs: Iterable[str] = ()) -> bytes:
    """Build a container from ``{archive_path: bytes}`` pairs."""
    builder = ArchiveBuilder(jobs=1)
    for arc_path, data in files.items():
        builder.add_bytes(arc_path, data)
    for d in empty_dirs:
        builder.add_empty_dir(d)
    return builder.to_bytes()
