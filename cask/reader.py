from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import FormatError, OutOfBoundsError, PathIsDirectoryError, PathNotFoundError
from .header import Header, read_header
from .pathutil import norm_path, split_path
from . import tree as _tree


logger = logging.getLogger(__name__)

BufferLike = Union[bytes, bytearray, memoryview]


@dataclass
class EntryInfo:
    path: str
    size: int
    offset: int


class ArchiveReader:
    """Random-access view over an in-memory container.

    The buffer is copied into an immutable ``bytes`` object on construction,
    so one reader may be shared across threads without locking.
    """

    def __init__(self, buffer: BufferLike):
        self._buffer: bytes = buffer if isinstance(buffer, bytes) else bytes(buffer)
        self.header: Header = read_header(self._buffer)
        self.tree: Dict[str, Any] = self.header.tree
        self.data_offset: int = self.header.data_offset

    @classmethod
    def open(cls, buffer: BufferLike) -> "ArchiveReader":
        return cls(buffer)

    @classmethod
    def from_file(cls, path: str) -> "ArchiveReader":
        with open(path, "rb") as fh:
            return cls(fh.read())

    def __len__(self) -> int:
        return len(self._buffer)

    def read(self, path: str) -> bytes:
        """Return the bytes stored at ``path``.

        Raises:
            PathNotFoundError: a segment is missing or an intermediate segment
                is a file.
            PathIsDirectoryError: ``path`` names a directory.
            OutOfBoundsError: the entry's byte range lies outside the buffer.
            FormatError: the entry is neither a file nor a directory, or its
                size/offset fields are malformed.
        """
        info = self.stat(path)
        start = self.data_offset + info.offset
        end = start + info.size
        if end > len(self._buffer):
            raise OutOfBoundsError(
                f"Entry '{info.path}' spans [{start}, {end}) but archive is {len(self._buffer)} bytes"
            )
        return self._buffer[start:end]

    def stat(self, path: str) -> EntryInfo:
        segments = split_path(path)
        node = _tree.resolve_file(self.tree, segments)
        return EntryInfo(
            path="/".join(segments),
            size=_tree.entry_size(node),
            offset=_tree.entry_offset(node),
        )

    def size(self, path: str) -> int:
        return self.stat(path).size

    def exists(self, path: str) -> bool:
        """True when ``path`` names a file entry."""
        try:
            _tree.resolve_file(self.tree, split_path(path))
        except (PathNotFoundError, PathIsDirectoryError):
            return False
        return True

    def is_dir(self, path: str) -> bool:
        try:
            node = _tree.lookup(self.tree, split_path(path))
        except PathNotFoundError:
            return False
        return _tree.is_dir(node)

    def list(self) -> List[str]:
        # Recomputed from the tree on every call; nothing is cached.
        return _tree.file_paths(self.tree)

    def dirs(self) -> List[str]:
        return list(_tree.iter_dirs(self.tree))

    def walk(self) -> Iterator[EntryInfo]:
        for path, node in _tree.iter_files(self.tree):
            yield EntryInfo(path=path, size=_tree.entry_size(node), offset=_tree.entry_offset(node))

    def total_size(self) -> int:
        return sum(e.size for e in self.walk())

    def verify(self) -> int:
        """Read every entry once; returns the number of files checked."""
        n = 0
        for e in self.walk():
            self.read(e.path)
            n += 1
        return n

    def extract(self, dest_dir: str, paths: Optional[List[str]] = None) -> List[str]:
        """Write entries to ``dest_dir``; returns the archive paths written.

        ``paths`` restricts extraction to those files and to everything below
        those directories.
        """
        wanted = None
        if paths:
            wanted = [norm_path(p) for p in paths]

        def _selected(p: str) -> bool:
            return wanted is None or any(p == w or p.startswith(w + "/") for w in wanted)

        written: List[str] = []
        for d in self.dirs():
            if _selected(d):
                os.makedirs(os.path.join(dest_dir, *_safe_parts(d)), exist_ok=True)
        for e in self.walk():
            if not _selected(e.path):
                continue
            out_path = os.path.join(dest_dir, *_safe_parts(e.path))
            os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
            with open(out_path, "wb") as wf:
                wf.write(self.read(e.path))
            written.append(e.path)
        logger.debug("Extracted %d entries to %s", len(written), dest_dir)
        return written


def _safe_parts(path: str) -> List[str]:
    parts = path.split("/")
    if any(p in ("", ".", "..") or "\\" in p for p in parts):
        raise FormatError(f"Refusing to extract unsafe entry name: {path!r}")
    return parts
