"""File tree nodes as they appear in the JSON header.

A directory is ``{"files": {name: node}}``; a file is
``{"size": int, "offset": "<decimal string>"}``. Nodes are kept as plain
dicts so the header round-trips through ``json`` untouched.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Sequence, Tuple

from .errors import BuildError, FormatError, PathIsDirectoryError, PathNotFoundError
from .pathutil import join_path


Node = Dict[str, Any]


def new_dir() -> Node:
    return {"files": {}}


def file_node(size: int, offset: int) -> Node:
    return {"size": size, "offset": str(offset)}


def is_dir(node: Any) -> bool:
    return isinstance(node, dict) and "files" in node


def is_file(node: Any) -> bool:
    return isinstance(node, dict) and "files" not in node and "size" in node


def children(node: Node) -> Dict[str, Node]:
    files = node.get("files")
    if not isinstance(files, dict):
        raise FormatError("Directory node has no 'files' mapping")
    return files


def ensure_dir(root: Node, segments: Sequence[str]) -> Node:
    """Return the directory at ``segments``, creating missing levels."""
    node = root
    for i, name in enumerate(segments):
        kids = children(node)
        child = kids.get(name)
        if child is None:
            child = new_dir()
            kids[name] = child
        elif not is_dir(child):
            where = "/".join(segments[: i + 1])
            raise BuildError(f"Name collision: '{where}' is both a file and a directory")
        node = child
    return node


def insert_file(root: Node, segments: Sequence[str], size: int, offset: int) -> None:
    if not segments:
        raise BuildError("Cannot store a file at the archive root")
    parent = ensure_dir(root, segments[:-1])
    kids = children(parent)
    name = segments[-1]
    if name in kids:
        raise BuildError(f"Name collision: '{'/'.join(segments)}' already exists")
    kids[name] = file_node(size, offset)


def lookup(root: Node, segments: Sequence[str]) -> Node:
    """Walk ``segments`` from ``root`` and return the node found.

    Every intermediate segment must be a directory; the final node may be
    either kind. An empty segment list yields the root itself. A node that is
    neither a directory nor a file entry raises ``FormatError``.
    """
    node = root
    for i, name in enumerate(segments):
        if not is_dir(node):
            raise PathNotFoundError(f"Not a directory: {'/'.join(segments[:i])}")
        kids = children(node)
        if name not in kids:
            raise PathNotFoundError(f"Path not found: {'/'.join(segments)}")
        node = kids[name]
        if not (is_dir(node) or is_file(node)):
            raise FormatError(f"Invalid node at {'/'.join(segments[: i + 1])!r}")
    return node


def resolve_file(root: Node, segments: Sequence[str]) -> Node:
    if not segments:
        raise PathIsDirectoryError("Path is a directory: <root>")
    node = lookup(root, segments)
    if is_dir(node):
        raise PathIsDirectoryError(f"Path is a directory: {'/'.join(segments)}")
    return node


def entry_size(node: Node) -> int:
    size = node.get("size")
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        raise FormatError(f"Invalid file size: {size!r}")
    return size


def entry_offset(node: Node) -> int:
    if node.get("unpacked"):
        raise FormatError("File is stored outside the archive (unpacked)")
    raw = node.get("offset")
    # Older writers emitted numbers; the format specifies decimal strings.
    if isinstance(raw, int) and not isinstance(raw, bool):
        raw = str(raw)
    if not isinstance(raw, str) or not raw.isdigit() or not raw.isascii():
        raise FormatError(f"Invalid file offset: {raw!r}")
    return int(raw)


def iter_files(node: Node, prefix: str = "") -> Iterator[Tuple[str, Node]]:
    """Yield ``(path, file_node)`` pairs depth first in header order."""
    for name, child in children(node).items():
        path = join_path(prefix, name)
        if is_dir(child):
            yield from iter_files(child, path)
        elif is_file(child):
            yield path, child
        else:
            raise FormatError(f"Invalid node at {path!r}")


def iter_dirs(node: Node, prefix: str = "") -> Iterator[str]:
    for name, child in children(node).items():
        if is_dir(child):
            path = join_path(prefix, name)
            yield path
            yield from iter_dirs(child, path)


def file_paths(node: Node) -> List[str]:
    return [path for path, _ in iter_files(node)]
