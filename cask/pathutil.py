from __future__ import annotations

from typing import List

from .constants import MAX_PATH_BYTES
from .errors import PathNotFoundError


def norm_path(p: str) -> str:
    """Canonical form of an archive path: ``a\\b//./c`` becomes ``a/b/c``."""
    return "/".join(split_path(p))


def split_path(p: str) -> List[str]:
    """Split an archive path into its segments after normalization.

    Archives may be built on either separator convention, so ``a\\b`` and
    ``a/b`` address the same entry. A path that cannot name an entry
    (``..`` segments, NUL bytes, oversized) raises ``PathNotFoundError``.
    """
    if "\x00" in p:
        raise PathNotFoundError(f"Invalid path contains NUL: {p!r}")
    if len(p.encode("utf-8")) > MAX_PATH_BYTES:
        raise PathNotFoundError(f"Path length exceeds {MAX_PATH_BYTES} bytes")
    parts = [q for q in p.replace("\\", "/").split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise PathNotFoundError(f"Path may not contain '..': {p!r}")
    return parts


def join_path(prefix: str, name: str) -> str:
    return f"{prefix}/{name}" if prefix else name
