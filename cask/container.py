"""On-disk storage for encrypted containers.

Two layouts are supported:

- single file: ``<name>.enc`` holds ``iv || auth_tag || ciphertext``;
- chunked: ``<name>.enc.chunk0`` .. ``chunkN`` hold consecutive ciphertext
  slices, for hosts with a per-file size limit.

Both are described by a JSON sidecar ``<name>.enc.meta.json`` carrying the
algorithm, KDF, salt, IV and tag. The sidecar never contains the passphrase.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .encryption import EncryptedContainer
from .errors import FormatError


logger = logging.getLogger(__name__)


def meta_path_for(enc_path: str) -> str:
    """``dist/assets.cask.enc`` -> ``dist/assets.cask.enc.meta.json``."""
    p = Path(enc_path)
    return str(p.with_name(p.name + ".meta.json"))


def _atomic_write(path: str, data: bytes) -> None:
    out_dir = os.path.dirname(os.path.abspath(path)) or "."
    os.makedirs(out_dir, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".cask-", suffix=".tmp", dir=out_dir)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def save_container(
    container: EncryptedContainer,
    enc_path: str,
    *,
    chunk_size: Optional[int] = None,
    meta_path: Optional[str] = None,
) -> Dict[str, Any]:
    """Write ``container`` and its sidecar; returns the sidecar contents."""
    meta = container.to_metadata()
    if chunk_size:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        base = Path(enc_path)
        chunks: List[Dict[str, Any]] = []
        data = container.ciphertext
        for index, offset in enumerate(range(0, len(data), chunk_size)):
            piece = data[offset : offset + chunk_size]
            filename = f"{base.name}.chunk{index}"
            _atomic_write(str(base.with_name(filename)), piece)
            chunks.append({"filename": filename, "size": len(piece), "offset": offset, "index": index})
        meta["chunked"] = True
        meta["chunks"] = chunks
        logger.info("Wrote %d ciphertext chunks next to %s", len(chunks), enc_path)
    else:
        _atomic_write(enc_path, container.to_blob())
        meta["chunked"] = False
    _atomic_write(meta_path or meta_path_for(enc_path), json.dumps(meta, indent=2).encode("utf-8"))
    return meta


def read_metadata(meta_path: str) -> Dict[str, Any]:
    with open(meta_path, "rb") as fh:
        raw = fh.read()
    try:
        meta = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError(f"Malformed container metadata {meta_path}: {exc}") from exc
    if not isinstance(meta, dict):
        raise FormatError(f"Container metadata {meta_path} must be a JSON object")
    return meta


def _load_chunks(meta: Dict[str, Any], base_dir: Path) -> bytes:
    chunks = meta.get("chunks")
    if not isinstance(chunks, list):
        raise FormatError("Chunked container metadata has no chunk list")
    try:
        ordered = sorted(chunks, key=lambda c: int(c["index"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise FormatError("Chunk entry missing a valid index") from exc
    parts: List[bytes] = []
    expected_offset = 0
    for position, info in enumerate(ordered):
        filename = info.get("filename")
        if int(info["index"]) != position:
            raise FormatError(f"Chunk index gap at {position}")
        if not isinstance(filename, str) or os.path.basename(filename) != filename or filename in ("", ".", ".."):
            raise FormatError(f"Invalid chunk filename: {filename!r}")
        if info.get("offset", expected_offset) != expected_offset:
            raise FormatError(f"Chunk {position} offset does not follow the previous chunk")
        try:
            with open(base_dir / filename, "rb") as fh:
                piece = fh.read()
        except FileNotFoundError as exc:
            raise FormatError(f"Missing ciphertext chunk: {filename}") from exc
        if len(piece) != info.get("size"):
            raise FormatError(f"Chunk {filename} is {len(piece)} bytes, expected {info.get('size')}")
        parts.append(piece)
        expected_offset += len(piece)
    return b"".join(parts)


def load_container(enc_path: str, *, meta_path: Optional[str] = None) -> EncryptedContainer:
    """Load a container written by :func:`save_container`.

    Without a sidecar the file at ``enc_path`` is read as a bare blob with
    the default algorithm, KDF and salt.
    """
    meta_path = meta_path or meta_path_for(enc_path)
    if not os.path.exists(meta_path):
        with open(enc_path, "rb") as fh:
            return EncryptedContainer.from_blob(fh.read())
    meta = read_metadata(meta_path)
    if meta.get("chunked"):
        ciphertext = _load_chunks(meta, Path(enc_path).parent)
        container = EncryptedContainer.from_metadata(meta, ciphertext)
    else:
        with open(enc_path, "rb") as fh:
            container = EncryptedContainer.from_blob(fh.read(), meta)
    total = meta.get("totalSize")
    if total is not None and total != len(container.ciphertext):
        raise FormatError(f"Ciphertext is {len(container.ciphertext)} bytes, metadata says {total}")
    return container
