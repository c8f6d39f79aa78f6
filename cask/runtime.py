"""Startup-time access to a sealed asset container.

:class:`RuntimeLoader` decrypts the container once, keeps the plaintext in
memory only, and hands the host a read-only path API. What happens when the
container cannot be opened is an explicit constructor choice:

- ``on_error="raise"`` (default): the failure propagates from :meth:`init`.
- ``on_error="placeholder"``: the failure is recorded on ``load_error`` and
  every read yields the configured placeholder bytes.
"""

from __future__ import annotations

import concurrent.futures as _fut
import logging
import mimetypes
import os
from pathlib import Path
from typing import Iterator, List, Optional, Set, Union

from .container import load_container
from .encryption import decrypt
from .errors import (
    AuthenticationError,
    FormatError,
    OutOfBoundsError,
    PathIsDirectoryError,
    PathNotFoundError,
)
from .kdf import Passphrase
from .pathutil import split_path
from .reader import ArchiveReader
from .writer import build_mapping


logger = logging.getLogger(__name__)

ON_ERROR_RAISE = "raise"
ON_ERROR_PLACEHOLDER = "placeholder"

_LOAD_ERRORS = (FormatError, OutOfBoundsError, AuthenticationError, OSError)

_CONTENT_TYPES = {
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".txt": "text/plain",
}


def content_type(path: str) -> str:
    ext = os.path.splitext(path.replace("\\", "/"))[1].lower()
    if ext in _CONTENT_TYPES:
        return _CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type("x" + ext) if ext else (None, None)
    return guessed or "application/octet-stream"


class ParseRegistry:
    """Names of data sets already parsed during one loader session.

    Replaces a process-wide set: each loader owns its own registry, so
    sessions (and tests) never see each other's registrations.
    """

    def __init__(self) -> None:
        self._names: Set[str] = set()

    def register(self, name: str) -> bool:
        """Record ``name``; False when it was already registered."""
        if name in self._names:
            return False
        self._names.add(name)
        return True

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._names))

    def clear(self) -> None:
        self._names.clear()


class DirectorySource:
    """Raw asset directory exposed through the reader API (development mode)."""

    def __init__(self, root: str):
        self.root = Path(root)
        if not self.root.is_dir():
            raise FileNotFoundError(f"Asset directory not found: {root}")

    def _resolve(self, path: str) -> Path:
        segments = split_path(path)
        target = self.root.joinpath(*segments)
        if not segments or target.is_dir():
            raise PathIsDirectoryError(f"Path is a directory: {'/'.join(segments) or '<root>'}")
        if not target.is_file():
            raise PathNotFoundError(f"Path not found: {'/'.join(segments)}")
        return target

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def exists(self, path: str) -> bool:
        try:
            self._resolve(path)
        except (PathNotFoundError, PathIsDirectoryError):
            return False
        return True

    def list(self) -> List[str]:
        out: List[str] = []
        for dirpath, dirnames, filenames in os.walk(str(self.root)):
            dirnames.sort()
            rel = os.path.relpath(dirpath, start=str(self.root))
            for f in sorted(filenames):
                out.append(f if rel == "." else Path(rel, f).as_posix())
        return out


Source = Union[ArchiveReader, DirectorySource]


class RuntimeLoader:
    def __init__(self, *, on_error: str = ON_ERROR_RAISE, placeholder: bytes = b""):
        if on_error not in (ON_ERROR_RAISE, ON_ERROR_PLACEHOLDER):
            raise ValueError(f"on_error must be '{ON_ERROR_RAISE}' or '{ON_ERROR_PLACEHOLDER}'")
        self.on_error = on_error
        self.placeholder = placeholder
        self.registry = ParseRegistry()
        self.source: Optional[Source] = None
        self.load_error: Optional[BaseException] = None
        self.dev_mode = False

    @property
    def ready(self) -> bool:
        return self.source is not None

    @property
    def degraded(self) -> bool:
        return self.load_error is not None

    def init(self, container_path: str, passphrase: Passphrase) -> ArchiveReader:
        """Decrypt ``container_path`` in memory and return a reader over it.

        Decrypted bytes exist only in the returned reader; nothing is written
        back to disk.
        """
        try:
            container = load_container(container_path)
            plaintext = decrypt(container, passphrase)
            reader = ArchiveReader.open(plaintext)
        except _LOAD_ERRORS as exc:
            if self.on_error == ON_ERROR_RAISE:
                raise
            logger.warning("Asset container %s unavailable (%s); serving placeholders", container_path, exc)
            self.load_error = exc
            reader = ArchiveReader.open(build_mapping({}))
        else:
            self.load_error = None
            logger.info("Loaded %s: %d files", container_path, len(reader.list()))
        self.source = reader
        self.dev_mode = False
        return reader

    def init_directory(self, assets_dir: str) -> DirectorySource:
        """Serve raw files from ``assets_dir`` without decryption."""
        source = DirectorySource(assets_dir)
        self.source = source
        self.load_error = None
        self.dev_mode = True
        logger.info("Development mode: serving raw assets from %s", assets_dir)
        return source

    def init_background(self, container_path: str, passphrase: Passphrase) -> "_fut.Future[ArchiveReader]":
        """Run :meth:`init` on a worker thread.

        Key derivation is slow on purpose; hosts with an interactive thread
        call this and wait on the future, optionally with a timeout.
        """
        ex = _fut.ThreadPoolExecutor(max_workers=1, thread_name_prefix="cask-loader")
        try:
            return ex.submit(self.init, container_path, passphrase)
        finally:
            ex.shutdown(wait=False)

    def _require(self) -> Source:
        if self.source is None:
            raise RuntimeError("Assets not loaded; call init() first")
        return self.source

    def read(self, path: str) -> bytes:
        source = self._require()
        if self.load_error is not None:
            return self.placeholder
        return source.read(path)

    def read_or(self, path: str, default: bytes) -> bytes:
        """Like :meth:`read`, but a missing path yields ``default``."""
        try:
            return self.read(path)
        except PathNotFoundError:
            return default

    def exists(self, path: str) -> bool:
        return self._require().exists(path)

    def list(self) -> List[str]:
        return self._require().list()

    def content_type(self, path: str) -> str:
        return content_type(path)


__all__ = [
    "RuntimeLoader",
    "ParseRegistry",
    "DirectorySource",
    "content_type",
]
