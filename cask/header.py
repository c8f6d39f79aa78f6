from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Any, Dict

from .constants import ALIGNMENT, PRELUDE_SIZE, SIZE_PICKLE_SIZE, U32_MAX
from .errors import BuildError, FormatError


_PRELUDE_STRUCT = struct.Struct("<IIII")
# Fields (little endian):
# size_pickle_size u32      payload length of the size pickle, always 4
# header_byte_length u32    length of the header pickle that follows it
# header_payload_size u32   header pickle payload: u32 json length + padded json
# json_length u32           unpadded JSON byte length


@dataclass
class Header:
    size_pickle_size: int
    header_byte_length: int
    header_payload_size: int
    json_length: int
    tree: Dict[str, Any]

    @property
    def data_offset(self) -> int:
        # The size pickle occupies the first 8 bytes; the header pickle length
        # already includes the JSON padding.
        return 8 + self.header_byte_length

    @property
    def padding(self) -> int:
        return self.header_byte_length - 8 - self.json_length


def align(n: int, alignment: int = ALIGNMENT) -> int:
    return (n + alignment - 1) // alignment * alignment


def encode_tree(tree: Dict[str, Any]) -> bytes:
    return json.dumps(tree, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def pack_header(tree: Dict[str, Any]) -> bytes:
    """Serialize ``tree`` into the prologue that precedes the data region."""
    raw = encode_tree(tree)
    json_length = len(raw)
    aligned = align(json_length)
    header_payload_size = 4 + aligned
    header_byte_length = 4 + header_payload_size
    if header_byte_length + 8 > U32_MAX:
        raise BuildError("Archive header exceeds the 32-bit size range")
    prelude = _PRELUDE_STRUCT.pack(SIZE_PICKLE_SIZE, header_byte_length, header_payload_size, json_length)
    return prelude + raw + b"\x00" * (aligned - json_length)


def has_prelude(prefix: bytes) -> bool:
    """True when ``prefix`` starts with a consistent archive prelude."""
    if len(prefix) < PRELUDE_SIZE:
        return False
    size_pickle_size, header_byte_length, header_payload_size, json_length = _PRELUDE_STRUCT.unpack_from(prefix, 0)
    return (
        size_pickle_size == SIZE_PICKLE_SIZE
        and header_byte_length == header_payload_size + 4
        and header_payload_size == 4 + align(json_length)
    )


def read_header(buffer: bytes) -> Header:
    if len(buffer) < PRELUDE_SIZE:
        raise FormatError("Archive too short for header prelude")
    size_pickle_size, header_byte_length, header_payload_size, json_length = _PRELUDE_STRUCT.unpack_from(buffer, 0)
    if size_pickle_size != SIZE_PICKLE_SIZE:
        raise FormatError(f"Bad size pickle length {size_pickle_size} (expected {SIZE_PICKLE_SIZE})")
    if header_byte_length != header_payload_size + 4:
        raise FormatError("Header byte length does not match header payload size")
    if PRELUDE_SIZE + json_length > 8 + header_byte_length:
        raise FormatError("JSON header runs past the header region")
    if 8 + header_byte_length > len(buffer):
        raise FormatError("Header region runs past the end of the archive")
    raw = bytes(buffer[PRELUDE_SIZE : PRELUDE_SIZE + json_length])
    try:
        tree = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise FormatError(f"Malformed JSON header: {exc}") from exc
    if not isinstance(tree, dict) or not isinstance(tree.get("files"), dict):
        raise FormatError("JSON header root must be a directory node")
    return Header(
        size_pickle_size=size_pickle_size,
        header_byte_length=header_byte_length,
        header_payload_size=header_payload_size,
        json_length=json_length,
        tree=tree,
    )
