"""GLB container decoding.

Layout (all integers little-endian uint32)::

    [0:4)    magic    b"glTF"
    [4:8)    version  2
    [8:12)   length   total byte length (advisory)
    [12:16)  L        first chunk length
    [16:20)  type     first chunk type, expected b"JSON"
    [20:20+L)         UTF-8 JSON text
    [20+L:)           optional BIN chunk (8-byte header + payload)
"""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from glimport.errors import (
    BadMagicError,
    FormatError,
    TruncatedChunkError,
    UnsupportedVersionError,
)
from glimport.warning_policy import WarningPolicy, emit_warning

GLB_MAGIC = b"glTF"
GLB_VERSION = 2
HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8
CHUNK_TYPE_JSON = 0x4E4F534A  # "JSON"
CHUNK_TYPE_BIN = 0x004E4942  # "BIN\0"


class Format(Enum):
    AUTO = "auto"
    GLB = "glb"
    GLTF = "gltf"


@dataclass(frozen=True)
class GlbHeader:
    magic: bytes
    version: int
    declared_length: int


@dataclass(frozen=True)
class GlbContent:
    """Result of decoding a container: the JSON text and where the BIN chunk starts."""

    json_text: str
    bin_chunk_start: int
    declared_length: int
    json_chunk_type: int


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) < size:
        raise TruncatedChunkError(
            f"Truncated {what}: expected {size} bytes, got {len(data)}"
        )
    return data


def read_header(stream: BinaryIO) -> GlbHeader:
    """Read and check the 12-byte container header.

    Raises:
        BadMagicError: If the magic tag is not ``glTF``.
        UnsupportedVersionError: If the version is not 2.
        TruncatedChunkError: If fewer than 12 bytes are available.
    """
    raw = stream.read(HEADER_SIZE)
    if raw[:4] != GLB_MAGIC:
        raise BadMagicError(f"Input does not look like a GLB file (magic {raw[:4]!r})")
    if len(raw) < HEADER_SIZE:
        raise TruncatedChunkError(
            f"Truncated header: expected {HEADER_SIZE} bytes, got {len(raw)}"
        )
    magic = raw[:4]
    version, length = struct.unpack_from("<II", raw, 4)
    if version != GLB_VERSION:
        raise UnsupportedVersionError(f"Unsupported GLB version: {version} (expected {GLB_VERSION})")
    return GlbHeader(magic=magic, version=version, declared_length=length)


def _stream_length(stream: BinaryIO) -> int | None:
    """Return the bytes left from the current position when the stream is seekable."""
    try:
        if not stream.seekable():
            return None
        pos = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(pos)
        return end - pos
    except (OSError, AttributeError):
        return None


def decode_stream(
    stream: BinaryIO, *, warning_policy: WarningPolicy | None = None
) -> GlbContent:
    """Decode a container from an open binary stream positioned at its start.

    The stream is consumed but not closed.
    """
    total = _stream_length(stream)
    header = read_header(stream)
    if total is not None and total != header.declared_length:
        emit_warning(
            "W02",
            f"Container declares {header.declared_length} bytes but holds {total}",
            policy=warning_policy,
        )

    chunk_length, chunk_type = struct.unpack(
        "<II", _read_exact(stream, CHUNK_HEADER_SIZE, "chunk header")
    )
    if chunk_type != CHUNK_TYPE_JSON:
        emit_warning(
            "W01",
            f"First chunk type is {struct.pack('<I', chunk_type)!r}, expected b'JSON'",
            policy=warning_policy,
        )

    raw_json = _read_exact(stream, chunk_length, "JSON chunk")
    try:
        json_text = raw_json.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FormatError(f"JSON chunk is not valid UTF-8: {e}") from e

    return GlbContent(
        json_text=json_text,
        bin_chunk_start=HEADER_SIZE + CHUNK_HEADER_SIZE + chunk_length,
        declared_length=header.declared_length,
        json_chunk_type=chunk_type,
    )


def decode_glb(
    source: str | Path | bytes | bytearray | memoryview | BinaryIO,
    *,
    warning_policy: WarningPolicy | None = None,
) -> GlbContent:
    """Decode a GLB container from a path, raw bytes or a binary stream.

    Streams opened here are closed on every exit path; caller-owned streams are
    left open.

    Raises:
        FormatError: ``BadMagicError``, ``UnsupportedVersionError`` or
            ``TruncatedChunkError`` when the container does not decode.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        with io.BytesIO(bytes(source)) as stream:
            return decode_stream(stream, warning_policy=warning_policy)
    if isinstance(source, (str, Path)):
        try:
            with open(source, "rb") as stream:
                return decode_stream(stream, warning_policy=warning_policy)
        except OSError as e:
            raise FormatError(f"Cannot read file: {e}") from e
    return decode_stream(source, warning_policy=warning_policy)


def read_bin_chunk(data: bytes | memoryview, bin_chunk_start: int) -> memoryview | None:
    """Return the BIN chunk payload at ``bin_chunk_start``, or None if there is no chunk.

    A second chunk of any other type is ignored and also gives None.

    Raises:
        TruncatedChunkError: If the chunk header or payload is cut short.
    """
    view = memoryview(data)
    if bin_chunk_start >= len(view):
        return None
    if bin_chunk_start + CHUNK_HEADER_SIZE > len(view):
        raise TruncatedChunkError(f"Truncated BIN chunk header at offset {bin_chunk_start}")
    length, chunk_type = struct.unpack_from("<II", view, bin_chunk_start)
    if chunk_type != CHUNK_TYPE_BIN:
        return None
    start = bin_chunk_start + CHUNK_HEADER_SIZE
    if start + length > len(view):
        raise TruncatedChunkError(
            f"BIN chunk at offset {bin_chunk_start} declares {length} bytes, "
            f"only {len(view) - start} available"
        )
    return view[start : start + length]


def sniff_format(data: bytes | memoryview) -> Format | None:
    """Guess the document format from leading bytes."""
    head = bytes(data[:64])
    if head.startswith(GLB_MAGIC):
        return Format.GLB
    stripped = head.lstrip(b"\xef\xbb\xbf").lstrip()
    if stripped.startswith(b"{"):
        return Format.GLTF
    return None
