"""
Content transforms: how a document's bytes map to its editable text.

Detection runs once, at open time, in a fixed order:

1. PlainText - the bytes are valid UTF-8
2. StructuredBinary - gzip or zlib compressed NBT, shown as indented SNBT
3. HexDump - always succeeds; 16 bytes per row as lowercase hex digits

write_to() reverses whichever transform was detected.
"""

import gzip
import io
import logging
import struct
import zlib
from dataclasses import dataclass
from typing import Optional, Union

import nbtlib

from hopedit.errors import HexDecodeError, StructuredDataError
from hopedit.rope import Rope
from hopedit.syntax import SyntaxTracker

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ROW_BYTES = 16
_TAG_COMPOUND = 10
_HEX_DIGITS = {ch: int(ch, 16) for ch in "0123456789abcdefABCDEF"}


@dataclass(frozen=True)
class PlainText:
    """Bytes are UTF-8 text, written back verbatim."""


@dataclass(frozen=True)
class HexDump:
    """Bytes are shown as a hex grid."""


@dataclass(frozen=True)
class StructuredBinary:
    """Compressed NBT shown as SNBT.

    Args:
        compression: "gzip" or "zlib"
        root_name: Name of the root compound, restored on save
    """

    compression: str
    root_name: str = ""


ContentTransform = Union[PlainText, HexDump, StructuredBinary]


@dataclass
class Decoded:
    """Result of read_from()."""

    rope: Rope
    transform: ContentTransform
    syntax: Optional[SyntaxTracker] = None


# ---------------------------------------------------------------------------
# Hex dump
# ---------------------------------------------------------------------------


def render_hex(data: bytes) -> str:
    """Render bytes as rows of 16, with a space between the 8th and 9th byte."""
    rows = []
    for i in range(0, len(data), ROW_BYTES):
        row = data[i : i + ROW_BYTES]
        text = row[:8].hex()
        if len(row) > 8:
            text += " " + row[8:].hex()
        rows.append(text + "\n")
    return "".join(rows)


def parse_hex(text: str) -> bytes:
    """Parse a hex grid back into bytes.

    Whitespace is ignored anywhere. A trailing lone digit ``d`` becomes the
    byte ``d << 4``.

    Raises:
        HexDecodeError: On the first character that is neither whitespace
            nor a hex digit (1-based row and column)
    """
    out = bytearray()
    high: Optional[int] = None
    for row, line in enumerate(text.split("\n"), 1):
        for column, ch in enumerate(line, 1):
            if ch.isspace():
                continue
            value = _HEX_DIGITS.get(ch)
            if value is None:
                raise HexDecodeError(row, column, ch)
            if high is None:
                high = value
            else:
                out.append(high << 4 | value)
                high = None
    if high is not None:
        out.append(high << 4)
    return bytes(out)


# ---------------------------------------------------------------------------
# Structured binary
# ---------------------------------------------------------------------------


def detect_compression(data: bytes) -> Optional[str]:
    if data[:2] == GZIP_MAGIC:
        return "gzip"
    # zlib: deflate method and a header checksum divisible by 31
    if len(data) >= 2 and data[0] & 0x0F == 8 and (data[0] << 8 | data[1]) % 31 == 0:
        return "zlib"
    return None


def _decompress(data: bytes, compression: str) -> bytes:
    if compression == "gzip":
        return gzip.decompress(data)
    return zlib.decompress(data)


def _compress(raw: bytes, compression: str) -> bytes:
    if compression == "gzip":
        return gzip.compress(raw)
    return zlib.compress(raw)


def _parse_named_root(raw: bytes) -> tuple[str, nbtlib.Compound]:
    buf = io.BytesIO(raw)
    if buf.read(1) != bytes([_TAG_COMPOUND]):
        raise ValueError("root tag is not a compound")
    (length,) = struct.unpack(">H", buf.read(2))
    name = buf.read(length).decode("utf-8")
    tag = nbtlib.Compound.parse(buf, "big")
    if buf.read(1):
        raise ValueError("trailing data after root compound")
    return name, tag


def _write_named_root(name: str, tag: nbtlib.Compound) -> bytes:
    buf = io.BytesIO()
    encoded = name.encode("utf-8")
    buf.write(bytes([_TAG_COMPOUND]))
    buf.write(struct.pack(">H", len(encoded)))
    buf.write(encoded)
    tag.write(buf, "big")
    return buf.getvalue()


def read_structured(data: bytes) -> Optional[tuple[str, StructuredBinary]]:
    """Decode compressed NBT into SNBT text, or None if ``data`` is not NBT."""
    compression = detect_compression(data)
    if compression is None:
        return None
    try:
        name, tag = _parse_named_root(_decompress(data, compression))
    # truncated or unknown tags surface as any of these
    except (OSError, EOFError, zlib.error, struct.error, ValueError, KeyError, IndexError) as e:
        logger.debug("Compressed data is not NBT (%s), falling back to hex dump", e)
        return None
    return nbtlib.serialize_tag(tag, indent=4), StructuredBinary(compression, name)


def write_structured(text: str, transform: StructuredBinary) -> bytes:
    """Parse SNBT text and re-encode it as compressed NBT.

    Raises:
        StructuredDataError: If the text is not valid SNBT or not a compound
    """
    try:
        tag = nbtlib.parse_nbt(text)
    except ValueError as e:
        raise StructuredDataError(f"invalid structured text: {e}") from e
    if not isinstance(tag, nbtlib.Compound):
        raise StructuredDataError(f"root must be a compound, got {type(tag).__name__}")
    try:
        raw = _write_named_root(transform.root_name, tag)
    except (struct.error, ValueError, OverflowError) as e:
        raise StructuredDataError(f"cannot encode structured data: {e}") from e
    return _compress(raw, transform.compression)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def read_from(data: bytes, path: Optional[str] = None) -> Decoded:
    """Detect the transform for ``data`` and decode it into a rope.

    Args:
        data: Raw file contents
        path: File path; its extension selects the syntax language for text

    Returns:
        Decoded rope, transform and (for recognized text files) a SyntaxTracker
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    else:
        rope = Rope(text)
        syntax = SyntaxTracker.for_path(path, rope) if path else None
        return Decoded(rope, PlainText(), syntax)

    structured = read_structured(data)
    if structured is not None:
        text, transform = structured
        return Decoded(Rope(text), transform)

    return Decoded(Rope(render_hex(data)), HexDump())


def write_to(rope: Rope, transform: ContentTransform) -> bytes:
    """Serialize ``rope`` back to bytes according to ``transform``.

    Raises:
        HexDecodeError: For a hex dump with a non-hex character
        StructuredDataError: For structured text that does not encode
    """
    match transform:
        case PlainText():
            return rope.to_bytes()
        case HexDump():
            return parse_hex(str(rope))
        case StructuredBinary():
            return write_structured(str(rope), transform)
    raise TypeError(f"Expected a content transform, got {type(transform).__name__}")


__all__ = [
    "PlainText",
    "HexDump",
    "StructuredBinary",
    "ContentTransform",
    "Decoded",
    "render_hex",
    "parse_hex",
    "read_structured",
    "write_structured",
    "read_from",
    "write_to",
]
