"""
Chunked rope: editable text with char, byte and line index conversions.

Text is held in chunks of at most CHUNK_CHARS characters. Each chunk caches
its UTF-8 encoding and newline count, so conversions between character
offsets, byte offsets and (line, byte column) points only touch one chunk
after a binary search over the per-chunk prefix sums.

Lines are separated by ``\\n``; a rope always has ``newlines + 1`` lines.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from typing import Iterator

CHUNK_CHARS = 1024


@dataclass(frozen=True)
class _Chunk:
    text: str
    data: bytes
    newlines: int

    @classmethod
    def of(cls, text: str) -> _Chunk:
        return cls(text, text.encode("utf-8"), text.count("\n"))


def _split(text: str) -> list[_Chunk]:
    return [_Chunk.of(text[i : i + CHUNK_CHARS]) for i in range(0, len(text), CHUNK_CHARS)]


class Rope:
    """Mutable text container optimized for localized edits.

    Args:
        text: Initial contents

    Example:
        rope = Rope("hello\\nworld")
        rope.insert(5, ",")
        rope.char_to_line(8)   # 1
        rope.char_to_point(8)  # (1, 1)
    """

    def __init__(self, text: str = ""):
        self._chunks = _split(text)
        self._rebuild()

    def _rebuild(self) -> None:
        self._char_starts: list[int] = []
        self._byte_starts: list[int] = []
        self._line_starts: list[int] = []  # newlines before each chunk
        chars = data = lines = 0
        for chunk in self._chunks:
            self._char_starts.append(chars)
            self._byte_starts.append(data)
            self._line_starts.append(lines)
            chars += len(chunk.text)
            data += len(chunk.data)
            lines += chunk.newlines
        self._len_chars = chars
        self._len_bytes = data
        self._newlines = lines

    # -- sizes -------------------------------------------------------------

    def len_chars(self) -> int:
        return self._len_chars

    def len_bytes(self) -> int:
        return self._len_bytes

    def len_lines(self) -> int:
        return self._newlines + 1

    def __len__(self) -> int:
        return self._len_chars

    # -- lookups -----------------------------------------------------------

    def _check_char(self, char_idx: int) -> None:
        if char_idx < 0 or char_idx > self._len_chars:
            raise IndexError(f"char index {char_idx} out of range (len={self._len_chars})")

    def _chunk_index(self, char_idx: int) -> int:
        """Chunk holding ``char_idx``; an index at the end maps to the last chunk."""
        return max(bisect_right(self._char_starts, char_idx) - 1, 0)

    def char_to_byte(self, char_idx: int) -> int:
        self._check_char(char_idx)
        if not self._chunks:
            return 0
        i = self._chunk_index(char_idx)
        offset = char_idx - self._char_starts[i]
        return self._byte_starts[i] + len(self._chunks[i].text[:offset].encode("utf-8"))

    def byte_to_char(self, byte_idx: int) -> int:
        """Char containing ``byte_idx`` (a byte inside a multi-byte char maps to that char)."""
        if byte_idx < 0 or byte_idx > self._len_bytes:
            raise IndexError(f"byte index {byte_idx} out of range (len={self._len_bytes})")
        if not self._chunks:
            return 0
        i = max(bisect_right(self._byte_starts, byte_idx) - 1, 0)
        offset = byte_idx - self._byte_starts[i]
        prefix = self._chunks[i].data[:offset].decode("utf-8", errors="ignore")
        return self._char_starts[i] + len(prefix)

    def char_to_line(self, char_idx: int) -> int:
        self._check_char(char_idx)
        if not self._chunks:
            return 0
        i = self._chunk_index(char_idx)
        offset = char_idx - self._char_starts[i]
        return self._line_starts[i] + self._chunks[i].text.count("\n", 0, offset)

    def line_to_char(self, line_idx: int) -> int:
        """First char of ``line_idx``; ``len_lines()`` maps to the end of the text."""
        if line_idx < 0 or line_idx > self.len_lines():
            raise IndexError(f"line index {line_idx} out of range (lines={self.len_lines()})")
        if line_idx == 0:
            return 0
        if line_idx == self.len_lines():
            return self._len_chars

        line_ends = [start + chunk.newlines for start, chunk in zip(self._line_starts, self._chunks)]
        i = bisect_left(line_ends, line_idx)
        text = self._chunks[i].text
        pos = -1
        for _ in range(line_idx - self._line_starts[i]):
            pos = text.index("\n", pos + 1)
        return self._char_starts[i] + pos + 1

    def line_to_byte(self, line_idx: int) -> int:
        return self.char_to_byte(self.line_to_char(line_idx))

    def char_to_point(self, char_idx: int) -> tuple[int, int]:
        """(row, byte column) of ``char_idx``, as incremental parsers expect."""
        row = self.char_to_line(char_idx)
        return row, self.char_to_byte(char_idx) - self.line_to_byte(row)

    # -- content -----------------------------------------------------------

    def slice(self, start: int, end: int) -> str:
        self._check_char(start)
        self._check_char(end)
        if start >= end:
            return ""
        out = []
        i = self._chunk_index(start)
        while i < len(self._chunks) and self._char_starts[i] < end:
            base = self._char_starts[i]
            out.append(self._chunks[i].text[max(start - base, 0) : end - base])
            i += 1
        return "".join(out)

    def char(self, char_idx: int) -> str:
        if char_idx < 0 or char_idx >= self._len_chars:
            raise IndexError(f"char index {char_idx} out of range (len={self._len_chars})")
        i = self._chunk_index(char_idx)
        return self._chunks[i].text[char_idx - self._char_starts[i]]

    def line(self, line_idx: int) -> str:
        """Text of one line, including its trailing newline if it has one."""
        if line_idx < 0 or line_idx >= self.len_lines():
            raise IndexError(f"line index {line_idx} out of range (lines={self.len_lines()})")
        return self.slice(self.line_to_char(line_idx), self.line_to_char(line_idx + 1))

    def chars_at(self, char_idx: int) -> Iterator[str]:
        """Iterate chars forward starting at ``char_idx``."""
        self._check_char(char_idx)
        if not self._chunks:
            return
        i = self._chunk_index(char_idx)
        offset = char_idx - self._char_starts[i]
        for chunk in self._chunks[i:]:
            yield from chunk.text[offset:]
            offset = 0

    def chars_before(self, char_idx: int) -> Iterator[str]:
        """Iterate chars backward starting just before ``char_idx``."""
        self._check_char(char_idx)
        if not self._chunks or char_idx == 0:
            return
        i = self._chunk_index(char_idx - 1)
        end = char_idx - self._char_starts[i]
        for j in range(i, -1, -1):
            text = self._chunks[j].text if j != i else self._chunks[j].text[:end]
            yield from reversed(text)

    def chunks(self) -> Iterator[str]:
        for chunk in self._chunks:
            yield chunk.text

    def chunk_at_byte(self, byte_idx: int) -> tuple[bytes, int]:
        """The encoded chunk containing ``byte_idx`` and the chunk's byte offset.

        At or past the end this is ``(b"", len_bytes())``.
        """
        if byte_idx >= self._len_bytes:
            return b"", self._len_bytes
        i = bisect_right(self._byte_starts, byte_idx) - 1
        return self._chunks[i].data, self._byte_starts[i]

    def to_bytes(self) -> bytes:
        return b"".join(chunk.data for chunk in self._chunks)

    # -- edits -------------------------------------------------------------

    def insert(self, char_idx: int, text: str) -> None:
        self._check_char(char_idx)
        if not text:
            return
        if not self._chunks:
            self._chunks = _split(text)
        else:
            i = self._chunk_index(char_idx)
            old = self._chunks[i].text
            offset = char_idx - self._char_starts[i]
            self._chunks[i : i + 1] = _split(old[:offset] + text + old[offset:])
        self._rebuild()

    def remove(self, start: int, end: int) -> None:
        """Remove chars in ``[start, end)``."""
        self._check_char(start)
        self._check_char(end)
        if start > end:
            raise IndexError(f"invalid range {start}..{end}")
        if start == end:
            return
        first = self._chunk_index(start)
        last = self._chunk_index(end - 1)
        head = self._chunks[first].text[: start - self._char_starts[first]]
        tail = self._chunks[last].text[end - self._char_starts[last] :]
        self._chunks[first : last + 1] = _split(head + tail)
        self._rebuild()

    # -- dunder ------------------------------------------------------------

    def __str__(self) -> str:
        return "".join(chunk.text for chunk in self._chunks)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Rope):
            return str(self) == str(other)
        if isinstance(other, str):
            return str(self) == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"Rope({self._len_chars} chars, {self.len_lines()} lines)"
