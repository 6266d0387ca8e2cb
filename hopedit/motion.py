"""
Cursor motion queries over a Rope.

All positions are char indices. The find functions return distances from
``start`` rather than absolute positions, so callers can add or subtract
them from the cursor directly.
"""

from typing import Callable, Optional

from hopedit.rope import Rope

CharPredicate = Callable[[str], bool]


def _same_kind_run(chars) -> int:
    """Length of the leading run whose chars agree on ``str.isalnum()``."""
    count = 0
    kind = None
    for ch in chars:
        if kind is None:
            kind = ch.isalnum()
        elif ch.isalnum() != kind:
            break
        count += 1
    return count


def _backward_from(rope: Rope, start: int):
    """Chars from ``start`` (inclusive) back to the beginning."""
    return rope.chars_before(min(start + 1, rope.len_chars()))


def count_matching(rope: Rope, start: int, pred: CharPredicate) -> int:
    """Count chars matching ``pred`` from ``start`` (inclusive) onward."""
    count = 0
    for ch in rope.chars_at(start):
        if not pred(ch):
            break
        count += 1
    return count


def find(rope: Rope, start: int, pred: CharPredicate) -> Optional[int]:
    """Distance to the first char at or after ``start`` matching ``pred``."""
    for i, ch in enumerate(rope.chars_at(start)):
        if pred(ch):
            return i
    return None


def rfind(rope: Rope, start: int, pred: CharPredicate) -> Optional[int]:
    """Distance back to the first char at or before ``start`` matching ``pred``."""
    for i, ch in enumerate(_backward_from(rope, start)):
        if pred(ch):
            return i
    return None


def find_boundary(rope: Rope, start: int) -> int:
    """Distance to the last char of the word (or non-word) run at ``start``."""
    return max(_same_kind_run(rope.chars_at(start)) - 1, 0)


def rfind_boundary(rope: Rope, start: int) -> int:
    """Distance back to the first char of the run at ``start``."""
    return max(_same_kind_run(_backward_from(rope, start)) - 1, 0)


def jump(rope: Rope, cursor: int, dx: int, dy: int) -> int:
    """Move ``cursor`` by ``dx`` chars, then ``dy`` lines.

    The horizontal move wraps across lines and clamps to the last char.
    The vertical move keeps the column, clamped to where line_end() would
    put the cursor on the target line.
    """
    if rope.len_chars() == 0:
        return 0

    if dx:
        cursor = min(max(cursor + dx, 0), rope.len_chars() - 1)
    if not dy:
        return cursor

    line = rope.char_to_line(cursor)
    column = cursor - rope.line_to_char(line)
    target = min(max(line + dy, 0), rope.len_lines() - 1)
    start = rope.line_to_char(target)
    return min(start + column, line_end(rope, start))


def line_start(rope: Rope, cursor: int) -> int:
    return rope.line_to_char(rope.char_to_line(cursor))


def line_end(rope: Rope, cursor: int) -> int:
    """The line's newline, or its last char when the line has no newline."""
    line = rope.char_to_line(cursor)
    length = max(len(rope.line(line)) - 1, 0)
    return min(rope.line_to_char(line) + length, rope.len_chars())


def buffer_end(rope: Rope) -> int:
    return max(rope.len_chars() - 1, 0)


__all__ = [
    "count_matching",
    "find",
    "rfind",
    "find_boundary",
    "rfind_boundary",
    "jump",
    "line_start",
    "line_end",
    "buffer_end",
]
