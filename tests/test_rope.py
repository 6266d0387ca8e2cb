"""Tests for hopedit.rope - chunked text with index conversions."""

import pytest

from hopedit import rope as rope_module
from hopedit.rope import Rope


@pytest.fixture
def small_chunks(monkeypatch):
    """Force tiny chunks so edits and lookups cross chunk boundaries."""
    monkeypatch.setattr(rope_module, "CHUNK_CHARS", 4)


class TestSizes:
    def test_empty(self):
        rope = Rope()
        assert rope.len_chars() == 0
        assert rope.len_bytes() == 0
        assert rope.len_lines() == 1
        assert str(rope) == ""

    def test_multibyte(self):
        rope = Rope("héllo\n✓")
        assert rope.len_chars() == 7
        assert rope.len_bytes() == len("héllo\n✓".encode("utf-8"))
        assert rope.len_lines() == 2

    def test_trailing_newline_adds_empty_line(self):
        assert Rope("a\nb\n").len_lines() == 3


class TestConversions:
    @pytest.mark.parametrize("chunked", [False, True])
    def test_char_byte_round_trip(self, request, chunked):
        if chunked:
            request.getfixturevalue("small_chunks")
        text = "aé✓b\nxyz\nü"
        rope = Rope(text)
        for i in range(len(text) + 1):
            byte = rope.char_to_byte(i)
            assert byte == len(text[:i].encode("utf-8"))
            assert rope.byte_to_char(byte) == i

    def test_byte_inside_multibyte_char(self):
        rope = Rope("a✓b")
        # bytes 1..3 are the check mark
        assert rope.byte_to_char(2) == 1

    @pytest.mark.parametrize("chunked", [False, True])
    def test_lines(self, request, chunked):
        if chunked:
            request.getfixturevalue("small_chunks")
        rope = Rope("one\ntwo\n\nfour")
        assert [rope.line_to_char(i) for i in range(4)] == [0, 4, 8, 9]
        assert rope.line_to_char(4) == rope.len_chars()
        assert rope.char_to_line(0) == 0
        assert rope.char_to_line(3) == 0  # the newline itself
        assert rope.char_to_line(4) == 1
        assert rope.char_to_line(9) == 3
        assert rope.char_to_line(rope.len_chars()) == 3

    def test_char_to_point_uses_byte_columns(self):
        rope = Rope("x\néé=1")
        assert rope.char_to_point(4) == (1, 4)

    def test_line_to_byte(self):
        rope = Rope("é\nabc")
        assert rope.line_to_byte(1) == 3

    @pytest.mark.parametrize(
        "call",
        [
            lambda r: r.char_to_byte(4),
            lambda r: r.char_to_byte(-1),
            lambda r: r.byte_to_char(10),
            lambda r: r.line_to_char(5),
            lambda r: r.char(3),
            lambda r: r.line(2),
        ],
    )
    def test_out_of_range(self, call):
        with pytest.raises(IndexError):
            call(Rope("a\nb"))


class TestContent:
    def test_slice_across_chunks(self, small_chunks):
        rope = Rope("abcdefghijkl")
        assert rope.slice(2, 10) == "cdefghij"
        assert rope.slice(5, 5) == ""

    def test_line_includes_newline(self):
        rope = Rope("one\ntwo")
        assert rope.line(0) == "one\n"
        assert rope.line(1) == "two"

    def test_chars_at_and_before(self, small_chunks):
        rope = Rope("abcdefghij")
        assert "".join(rope.chars_at(6)) == "ghij"
        assert "".join(rope.chars_before(6)) == "fedcba"
        assert list(rope.chars_before(0)) == []
        assert list(rope.chars_at(10)) == []

    def test_chunk_at_byte(self, small_chunks):
        rope = Rope("abcdefgh")
        assert rope.chunk_at_byte(5) == (b"efgh", 4)
        assert rope.chunk_at_byte(8) == (b"", 8)

    def test_chunks_concatenate_to_text(self, small_chunks):
        text = "the quick brown fox"
        assert "".join(Rope(text).chunks()) == text

    def test_to_bytes(self):
        assert Rope("héllo").to_bytes() == "héllo".encode("utf-8")

    def test_equality(self):
        assert Rope("abc") == Rope("abc")
        assert Rope("abc") == "abc"
        assert Rope("abc") != "abd"


class TestEdits:
    @pytest.mark.parametrize("chunked", [False, True])
    def test_insert(self, request, chunked):
        if chunked:
            request.getfixturevalue("small_chunks")
        rope = Rope("hello world")
        rope.insert(5, ",")
        rope.insert(0, ">> ")
        rope.insert(rope.len_chars(), "!")
        assert str(rope) == ">> hello, world!"
        assert rope.len_chars() == len(">> hello, world!")

    def test_insert_into_empty(self):
        rope = Rope()
        rope.insert(0, "x\ny")
        assert rope.len_lines() == 2

    @pytest.mark.parametrize("chunked", [False, True])
    def test_remove(self, request, chunked):
        if chunked:
            request.getfixturevalue("small_chunks")
        rope = Rope("one\ntwo\nthree")
        rope.remove(2, 9)
        assert str(rope) == "onhree"
        assert rope.len_lines() == 1

    def test_remove_everything(self):
        rope = Rope("abc")
        rope.remove(0, 3)
        assert rope.len_chars() == 0
        assert rope.len_lines() == 1

    def test_remove_invalid_range(self):
        with pytest.raises(IndexError):
            Rope("abc").remove(2, 1)

    def test_many_edits_keep_indexes_consistent(self, small_chunks):
        rope = Rope()
        expected = ""
        for i in range(50):
            pos = (i * 7) % (len(expected) + 1)
            piece = f"{i}é\n" if i % 3 == 0 else f"<{i}>"
            rope.insert(pos, piece)
            expected = expected[:pos] + piece + expected[pos:]
            if i % 5 == 4:
                rope.remove(1, 4)
                expected = expected[:1] + expected[4:]

        assert str(rope) == expected
        assert rope.len_bytes() == len(expected.encode("utf-8"))
        assert rope.len_lines() == expected.count("\n") + 1
        for i in range(0, len(expected), 3):
            assert rope.char_to_line(i) == expected[:i].count("\n")
