"""Tests for hopedit.buffer - open fallbacks, edits and writes."""

import gzip
import os
from unittest import mock

import nbtlib
import pytest

from hopedit import buffer as buffer_module
from hopedit.buffer import SCRATCH_NAME, Buffer, LocalFile, NewFile, RemoteFile, Scratch
from hopedit.codec import HexDump, PlainText, StructuredBinary, _write_named_root
from hopedit.errors import HexDecodeError, HopParseError, ReadOnlyBufferError, TunnelCommandError
from hopedit.rope import Rope
from hopedit.syntax import SyntaxTracker


class TestScratch:
    def test_new(self):
        buf = Buffer.new()
        assert buf.name == SCRATCH_NAME
        assert isinstance(buf.storage, Scratch)
        assert buf.transform == PlainText()
        assert buf.contents == ""
        assert not buf.modified
        assert buf.syntax is None

    def test_write_is_noop(self):
        buf = Buffer.new()
        buf.insert_text_at(0, "draft")
        buf.write()
        assert not buf.modified


class TestEdits:
    def test_insert_char(self):
        buf = Buffer.new()
        buf.insert_char(0, "a")
        buf.insert_char(1, "c")
        buf.insert_char(1, "b")
        assert buf.contents == "abc"
        assert buf.modified

    def test_insert_char_rejects_strings(self):
        with pytest.raises(ValueError, match="single character"):
            Buffer.new().insert_char(0, "ab")

    def test_overwrite_char(self):
        buf = Buffer.new()
        buf.insert_text_at(0, "abc\ndef")
        buf.overwrite_char(1, "X")
        assert buf.contents == "aXc\ndef"

    def test_overwrite_at_line_end_inserts(self):
        buf = Buffer.new()
        buf.insert_text_at(0, "abc\ndef")
        buf.overwrite_char(3, "!")
        buf.overwrite_char(buf.contents.len_chars(), "?")
        assert buf.contents == "abc!\ndef?"

    def test_remove_and_replace(self):
        buf = Buffer.new()
        buf.insert_text_at(0, "hello world")
        buf.remove_range(5, 11)
        buf.replace_text_at(0, 5, "bye")
        assert buf.contents == "bye"

    def test_invalid_range(self):
        buf = Buffer.new()
        buf.insert_text_at(0, "abc")
        with pytest.raises(IndexError):
            buf.remove_range(2, 1)
        with pytest.raises(IndexError):
            buf.insert_text_at(10, "x")


class TestOpenLocal:
    def test_open_existing(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("one\ntwo\n")
        with Buffer.open(str(path)) as buf:
            assert buf.contents == "one\ntwo\n"
            assert buf.name == str(path)
            assert isinstance(buf.storage, LocalFile)
            assert not buf.readonly
            assert not buf.modified

    def test_missing_file_is_new_file(self, tmp_path):
        path = tmp_path / "new.txt"
        buf = Buffer.open(str(path))
        assert isinstance(buf.storage, NewFile)
        assert buf.contents == ""
        assert not path.exists()

    def test_permission_denied_falls_back_to_readonly(self, tmp_path):
        path = tmp_path / "locked.txt"
        path.write_text("secret")
        real_open = buffer_module._open_file

        def fake_open(p, mode):
            if mode == "r+b":
                raise PermissionError(13, "Permission denied", p)
            return real_open(p, mode)

        with mock.patch.object(buffer_module, "_open_file", side_effect=fake_open):
            buf = Buffer.open(str(path))

        assert buf.readonly
        assert buf.contents == "secret"
        buf.close()

    def test_unreadable_is_new_file(self, tmp_path):
        path = tmp_path / "locked.txt"
        path.write_text("secret")
        with mock.patch.object(buffer_module, "_open_file", side_effect=PermissionError(13, "Permission denied")):
            buf = Buffer.open(str(path))
        assert isinstance(buf.storage, NewFile)
        assert buf.contents == ""

    def test_vanished_between_attempts_propagates(self, tmp_path):
        errors = iter([PermissionError(13, "Permission denied"), FileNotFoundError(2, "No such file")])

        def fake_open(p, mode):
            raise next(errors)

        with mock.patch.object(buffer_module, "_open_file", side_effect=fake_open):
            with pytest.raises(FileNotFoundError):
                Buffer.open(str(tmp_path / "gone.txt"))

    @pytest.mark.skipif(not hasattr(os, "geteuid") or os.geteuid() == 0, reason="root ignores file modes")
    def test_readonly_file_mode(self, tmp_path):
        path = tmp_path / "ro.txt"
        path.write_text("keep")
        path.chmod(0o444)
        with Buffer.open(str(path)) as buf:
            assert buf.readonly

    def test_binary_file_opens_as_hex(self, tmp_path):
        path = tmp_path / "blob.bin"
        path.write_bytes(b"\xff\x00\x10")
        with Buffer.open(str(path)) as buf:
            assert buf.transform == HexDump()
            assert buf.contents == "ff0010\n"

    def test_python_file_gets_syntax(self, tmp_path):
        path = tmp_path / "mod.py"
        path.write_text("x = 1\n")
        with Buffer.open(str(path)) as buf:
            assert buf.syntax is not None
            assert buf.syntax.language == "python"


class TestWriteLocal:
    def test_write_truncates_and_rewrites(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("a much longer original text\n")
        with Buffer.open(str(path)) as buf:
            buf.replace_text_at(0, buf.contents.len_chars(), "short\n")
            buf.write()
            assert not buf.modified
        assert path.read_text() == "short\n"

    def test_write_readonly_leaves_file_untouched(self, tmp_path):
        path = tmp_path / "locked.txt"
        path.write_text("original")
        real_open = buffer_module._open_file

        def fake_open(p, mode):
            if mode == "r+b":
                raise PermissionError(13, "Permission denied", p)
            return real_open(p, mode)

        with mock.patch.object(buffer_module, "_open_file", side_effect=fake_open):
            buf = Buffer.open(str(path))
        buf.insert_text_at(0, "changed ")

        with pytest.raises(ReadOnlyBufferError) as exc_info:
            buf.write()
        assert isinstance(exc_info.value, PermissionError)
        assert buf.modified
        assert path.read_text() == "original"
        buf.close()

    def test_new_file_created_exclusively(self, tmp_path):
        path = tmp_path / "fresh.txt"
        buf = Buffer.open(str(path))
        buf.insert_text_at(0, "hello\n")
        buf.write()

        assert path.read_text() == "hello\n"
        assert isinstance(buf.storage, LocalFile)
        assert not buf.storage.readonly

        # later writes go through the held handle
        buf.insert_text_at(0, ">")
        buf.write()
        assert path.read_text() == ">hello\n"
        buf.close()

    def test_new_file_collision(self, tmp_path):
        path = tmp_path / "race.txt"
        buf = Buffer.open(str(path))
        path.write_text("someone else")
        buf.insert_text_at(0, "mine")
        with pytest.raises(FileExistsError):
            buf.write()
        assert path.read_text() == "someone else"
        assert isinstance(buf.storage, NewFile)

    def test_hex_edit_round_trip(self, tmp_path):
        path = tmp_path / "blob.bin"
        path.write_bytes(b"\xff\x00\x10")
        with Buffer.open(str(path)) as buf:
            buf.replace_text_at(0, 2, "fe")
            buf.write()
        assert path.read_bytes() == b"\xfe\x00\x10"

    def test_invalid_hex_is_not_written(self, tmp_path):
        path = tmp_path / "blob.bin"
        path.write_bytes(b"\xff\x00")
        with Buffer.open(str(path)) as buf:
            buf.insert_char(0, "z")
            with pytest.raises(HexDecodeError):
                buf.write()
            assert buf.modified
        assert path.read_bytes() == b"\xff\x00"

    def test_close_releases_handle(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("x")
        buf = Buffer.open(str(path))
        buf.close()
        assert buf.storage.handle.closed
        buf.close()  # Should not raise


class TestSyntaxFollowsEdits:
    def test_every_edit_updates_tree(self, tmp_path):
        path = tmp_path / "mod.py"
        path.write_text("def f():\n    return 1\n")
        with Buffer.open(str(path)) as buf:
            buf.insert_text_at(buf.contents.len_chars(), "def g():\n    return 2\n")
            buf.overwrite_char(4, "h")
            buf.remove_range(0, 0)
            buf.replace_text_at(20, 21, "42")
            fresh = SyntaxTracker("python", Rope(str(buf.contents)))
            assert buf.syntax.sexp() == fresh.sexp()
            assert buf.syntax.sexp().count("function_definition") == 2

    def test_structured_file(self, tmp_path):
        tag = nbtlib.Compound({"level": nbtlib.Int(3)})
        path = tmp_path / "level.dat"
        path.write_bytes(gzip.compress(_write_named_root("", tag)))
        with Buffer.open(str(path)) as buf:
            assert buf.transform == StructuredBinary("gzip", "")
            start = str(buf.contents).index("3")
            buf.replace_text_at(start, start + 1, "7")
            buf.write()
        with Buffer.open(str(path)) as buf:
            assert nbtlib.parse_nbt(str(buf.contents))["level"] == 7


class TestRemote:
    def test_open_remote(self, fake_pool, fake_shell):
        buf = Buffer.open("ssh:example.com|sudo:/etc/hosts", pool=fake_pool)
        assert buf.contents == "127.0.0.1 localhost\n"
        assert buf.name == "ssh:example.com|sudo:/etc/hosts"
        assert isinstance(buf.storage, RemoteFile)
        assert buf.storage.path == "/etc/hosts"
        assert fake_pool.idle_count() == 1

    def test_remote_syntax_by_extension(self, fake_pool):
        buf = Buffer.open("ssh:example.com:/srv/app/config.json", pool=fake_pool)
        assert buf.syntax is not None
        assert buf.syntax.language == "json"

    def test_open_missing_remote_is_empty(self, fake_pool, fake_shell):
        buf = Buffer.open("ssh:example.com:/tmp/new.txt", pool=fake_pool)
        assert buf.contents == ""
        buf.insert_text_at(0, "created\n")
        buf.write()
        assert fake_shell.files["/tmp/new.txt"] == b"created\n"

    def test_write_remote_reuses_session(self, fake_pool, fake_shell):
        buf = Buffer.open("ssh:example.com|sudo:/etc/hosts", pool=fake_pool)
        buf.insert_text_at(buf.contents.len_chars(), "10.0.0.1 db\n")
        buf.write()

        assert fake_shell.files["/etc/hosts"] == b"127.0.0.1 localhost\n10.0.0.1 db\n"
        assert not buf.modified
        assert fake_shell.spawns == 1
        assert fake_pool.idle_count() == 1

    def test_write_remote_failure_discards_session(self, fake_pool, fake_shell):
        buf = Buffer.open("ssh:example.com:/etc/hosts", pool=fake_pool)
        fake_shell.denied.add("/etc")
        buf.insert_text_at(0, "# ")
        with pytest.raises(TunnelCommandError):
            buf.write()
        assert buf.modified
        assert fake_pool.idle_count() == 0

    def test_malformed_chain_fails_before_connecting(self, fake_pool, fake_shell):
        with pytest.raises(HopParseError):
            Buffer.open("ssh:example.com:0:/etc/hosts", pool=fake_pool)
        assert fake_shell.spawns == 0

    def test_empty_remote_path_fails_before_connecting(self, fake_pool, fake_shell):
        with pytest.raises(HopParseError, match="missing remote path"):
            Buffer.open("ssh:example.com:", pool=fake_pool)
        with pytest.raises(HopParseError, match="missing remote path"):
            Buffer.open_remote("ssh:example.com", "", pool=fake_pool)
        assert fake_shell.spawns == 0

    def test_large_remote_write(self, fake_pool, fake_shell):
        fake_shell.files["/srv/big.bin"] = os.urandom(200 * 1024)
        buf = Buffer.open("ssh:example.com:/srv/big.bin", pool=fake_pool)
        assert isinstance(buf.transform, HexDump)
        buf.write()
        assert len(fake_shell.files["/srv/big.bin"]) == 200 * 1024

    def test_default_pool_used(self, fake_pool):
        with mock.patch("hopedit.default_pool", return_value=fake_pool) as default_pool:
            buf = Buffer.open("bash:/etc/hosts")
        default_pool.assert_called_once()
        assert buf.contents == "127.0.0.1 localhost\n"
