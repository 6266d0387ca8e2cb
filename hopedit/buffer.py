"""
Buffer - the editable document.

A Buffer owns the rope being edited, where it is stored (scratch, a local
file, a file not created yet, or a remote file behind a hop chain), the
content transform that produced the rope, the modified flag and, for
recognized source files, a SyntaxTracker.

Example:
    from hopedit.buffer import Buffer

    with Buffer.open("notes.txt") as buf:
        buf.insert_text_at(0, "hello\\n")
        buf.write()

    # Remote, through ssh then sudo
    buf = Buffer.open("ssh:example.com|sudo:askpw:/etc/hosts", pool=pool)
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from hopedit.codec import ContentTransform, PlainText, read_from, write_to
from hopedit.errors import HopParseError, ReadOnlyBufferError, TunnelError
from hopedit.hops import Chain, split_path
from hopedit.rope import Rope
from hopedit.syntax import SyntaxTracker, TextEdit

if TYPE_CHECKING:
    from hopedit.pool import ConnectionPool

logger = logging.getLogger(__name__)

SCRATCH_NAME = "[scratch]"


# ---------------------------------------------------------------------------
# Storage provenance
# ---------------------------------------------------------------------------


@dataclass
class Scratch:
    """Transient buffer, never written anywhere."""


@dataclass
class NewFile:
    """Local path that did not exist (or could not be opened) at open time."""

    path: str


@dataclass
class LocalFile:
    """Existing local file, held open for the lifetime of the buffer."""

    path: str
    handle: io.BufferedIOBase
    readonly: bool


@dataclass
class RemoteFile:
    """File reached through a tunnel session on ``chain``."""

    chain: Chain
    path: str
    pool: ConnectionPool


Storage = Union[Scratch, NewFile, LocalFile, RemoteFile]


def _open_file(path: str, mode: str) -> io.BufferedIOBase:
    return open(path, mode)


def _resolve_pool(pool: Optional[ConnectionPool]) -> ConnectionPool:
    if pool is not None:
        return pool
    from hopedit import default_pool

    return default_pool()


# ---------------------------------------------------------------------------
# Buffer
# ---------------------------------------------------------------------------


class Buffer:
    """An editable document.

    Read state for the UI: ``contents``, ``name``, ``modified``.
    Construct only through new(), open(), open_local() and open_remote().

    Every text mutation goes through one method that updates the rope and
    replays the same edit into the syntax tree, so the tree always matches
    the rope between calls.
    """

    def __init__(
        self,
        contents: Rope,
        name: str,
        storage: Storage,
        transform: ContentTransform,
        syntax: Optional[SyntaxTracker] = None,
    ):
        self._contents = contents
        self._name = name
        self._storage = storage
        self._transform = transform
        self._syntax = syntax
        self._modified = False

    @classmethod
    def new(cls) -> Buffer:
        """Empty scratch buffer."""
        return cls(Rope(), SCRATCH_NAME, Scratch(), PlainText())

    @classmethod
    def open(cls, path: str, *, pool: Optional[ConnectionPool] = None) -> Buffer:
        """Open a local path or a ``<chain>:<remote-path>`` address.

        Args:
            path: Local path, or hop chain and remote path joined by ``:``
            pool: Connection pool for remote paths (default: the process pool)

        Raises:
            HopParseError: If the chain is malformed
            TunnelError: If the remote read fails
            OSError: If the local file cannot be read
        """
        chain_text, file_path = split_path(path)
        if chain_text is None:
            return cls.open_local(file_path)
        return cls.open_remote(chain_text, file_path, pool=pool)

    @classmethod
    def open_local(cls, path: str) -> Buffer:
        """Open a local file: read-write, else read-only, else as a new file.

        Raises:
            FileNotFoundError: If the file vanished between attempts
            OSError: For any other error opening or reading the file
        """
        try:
            handle = _open_file(path, "r+b")
        except PermissionError:
            logger.debug("%s: no write permission, trying read-only", path)
        except FileNotFoundError:
            return cls(Rope(), path, NewFile(path), PlainText())
        else:
            return cls._from_handle(path, handle, readonly=False)

        try:
            handle = _open_file(path, "rb")
        except PermissionError:
            logger.debug("%s: no read permission, treating as new file", path)
            return cls(Rope(), path, NewFile(path), PlainText())
        return cls._from_handle(path, handle, readonly=True)

    @classmethod
    def _from_handle(cls, path: str, handle: io.BufferedIOBase, readonly: bool) -> Buffer:
        try:
            data = handle.read()
        except OSError:
            handle.close()
            raise
        decoded = read_from(data, path)
        storage = LocalFile(path, handle, readonly)
        return cls(decoded.rope, path, storage, decoded.transform, decoded.syntax)

    @classmethod
    def open_remote(cls, chain_text: str, path: str, *, pool: Optional[ConnectionPool] = None) -> Buffer:
        """Open ``path`` on the host reached through ``chain_text``.

        A missing remote file opens as an empty buffer; write() creates it.

        Raises:
            HopParseError: If the chain is malformed (before any connection)
            TunnelError: If login or the transfer fails
        """
        if not path:
            raise HopParseError("missing remote path", f"{chain_text}:")
        pool = _resolve_pool(pool)
        chain = pool.parse(chain_text)
        name = f"{chain_text}:{path}"

        session = pool.connect_to(chain)
        try:
            data = session.read_file(path).read() if session.exists(path) else b""
        except (TunnelError, OSError):
            pool.discard(session)
            raise
        pool.recycle(session)

        decoded = read_from(data, path)
        return cls(decoded.rope, name, RemoteFile(chain, path, pool), decoded.transform, decoded.syntax)

    # -- read state --------------------------------------------------------

    @property
    def contents(self) -> Rope:
        return self._contents

    @property
    def name(self) -> str:
        return self._name

    @property
    def modified(self) -> bool:
        return self._modified

    @property
    def transform(self) -> ContentTransform:
        return self._transform

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def syntax(self) -> Optional[SyntaxTracker]:
        return self._syntax

    @property
    def readonly(self) -> bool:
        return isinstance(self._storage, LocalFile) and self._storage.readonly

    # -- edits -------------------------------------------------------------

    def _edit(self, start: int, end: int, text: str) -> None:
        """Replace chars ``[start, end)`` with ``text`` in rope and tree together."""
        if start > end:
            raise IndexError(f"invalid range {start}..{end}")
        edit = TextEdit.capture(self._contents, start, end) if self._syntax else None
        self._contents.remove(start, end)
        self._contents.insert(start, text)
        if edit is not None:
            self._syntax.apply(edit.finish(self._contents, start + len(text)), self._contents)
        self._modified = True

    def insert_char(self, char_idx: int, ch: str) -> None:
        if len(ch) != 1:
            raise ValueError(f"expected a single character, got {ch!r}")
        self._edit(char_idx, char_idx, ch)

    def insert_text_at(self, char_idx: int, text: str) -> None:
        self._edit(char_idx, char_idx, text)

    def overwrite_char(self, char_idx: int, ch: str) -> None:
        """Replace the char at ``char_idx``; at a line end or the buffer end, insert."""
        if len(ch) != 1:
            raise ValueError(f"expected a single character, got {ch!r}")
        if char_idx < self._contents.len_chars() and self._contents.char(char_idx) != "\n":
            self._edit(char_idx, char_idx + 1, ch)
        else:
            self._edit(char_idx, char_idx, ch)

    def remove_range(self, start: int, end: int) -> None:
        self._edit(start, end, "")

    def replace_text_at(self, start: int, end: int, text: str) -> None:
        self._edit(start, end, text)

    # -- saving ------------------------------------------------------------

    def write(self) -> None:
        """Write the buffer back to where it came from.

        Raises:
            ReadOnlyBufferError: If the file was opened read-only (file untouched)
            FileExistsError: If a new file was created by someone else meanwhile
            HexDecodeError / StructuredDataError: If the text cannot be re-encoded
            TunnelError: If the remote write fails
        """
        storage = self._storage
        match storage:
            case Scratch():
                return
            case LocalFile(readonly=True):
                raise ReadOnlyBufferError(self._name)
            case LocalFile(handle=handle):
                data = write_to(self._contents, self._transform)
                handle.seek(0)
                handle.truncate()
                handle.write(data)
                handle.flush()
            case NewFile(path=path):
                data = write_to(self._contents, self._transform)
                handle = _open_file(path, "x+b")
                try:
                    handle.write(data)
                    handle.flush()
                except OSError:
                    handle.close()
                    raise
                self._storage = LocalFile(path, handle, readonly=False)
            case RemoteFile(chain=chain, path=path, pool=pool):
                data = write_to(self._contents, self._transform)
                self._write_remote(pool, chain, path, data)
            case _:
                raise TypeError(f"Unknown storage {type(storage).__name__}")

        self._modified = False
        logger.debug("Wrote %s", self._name)

    @staticmethod
    def _write_remote(pool: ConnectionPool, chain: Chain, path: str, data: bytes) -> None:
        session = pool.connect_to(chain)
        try:
            writer = session.write_file(path)
            writer.write(data)
            session.finish_write_file(path)
        except (TunnelError, OSError):
            pool.discard(session)
            raise
        pool.recycle(session)

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        """Release the file handle. Does not write."""
        if isinstance(self._storage, LocalFile) and not self._storage.handle.closed:
            self._storage.handle.close()

    def __enter__(self) -> Buffer:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        flag = " [+]" if self._modified else ""
        return f"Buffer({self._name!r}, {type(self._storage).__name__}, {type(self._transform).__name__}{flag})"


__all__ = [
    "Buffer",
    "Scratch",
    "NewFile",
    "LocalFile",
    "RemoteFile",
    "Storage",
    "SCRATCH_NAME",
]
