"""
Tunnel sessions: remote file access by scripting a chain of nested shells.

A TunnelSession drives one local interactive shell through a pty. Every shell
in the chain runs with a distinctive prompt, so command completion is detected
by waiting for that prompt to appear in the output. Files travel as base64
text through the terminal; no helper daemon is needed on the remote side.

Example:
    from hopedit.hops import StringPool, parse_chain
    from hopedit.tunnel import TunnelSession

    strings = StringPool()
    chain = parse_chain(strings, "ssh:example.com|sudo:askpw")
    with TunnelSession.connect(chain, strings, ask_password=getpass_for_hop) as session:
        data = session.read_file("/etc/hosts").read()
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import re
import shlex
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import pexpect

from hopedit.errors import (
    TunnelAuthError,
    TunnelCancelledError,
    TunnelClosedError,
    TunnelCommandError,
    TunnelError,
    TunnelTimeoutError,
)
from hopedit.hops import (
    ASKPW,
    Chain,
    ContainerExec,
    Direct,
    Hop,
    PrivilegeEscalation,
    Ssh,
    StringPool,
    format_chain,
    format_hop,
    needs_password,
)

logger = logging.getLogger(__name__)

PROMPT_MARKER = "__hopedit_prompt__"
ASKPW_MARKER = "__hopedit_askpw__"

# sudo prints ASKPW_MARKER, ssh prints "user@host's password: "
_PASSWORD_PATTERN = re.compile(re.escape(ASKPW_MARKER) + r"|[Pp]assword:")
_PROMPT_PATTERN = re.compile(re.escape(PROMPT_MARKER))

DEFAULT_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 0.05

# 57 input bytes encode to one 76-column base64 line, well under the
# canonical-mode line limit of the remote tty
_LINE_BYTES = 57

# Lines forwarded per send() call while streaming a file
_SEND_LINES = 64


def _split_marker(marker: str) -> str:
    """Quote a marker so its echoed command text never matches the marker itself."""
    half = len(marker) // 2
    return f"'{marker[:half]}''{marker[half:]}'"


_SHELL_ENV = f"env PS1={_split_marker(PROMPT_MARKER)} PS2= TERM=dumb sh"

# Disable tty echo and line editing in a freshly started shell
_QUIET = "stty -echo 2>/dev/null; set +o emacs +o vi 2>/dev/null"

PasswordCallback = Callable[[Hop], str]


class ShellChild(Protocol):
    """The subset of ``pexpect.spawn`` a session relies on."""

    def send(self, s: str) -> int: ...

    def sendline(self, s: str = "") -> int: ...

    def read_nonblocking(self, size: int = 1, timeout: Optional[float] = -1) -> str: ...

    def isalive(self) -> bool: ...

    def close(self, force: bool = True) -> None: ...


SpawnFn = Callable[[str, dict], ShellChild]


def spawn_local_shell(shell: str, env: dict) -> ShellChild:
    """Spawn ``shell`` on a fresh pty with echo disabled and no send delay."""
    child = pexpect.spawn(shell, env=env, encoding="utf-8", codec_errors="replace", echo=False)
    # pexpect sleeps delaybeforesend (50ms) before every send() by default
    child.delaybeforesend = None
    return child


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ShellReply:
    """Output received before a wait() matched.

    ``extra`` is True when the caller's extra pattern matched instead of the
    prompt marker.
    """

    output: str
    extra: bool = False


@dataclass(frozen=True)
class CommandResult:
    """Result of a command run through the tunnel."""

    command: str
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Base64 transfer streams
# ---------------------------------------------------------------------------


class Base64Reader(io.RawIOBase):
    """Read-only stream that decodes captured base64 text on demand."""

    _BLOCK = 4096  # multiple of 4, so every block decodes on its own

    def __init__(self, text: str):
        self._text = "".join(text.split())
        self._pos = 0
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while len(self._pending) < len(b) and self._pos < len(self._text):
            block = self._text[self._pos : self._pos + self._BLOCK]
            self._pos += len(block)
            try:
                self._pending += base64.b64decode(block, validate=True)
            except binascii.Error as e:
                raise TunnelError(f"Malformed base64 response: {e}") from e

        n = min(len(b), len(self._pending))
        b[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n


class Base64Writer(io.RawIOBase):
    """Write-only stream that forwards base64 lines through a send function.

    Bytes are buffered until a full line's worth is available. Full lines
    go out in batches of up to _SEND_LINES per send() call; close() sends
    the final partial line.
    """

    def __init__(self, send: Callable[[str], object]):
        self._send = send
        self._pending = b""

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        if self.closed:
            raise ValueError("write to closed Base64Writer")
        data = self._pending + bytes(b)
        cut = len(data) - len(data) % _LINE_BYTES
        batch = _LINE_BYTES * _SEND_LINES
        for start in range(0, cut, batch):
            end = min(start + batch, cut)
            self._send(
                "".join(
                    base64.b64encode(data[i : i + _LINE_BYTES]).decode("ascii") + "\n"
                    for i in range(start, end, _LINE_BYTES)
                )
            )
        self._pending = data[cut:]
        return len(b)

    def close(self) -> None:
        if not self.closed and self._pending:
            self._send(base64.b64encode(self._pending).decode("ascii") + "\n")
            self._pending = b""
        super().close()


# ---------------------------------------------------------------------------
# TunnelSession
# ---------------------------------------------------------------------------


def _strip_echo(output: str, command: str) -> str:
    """Drop the echoed command line from the start of the output, if present."""
    first, sep, rest = output.partition("\n")
    if first.strip() == command.strip():
        return rest
    return output


def _parse_status(text: str, command: str) -> int:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    try:
        return int(lines[-1])
    except (IndexError, ValueError):
        raise TunnelError(f"Malformed exit status for {command!r}: {text[-200:]!r}") from None


class TunnelSession:
    """One live shell reached by replaying a hop chain.

    Not thread-safe, except for cancel(), which may be called from any
    thread to abort a blocked wait().

    Args:
        chain: Hops to replay (fixed for the lifetime of the session)
        strings: Pool the chain's hosts and container ids were interned in
        spawn: Factory returning a pexpect-like child (default: local pty shell)
        shell: Local shell command
        timeout: Maximum seconds a single wait() may block
        poll_interval: Upper bound of each non-blocking read

    Usage:
        session = TunnelSession.connect(chain, strings)
        names = session.list_files("/var/log")
        session.close()
    """

    _MAX_BUF = 64 * 1024 * 1024

    def __init__(
        self,
        chain: Chain,
        strings: StringPool,
        *,
        spawn: Optional[SpawnFn] = None,
        shell: str = "sh",
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")

        self._chain = tuple(chain)
        self._strings = strings
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._buf = ""
        self._depth = 0  # nested shells started on top of the local one
        self._broken = False
        self._closed = False
        self._cancel = threading.Event()
        self._writer: Optional[Base64Writer] = None

        env = dict(os.environ, PS1=PROMPT_MARKER, PS2="", TERM="dumb")
        self._child = (spawn or spawn_local_shell)(shell, env)
        try:
            self.wait()
            self._quiet()
        except TunnelError:
            self.close()
            raise

    @classmethod
    def connect(
        cls,
        chain: Chain,
        strings: StringPool,
        *,
        ask_password: Optional[PasswordCallback] = None,
        **kwargs,
    ) -> TunnelSession:
        """Spawn a local shell and replay every hop of ``chain``.

        Args:
            chain: Hops to replay
            strings: Pool the chain was interned in
            ask_password: Called with the hop whenever a hop prompts for a password
            **kwargs: Forwarded to the constructor

        Returns:
            A session ready to run commands on the last hop

        Raises:
            TunnelError: If any hop fails; the partial session is closed
        """
        session = cls(chain, strings, **kwargs)
        try:
            session.login(ask_password)
        except Exception:
            session.close()
            raise
        return session

    @property
    def chain(self) -> Chain:
        return self._chain

    @property
    def broken(self) -> bool:
        """True once a wait failed; the session must not be reused."""
        return self._broken

    @property
    def alive(self) -> bool:
        return not self._closed and not self._broken and self._child.isalive()

    def login(self, ask_password: Optional[PasswordCallback] = None) -> None:
        """Replay the chain, one nested shell per hop."""
        for hop in self._chain:
            self._hop(hop, ask_password)
        logger.info(
            "Tunnel connected through %d hop(s): %s",
            len(self._chain),
            format_chain(self._strings, self._chain),
        )

    def _launch_command(self, hop: Hop) -> Optional[str]:
        match hop:
            case Direct():
                return None
            case Ssh(host=host, port=port):
                return f"ssh -p {port} -t -t {shlex.quote(self._strings.resolve(host))} {_SHELL_ENV}"
            case PrivilegeEscalation():
                return f"sudo -S -p {_split_marker(ASKPW_MARKER)} {_SHELL_ENV}"
            case ContainerExec(container_id=cid):
                return f"docker exec -it {shlex.quote(self._strings.resolve(cid))} {_SHELL_ENV}"
        raise TypeError(f"Expected a hop descriptor, got {type(hop).__name__}")

    def _hop(self, hop: Hop, ask_password: Optional[PasswordCallback]) -> None:
        command = self._launch_command(hop)
        if command is None:
            return

        label = format_hop(self._strings, hop)
        logger.debug("Replaying hop %s", label)
        self._child.sendline(command)

        answered = False
        while True:
            reply = self.wait(_PASSWORD_PATTERN)
            if not reply.extra:
                break
            if not needs_password(hop):
                self._broken = True
                raise TunnelAuthError(f"{label} asked for a password but is not marked :{ASKPW}")
            if answered:
                self._broken = True
                raise TunnelAuthError(f"{label}: password rejected")
            if ask_password is None:
                self._broken = True
                raise TunnelAuthError(f"{label} asked for a password and no password callback is set")
            self._child.sendline(ask_password(hop))
            answered = True

        code = self._exit_status(command)
        if code != 0:
            self._broken = True
            raise TunnelCommandError(command, code, _strip_echo(reply.output, command))

        self._depth += 1
        self._quiet()

    def _quiet(self) -> None:
        self._child.sendline(_QUIET)
        self.wait()

    def _exit_status(self, command: str) -> int:
        self._child.sendline("echo $?")
        return self._status(command)

    def _status(self, command: str) -> int:
        try:
            return _parse_status(self.wait().output, command)
        except TunnelError:
            self._broken = True
            raise

    def wait(self, extra_pattern: Optional[re.Pattern | str] = None) -> ShellReply:
        """Block until the prompt marker or ``extra_pattern`` shows up.

        Each read is bounded by poll_interval, so cancel() and the overall
        deadline are checked at least that often.

        Returns:
            ShellReply with the text received before the match (carriage
            returns removed); the matched text itself is consumed

        Raises:
            TunnelTimeoutError: If nothing matched within the timeout
            TunnelClosedError: If the shell exited
            TunnelCancelledError: If cancel() was called
        """
        self._ensure_usable()
        extra = re.compile(extra_pattern) if isinstance(extra_pattern, str) else extra_pattern
        deadline = time.monotonic() + self._timeout

        while True:
            match = _PROMPT_PATTERN.search(self._buf)
            is_extra = False
            if extra is not None:
                extra_match = extra.search(self._buf)
                if extra_match and (match is None or extra_match.start() < match.start()):
                    match, is_extra = extra_match, True
            if match is not None:
                output = self._buf[: match.start()]
                self._buf = self._buf[match.end() :]
                return ShellReply(output, is_extra)

            if self._cancel.is_set():
                self._broken = True
                raise TunnelCancelledError("Wait cancelled")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._broken = True
                raise TunnelTimeoutError(
                    f"Timed out waiting for prompt after {self._timeout}s (buffer tail: {self._buf[-200:]!r})"
                )

            try:
                data = self._child.read_nonblocking(65536, timeout=min(self._poll_interval, remaining))
            except pexpect.TIMEOUT:
                continue
            except pexpect.EOF as e:
                self._broken = True
                raise TunnelClosedError(f"Shell exited (buffer tail: {self._buf[-200:]!r})") from e

            self._buf += data.replace("\r", "")
            if len(self._buf) > self._MAX_BUF:
                self._broken = True
                raise TunnelError(f"Buffer exceeded {self._MAX_BUF} chars waiting for prompt")

    def cancel(self) -> None:
        """Abort the current (or next) wait(). The session becomes unusable."""
        self._cancel.set()

    def _ensure_usable(self) -> None:
        if self._closed:
            raise TunnelClosedError("Tunnel session is closed")
        if self._broken:
            raise TunnelClosedError("Tunnel session is broken by an earlier failure")

    # -- commands ----------------------------------------------------------

    def _collect(self, command: str) -> CommandResult:
        """Append the exit-status query and wait for output and status."""
        self._child.sendline("echo $?")
        output = _strip_echo(self.wait().output, command)
        code = self._status(command)
        return CommandResult(command=command, exit_code=code, output=output)

    def run(self, command: str) -> CommandResult:
        """Run a command on the last hop and capture output and exit status."""
        self._ensure_usable()
        logger.debug("Running %r", command)
        self._child.sendline(command)
        return self._collect(command)

    def run_checked(self, command: str) -> str:
        """Run a command and return its output.

        Raises:
            TunnelCommandError: If the command exits with non-zero status
        """
        result = self.run(command)
        if not result.ok:
            raise TunnelCommandError(command, result.exit_code, result.output)
        return result.output

    def exists(self, path: str) -> bool:
        return self.run(f"test -e {shlex.quote(path)}").ok

    def read_file(self, path: str) -> Base64Reader:
        """Stream a remote file's bytes, decoded from its base64 rendering."""
        text = self.run_checked(f"base64 -w 0 {shlex.quote(path)}")
        return Base64Reader(text)

    def write_file(self, path: str) -> Base64Writer:
        """Start writing ``path``; feed bytes to the writer, then call finish_write_file()."""
        self._ensure_usable()
        logger.debug("Writing %s", path)
        self._child.send("echo '")
        self._writer = Base64Writer(self._child.send)
        return self._writer

    def finish_write_file(self, path: str) -> None:
        """Close the payload quote, run the decode and check its exit status.

        Raises:
            TunnelCommandError: If the remote decode or redirect failed
        """
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        command = f"base64 -d - > {shlex.quote(path)}"
        self._child.send(f"' | {command}\n")
        result = self._collect(command)
        if not result.ok:
            raise TunnelCommandError(command, result.exit_code, result.output)

    def canonicalize(self, path: str) -> str:
        lines = self.run_checked(f"realpath {shlex.quote(path)}").splitlines()
        return lines[-1].strip() if lines else path

    def list_files(self, path: str = ".") -> list[str]:
        """Return the ``ls -al`` listing of ``path``, one entry per line."""
        output = self.run_checked(f"ls -al {shlex.quote(path)}")
        return [line.rstrip("\r\n") for line in output.splitlines() if line.strip()]

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        """Exit every nested shell and close the pty (idempotent)."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._child.isalive():
                for _ in range(self._depth + 1):
                    self._child.sendline("exit")
        except OSError as e:
            logger.debug("Error sending exit: %s", e)
        try:
            self._child.close(force=True)
        except (OSError, pexpect.ExceptionPexpect) as e:
            logger.debug("Error closing shell: %s", e)
        logger.info("Tunnel session closed (%s)", format_chain(self._strings, self._chain))

    def __enter__(self) -> TunnelSession:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        if self._closed:
            state = "closed"
        elif self._broken:
            state = "broken"
        else:
            state = "open"
        return f"TunnelSession({format_chain(self._strings, self._chain)}, {state})"


__all__ = [
    "PROMPT_MARKER",
    "ASKPW_MARKER",
    "ShellReply",
    "CommandResult",
    "Base64Reader",
    "Base64Writer",
    "TunnelSession",
    "spawn_local_shell",
]
