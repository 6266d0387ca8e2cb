"""
Testing utilities - FakeShell for unit tests without a pty or remote hosts.

FakeShell plays the part of every shell a tunnel session talks to: the local
one, and the nested ones started by ssh, sudo and docker hops. It answers the
commands a TunnelSession sends (exit-status queries, test, base64, realpath,
ls, exit) from an in-memory filesystem and prints the prompt marker after
each one, exactly as a real shell started with that PS1 would.

Example:
    fake = FakeShell(files={"/etc/hosts": b"127.0.0.1 localhost\\n"})
    fake.set_password("sudo", "hunter2")

    session = TunnelSession.connect(
        chain, strings, spawn=fake.spawn, ask_password=lambda hop: "hunter2"
    )
    assert session.read_file("/etc/hosts").read().startswith(b"127")

    # Inspect what happened
    assert fake.spawns == 1
    assert fake.logins == ["sudo"]
"""

import base64
import posixpath
import re
import shlex
import threading
import time
from typing import Optional

import pexpect

from hopedit.tunnel import ASKPW_MARKER, PROMPT_MARKER

_SSH_LAUNCH = re.compile(r"^ssh -p (\d+) -t -t (\S+) env ")
_SUDO_LAUNCH = re.compile(r"^sudo -S -p ")
_DOCKER_LAUNCH = re.compile(r"^docker exec -it (\S+) env ")
_WRITE = re.compile(r"^echo '([A-Za-z0-9+/=\s]*)' \| base64 -d - > (.+)$", re.DOTALL)

# First words of commands that never finish (used to provoke timeouts)
STALL_COMMANDS = ("sleep",)


class FakeChild:
    """One spawned pty as seen by a TunnelSession.

    Implements the pexpect.spawn subset the session uses. Output is queued
    with ``\\r\\n`` line endings, like a real terminal.
    """

    def __init__(self, host: "FakeShell"):
        self._host = host
        self._input = ""
        self._output = ""
        self._levels = ["local"]
        self._status = 0
        self._pending_login: Optional[tuple[str, str]] = None  # (label, expected password)
        self._alive = True
        self._hung_up = False
        self._stalled = False  # a command is running forever; input is ignored
        self._scan = 0  # how far _input has been checked for a command end
        self._quote: Optional[str] = None
        self._escaped = False
        self._lock = threading.Lock()
        self.received: list[str] = []
        self._emit(PROMPT_MARKER)

    # -- pexpect.spawn surface ---------------------------------------------

    def send(self, s: str) -> int:
        if self._hung_up:
            return len(s)
        if not self._alive:
            raise OSError("write to closed pty")
        with self._lock:
            self._input += s
            while True:
                end = self._command_end()
                if end < 0:
                    break
                line, self._input = self._input[:end], self._input[end + 1 :]
                self._handle(line)
        return len(s)

    def _command_end(self) -> int:
        """Index of the newline ending the next complete command, or -1.

        Quoted text may span lines (PS2 is empty), so a newline inside an
        open quote does not end the command. Quote state carries over
        between send() calls so large payloads are scanned once.
        """
        if self._pending_login is not None:
            return self._input.find("\n")
        text = self._input
        i = self._scan
        while i < len(text):
            ch = text[i]
            if self._escaped:
                self._escaped = False
            elif self._quote == "'":
                if ch == "'":
                    self._quote = None
            elif ch == "\\":
                self._escaped = True
            elif self._quote == '"':
                if ch == '"':
                    self._quote = None
            elif ch in "'\"":
                self._quote = ch
            elif ch == "\n":
                self._scan = 0
                return i
            i += 1
        self._scan = i
        return -1

    def sendline(self, s: str = "") -> int:
        return self.send(s + "\n")

    def read_nonblocking(self, size: int = 1, timeout: Optional[float] = -1) -> str:
        with self._lock:
            if self._output:
                data, self._output = self._output[:size], self._output[size:]
                return data
            alive = self._alive
        if not alive:
            raise pexpect.EOF("End Of File (EOF). Exception style platform.")
        time.sleep(timeout if timeout and timeout > 0 else 0.01)
        raise pexpect.TIMEOUT("Timeout exceeded.")

    def isalive(self) -> bool:
        return self._alive

    def close(self, force: bool = True) -> None:
        self._alive = False

    def hang_up(self) -> None:
        """Simulate the connection dropping: pending output stays readable, then EOF."""
        self._alive = False
        self._hung_up = True

    # -- shell emulation ---------------------------------------------------

    def _emit(self, text: str) -> None:
        self._output += text.replace("\n", "\r\n")

    def _finish(self, status: int, output: str = "") -> None:
        self._status = status
        self._emit(output + PROMPT_MARKER)

    def _handle(self, line: str) -> None:
        self.received.append(line)
        if self._stalled:
            return
        if self._pending_login is not None:
            self._answer_password(line)
            return

        command = line.strip()
        self._host._record(command)
        if not command:
            self._finish(self._status)
            return

        for pattern, kind in ((_SSH_LAUNCH, "ssh"), (_SUDO_LAUNCH, "sudo"), (_DOCKER_LAUNCH, "docker")):
            match = pattern.match(command)
            if match:
                self._launch(kind, match)
                return

        write = _WRITE.match(command)
        if write:
            self._write(write.group(1), shlex.split(write.group(2))[0])
            return

        argv = shlex.split(command)
        if argv[0] in STALL_COMMANDS:
            self._stalled = True
            return

        handler = getattr(self, f"_cmd_{argv[0]}", None)
        if command == "echo $?":
            self._finish(self._status, f"{self._status}\n")
        elif command.startswith("stty -echo"):
            self._finish(0)
        elif handler is not None:
            handler(argv[1:])
        else:
            self._finish(127, f"sh: 1: {argv[0]}: not found\n")

    def _launch(self, kind: str, match: re.Match) -> None:
        if kind == "sudo":
            label = "sudo"
        else:
            target = shlex.split(match.group(2))[0]
            label = f"{kind}:{target}"
            if target in self._host.unreachable:
                if kind == "ssh":
                    self._finish(255, f"ssh: Could not resolve hostname {target}: Name or service not known\n")
                else:
                    self._finish(1, f"Error response from daemon: No such container: {target}\n")
                return

        expected = self._host.passwords.get(label)
        if expected is None:
            self._enter(label)
            return
        self._pending_login = (label, expected)
        self._emit(self._password_prompt(label))

    def _password_prompt(self, label: str) -> str:
        if label == "sudo":
            return ASKPW_MARKER
        return f"root@{label.split(':', 1)[1]}'s password: "

    def _answer_password(self, password: str) -> None:
        label, expected = self._pending_login
        if password == expected:
            self._pending_login = None
            self._emit("\n")
            self._enter(label)
            return
        retry = "Sorry, try again.\n" if label == "sudo" else "Permission denied, please try again.\n"
        self._emit(retry + self._password_prompt(label))

    def _enter(self, label: str) -> None:
        self._levels.append(label)
        self._host._logged_in(label)
        self._finish(0)

    def _cmd_exit(self, args: list[str]) -> None:
        self._levels.pop()
        if not self._levels:
            self._alive = False
            return
        self._finish(int(args[0]) if args else 0)

    def _cmd_test(self, args: list[str]) -> None:
        if len(args) == 2 and args[0] == "-e":
            self._finish(0 if self._host.exists(args[1]) else 1)
        else:
            self._finish(2, "sh: 1: test: unsupported expression\n")

    def _cmd_base64(self, args: list[str]) -> None:
        path = args[-1]
        data = self._host.files.get(self._host.resolve(path))
        if data is None:
            self._finish(1, f"base64: {path}: No such file or directory\n")
            return
        # -w 0 prints no trailing newline
        self._finish(0, base64.b64encode(data).decode("ascii"))

    def _write(self, payload: str, path: str) -> None:
        path = self._host.resolve(path)
        if path in self._host.denied or posixpath.dirname(path) in self._host.denied:
            self._finish(2, f"sh: 1: cannot create {path}: Permission denied\n")
            return
        self._host.files[path] = base64.b64decode("".join(payload.split()))
        self._finish(0)

    def _cmd_realpath(self, args: list[str]) -> None:
        path = args[0]
        if not self._host.exists(path):
            self._finish(1, f"realpath: {path}: No such file or directory\n")
            return
        self._finish(0, self._host.resolve(path) + "\n")

    def _cmd_ls(self, args: list[str]) -> None:
        path = args[-1] if args and not args[-1].startswith("-") else "."
        path = self._host.resolve(path)
        if path in self._host.files:
            self._finish(0, _ls_line(posixpath.basename(path), self._host.files[path]) + "\n")
            return
        names = self._host.listdir(path)
        if names is None:
            self._finish(2, f"ls: cannot access '{path}': No such file or directory\n")
            return
        lines = [f"total {len(names)}", _ls_line(".", None), _ls_line("..", None)]
        lines += [_ls_line(name, self._host.files.get(posixpath.join(path, name))) for name in names]
        self._finish(0, "\n".join(lines) + "\n")


def _ls_line(name: str, data: Optional[bytes]) -> str:
    if data is None:
        return f"drwxr-xr-x 2 root root 4096 Jan  1 00:00 {name}"
    return f"-rw-r--r-- 1 root root {len(data):>4} Jan  1 00:00 {name}"


class FakeShell:
    """Shared state behind every FakeChild it spawns.

    Args:
        files: Initial filesystem, absolute path -> contents
        home: Directory relative paths are resolved against

    Attributes:
        files: The filesystem (mutated by remote writes)
        passwords: Hop label (``ssh:<host>``, ``sudo``, ``docker:<id>``) -> password
        unreachable: Hosts and container ids whose hop fails
        denied: Paths (or their parent directories) that cannot be written
        spawns: Number of shells spawned
        logins: Labels of every hop successfully entered, in order
        commands: Every command line received, in order

    Example:
        fake = FakeShell()
        fake.unreachable.add("down.example.com")
        session = TunnelSession(chain, strings, spawn=fake.spawn)
    """

    def __init__(self, files: Optional[dict[str, bytes]] = None, home: str = "/root"):
        self.files: dict[str, bytes] = dict(files or {})
        self.home = home
        self.passwords: dict[str, str] = {}
        self.unreachable: set[str] = set()
        self.denied: set[str] = set()
        self.spawns = 0
        self.logins: list[str] = []
        self.commands: list[str] = []
        self.children: list[FakeChild] = []
        self._lock = threading.Lock()

    def set_password(self, label: str, password: str) -> None:
        """Require ``password`` when entering the hop ``label``."""
        self.passwords[label] = password

    def spawn(self, shell: str, env: dict) -> FakeChild:
        """Spawn function for ``TunnelSession(spawn=...)``."""
        child = FakeChild(self)
        with self._lock:
            self.spawns += 1
            self.children.append(child)
        return child

    def hang_up_all(self) -> None:
        """Drop every connection spawned so far."""
        with self._lock:
            children = list(self.children)
        for child in children:
            child.hang_up()

    def resolve(self, path: str) -> str:
        """Absolute, normalized form of ``path``."""
        return posixpath.normpath(posixpath.join(self.home, path))

    def exists(self, path: str) -> bool:
        path = self.resolve(path)
        return path in self.files or self.listdir(path) is not None

    def listdir(self, path: str) -> Optional[list[str]]:
        """Names directly under directory ``path``, or None if it has no entries."""
        prefix = path.rstrip("/") + "/"
        names = {p[len(prefix) :].split("/", 1)[0] for p in self.files if p.startswith(prefix)}
        return sorted(names) if names else None

    def _record(self, command: str) -> None:
        with self._lock:
            self.commands.append(command)

    def _logged_in(self, label: str) -> None:
        with self._lock:
            self.logins.append(label)


__all__ = ["FakeShell", "FakeChild", "STALL_COMMANDS"]
