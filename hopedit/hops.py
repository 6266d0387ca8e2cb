"""
Hop descriptors: the parsed form of a remote-access chain.

A chain is written as ``seg('|'seg)*`` where each segment is one of::

    ssh:<host>[:<port>][:askpw]
    sudo[:askpw]
    docker:<container-id>
    bash

Example:
    from hopedit.hops import StringPool, parse_chain

    strings = StringPool()
    chain = parse_chain(strings, "ssh:example.com:2222:askpw|sudo:askpw")
    chain[0].port  # 2222
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Union

from hopedit.errors import HopParseError

HOP_TOKENS = ("ssh", "sudo", "docker", "bash")
ASKPW = "askpw"
DEFAULT_SSH_PORT = 22


# ---------------------------------------------------------------------------
# String interning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Interned:
    """Handle to a string stored in a StringPool."""

    start: int
    length: int


class StringPool:
    """Growable text pool that hands out (start, length) handles.

    Repeated hosts and container ids share storage: interning a string that
    already occurs anywhere in the pool returns a handle to that occurrence.

    Thread Safety:
        intern() and resolve() are thread-safe.
    """

    def __init__(self):
        self._text = ""
        self._lock = threading.Lock()

    def intern(self, s: str) -> Interned:
        with self._lock:
            start = self._text.find(s)
            if start < 0:
                start = len(self._text)
                self._text += s
            return Interned(start, len(s))

    def resolve(self, handle: Interned) -> str:
        with self._lock:
            return self._text[handle.start : handle.start + handle.length]

    def __len__(self) -> int:
        return len(self._text)

    def __repr__(self) -> str:
        return f"StringPool({len(self._text)} chars)"


# ---------------------------------------------------------------------------
# Hop variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Direct:
    """No-op local shell hop (``bash``)."""


@dataclass(frozen=True)
class Ssh:
    """SSH login to ``host`` on ``port``."""

    host: Interned
    port: int = DEFAULT_SSH_PORT
    needs_password: bool = False


@dataclass(frozen=True)
class PrivilegeEscalation:
    """Privilege escalation through ``sudo``."""

    needs_password: bool = False


@dataclass(frozen=True)
class ContainerExec:
    """Shell inside a running container (``docker exec``)."""

    container_id: Interned


Hop = Union[Direct, Ssh, PrivilegeEscalation, ContainerExec]
Chain = tuple[Hop, ...]


def _parse_port(token: str, segment: str) -> int:
    try:
        port = int(token)
    except ValueError:
        raise HopParseError(f"invalid ssh port {token!r}", segment) from None
    if port < 1 or port > 65535:
        raise HopParseError(f"ssh port must be 1-65535, got {port}", segment)
    return port


def parse_hop(strings: StringPool, segment: str) -> Hop:
    """Parse one chain segment into a hop descriptor.

    Args:
        strings: Pool that receives interned hosts and container ids
        segment: Text such as ``ssh:example.com:22:askpw``

    Returns:
        The matching hop variant

    Raises:
        HopParseError: If the token is unknown or a required parameter is missing
    """
    proto, *args = segment.split(":")

    if proto == "ssh":
        if not args or not args[0]:
            raise HopParseError("missing ssh destination", segment)
        host = strings.intern(args[0])
        port = DEFAULT_SSH_PORT
        needs_password = False

        # 2nd arg (optional) is either the port or askpw
        if len(args) > 1:
            if args[1] == ASKPW:
                needs_password = True
            else:
                port = _parse_port(args[1], segment)

        # 3rd arg (optional) is askpw
        if len(args) > 2 and args[2] == ASKPW:
            needs_password = True

        return Ssh(host=host, port=port, needs_password=needs_password)

    if proto == "sudo":
        return PrivilegeEscalation(needs_password=bool(args) and args[0] == ASKPW)

    if proto == "docker":
        if not args or not args[0]:
            raise HopParseError("missing container id", segment)
        return ContainerExec(container_id=strings.intern(args[0]))

    if proto == "bash":
        return Direct()

    raise HopParseError(f"unsupported hop type: {proto!r}", segment)


def parse_chain(strings: StringPool, text: str) -> Chain:
    """Parse a ``|``-delimited chain into an immutable tuple of hops."""
    if not text:
        raise HopParseError("empty hop chain")
    return tuple(parse_hop(strings, segment) for segment in text.split("|"))


def format_hop(strings: StringPool, hop: Hop) -> str:
    """Render a hop back into its segment syntax."""
    match hop:
        case Direct():
            return "bash"
        case Ssh(host=host, port=port, needs_password=askpw):
            out = f"ssh:{strings.resolve(host)}"
            if port != DEFAULT_SSH_PORT:
                out += f":{port}"
            return out + (f":{ASKPW}" if askpw else "")
        case PrivilegeEscalation(needs_password=askpw):
            return f"sudo:{ASKPW}" if askpw else "sudo"
        case ContainerExec(container_id=cid):
            return f"docker:{strings.resolve(cid)}"
    raise TypeError(f"Expected a hop descriptor, got {type(hop).__name__}")


def format_chain(strings: StringPool, chain: Chain) -> str:
    return "|".join(format_hop(strings, hop) for hop in chain)


def needs_password(hop: Hop) -> bool:
    return isinstance(hop, (Ssh, PrivilegeEscalation)) and hop.needs_password


def split_path(path: str) -> tuple[Optional[str], str]:
    """Split ``<chain>:<remote-path>`` into its two halves.

    The chain is everything before the last ``:``. Strings whose first
    segment does not start with a known hop token are local paths and come
    back as ``(None, path)``.

    Raises:
        HopParseError: If a remote address has an empty remote path
    """
    chain, sep, remote = path.rpartition(":")
    if not sep:
        return None, path
    proto = chain.split("|", 1)[0].split(":", 1)[0]
    if proto not in HOP_TOKENS:
        return None, path
    if not remote:
        raise HopParseError("missing remote path", path)
    return chain, remote


__all__ = [
    "Interned",
    "StringPool",
    "Direct",
    "Ssh",
    "PrivilegeEscalation",
    "ContainerExec",
    "Hop",
    "Chain",
    "parse_hop",
    "parse_chain",
    "format_hop",
    "format_chain",
    "needs_password",
    "split_path",
]
