"""
hopedit - document and transport core of a modal terminal text editor.

Quick start:
    import hopedit

    buf = hopedit.Buffer.open("notes.txt")
    buf.insert_text_at(0, "hello\\n")
    buf.write()

    # Remote files go through a hop chain and the process connection pool
    buf = hopedit.Buffer.open("ssh:example.com|sudo:askpw:/etc/hosts")
"""

import atexit
import logging
import os
import threading
import weakref
from typing import Optional

from hopedit.errors import (
    HopParseError,
    TunnelError,
    TunnelCommandError,
    TunnelTimeoutError,
    TunnelClosedError,
    TunnelCancelledError,
    TunnelAuthError,
    PoolClosedError,
    ReadOnlyBufferError,
    DecodeError,
    HexDecodeError,
    StructuredDataError,
)
from hopedit.hops import (
    StringPool,
    Direct,
    Ssh,
    PrivilegeEscalation,
    ContainerExec,
    Hop,
    Chain,
    parse_chain,
    format_chain,
    split_path,
)
from hopedit.rope import Rope
from hopedit.codec import PlainText, HexDump, StructuredBinary, read_from, write_to
from hopedit.syntax import SyntaxTracker
from hopedit.tunnel import TunnelSession, CommandResult, PasswordCallback
from hopedit.pool import ConnectionPool
from hopedit.buffer import Buffer, Scratch, NewFile, LocalFile, RemoteFile

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Environment Variables (read at import)
# ─────────────────────────────────────────────────────────────────────────────


def _get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Get environment variable as float."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {val!r}")


# Read environment variables at import time
_env_timeout = _get_env_float("HOPEDIT_TIMEOUT")
_env_poll_interval = _get_env_float("HOPEDIT_POLL_INTERVAL")
_env_shell = os.environ.get("HOPEDIT_SHELL")


# ─────────────────────────────────────────────────────────────────────────────
# Global Pool Management
# ─────────────────────────────────────────────────────────────────────────────

# Thread-safe lock for global pool initialization
_global_lock = threading.Lock()

# Global lazy-initialized pool (None until first use)
_global_pool: Optional[ConnectionPool] = None

# User-configured settings (set via configure())
_config_timeout: Optional[float] = None
_config_poll_interval: Optional[float] = None
_config_shell: Optional[str] = None
_config_ask_password: Optional[PasswordCallback] = None

# All pools created via connection_pool(), tracked for atexit cleanup.
_live_pools: weakref.WeakSet = weakref.WeakSet()
_live_pools_lock = threading.Lock()


def _track(pool: ConnectionPool) -> ConnectionPool:
    """Register a pool for atexit cleanup and return it."""
    with _live_pools_lock:
        _live_pools.add(pool)
    return pool


def _atexit_close_pools() -> None:
    """Close all pools (and their idle sessions) at interpreter exit."""
    with _live_pools_lock:
        pools = list(_live_pools)
    for pool in pools:
        try:
            pool.close()
        except Exception:
            logger.debug("Error closing pool during atexit", exc_info=True)


atexit.register(_atexit_close_pools)


def configure(
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
    shell: Optional[str] = None,
    ask_password: Optional[PasswordCallback] = None,
) -> None:
    """Configure hopedit global settings.

    Must be called BEFORE the first remote file is opened.

    Args:
        timeout: Per-wait tunnel timeout in seconds (default: from HOPEDIT_TIMEOUT or 10.0)
        poll_interval: Non-blocking read bound in seconds (default: from HOPEDIT_POLL_INTERVAL or 0.05)
        shell: Local shell sessions start from (default: from HOPEDIT_SHELL or sh)
        ask_password: Callback asked for the password of hops marked askpw

    Raises:
        RuntimeError: If called after the default pool is initialized
    """
    global _config_timeout, _config_poll_interval, _config_shell, _config_ask_password

    with _global_lock:
        if _global_pool is not None:
            raise RuntimeError(
                "configure() must be called before any remote file is opened. "
                "Call shutdown() first to close the pool, then configure() to change settings."
            )

        if timeout is not None:
            _config_timeout = timeout
        if poll_interval is not None:
            _config_poll_interval = poll_interval
        if shell is not None:
            _config_shell = shell
        if ask_password is not None:
            _config_ask_password = ask_password


def shutdown() -> None:
    """Close and release the global lazy-initialized connection pool.

    The pool is automatically closed on interpreter exit via atexit, so
    explicit shutdown() is only needed to reset state mid-process (e.g.,
    between tests or before re-configuring).

    Safe to call multiple times or when no pool is initialized.
    """
    global _global_pool

    with _global_lock:
        if _global_pool is not None:
            _global_pool.close()
            _global_pool = None


def connection_pool(
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
    shell: Optional[str] = None,
    ask_password: Optional[PasswordCallback] = None,
) -> ConnectionPool:
    """Create a connection pool using the effective global settings.

    Priority for each setting: argument > configure() > environment > default.
    The pool is closed automatically at interpreter exit.

    Example:
        with hopedit.connection_pool(timeout=30.0) as pool:
            buf = hopedit.Buffer.open("ssh:example.com:/etc/motd", pool=pool)
    """
    if timeout is None:
        timeout = _config_timeout if _config_timeout is not None else (_env_timeout if _env_timeout is not None else 10.0)
    if poll_interval is None:
        poll_interval = (
            _config_poll_interval
            if _config_poll_interval is not None
            else (_env_poll_interval if _env_poll_interval is not None else 0.05)
        )
    if shell is None:
        shell = _config_shell or _env_shell or "sh"
    if ask_password is None:
        ask_password = _config_ask_password

    return _track(ConnectionPool(timeout=timeout, poll_interval=poll_interval, shell=shell, ask_password=ask_password))


def default_pool() -> ConnectionPool:
    """Get or create the global connection pool (lazy initialization).

    Thread Safety:
        Thread-safe - uses lock for initialization.
    """
    global _global_pool

    # Fast path: already initialized
    if _global_pool is not None:
        return _global_pool

    with _global_lock:
        # Double-check under lock
        if _global_pool is not None:
            return _global_pool
        _global_pool = connection_pool()
        logger.debug("Default connection pool created")
        return _global_pool


__all__ = [
    "__version__",
    # configuration
    "configure",
    "shutdown",
    "connection_pool",
    "default_pool",
    # document
    "Buffer",
    "Scratch",
    "NewFile",
    "LocalFile",
    "RemoteFile",
    "Rope",
    "PlainText",
    "HexDump",
    "StructuredBinary",
    "read_from",
    "write_to",
    "SyntaxTracker",
    # transport
    "StringPool",
    "Direct",
    "Ssh",
    "PrivilegeEscalation",
    "ContainerExec",
    "Hop",
    "Chain",
    "parse_chain",
    "format_chain",
    "split_path",
    "TunnelSession",
    "CommandResult",
    "ConnectionPool",
    # errors
    "HopParseError",
    "TunnelError",
    "TunnelCommandError",
    "TunnelTimeoutError",
    "TunnelClosedError",
    "TunnelCancelledError",
    "TunnelAuthError",
    "PoolClosedError",
    "ReadOnlyBufferError",
    "DecodeError",
    "HexDecodeError",
    "StructuredDataError",
]
