"""
Thread-safe cache of idle tunnel sessions, keyed by hop chain.

Multi-hop logins are slow, so a session is returned to the pool after use
instead of being closed. Sessions have connect/recycle semantics: connect_to()
hands out an idle session for the exact same chain when one exists and logs
in a new one otherwise.

NOTE: No health check happens at checkout. A session that died while idle
fails on its first command; the caller then discards it rather than
recycling it.

Usage:
    pool = ConnectionPool(ask_password=prompt_user)

    # Context manager (preferred)
    with pool.session("ssh:example.com|sudo:askpw") as session:
        entries = session.list_files("/etc")

    # Explicit
    session = pool.connect("ssh:example.com")
    try:
        data = session.read_file("/etc/hosts").read()
    finally:
        pool.recycle(session)

    pool.close()
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from hopedit.errors import PoolClosedError, TunnelError
from hopedit.hops import Chain, StringPool, format_chain, parse_chain
from hopedit.tunnel import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT, PasswordCallback, TunnelSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., TunnelSession]


class ConnectionPool:
    """
    Cache of idle TunnelSession objects keyed by chain.

    The pool also owns the StringPool every chain it parses is interned in,
    so hop descriptors from one pool resolve against that pool only.

    Thread Safety:
        All methods are thread-safe. The mutex is held only while the idle
        lists are manipulated, never during a login or a remote command.

    Lifecycle:
        - Pool starts empty; sessions are created on demand
        - A session is either held by one caller or idle in the pool
        - close() closes every idle session; the pool cannot be reused

    Example:
        with ConnectionPool() as pool:
            session = pool.connect("bash")
            pool.recycle(session)
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        shell: str = "sh",
        ask_password: Optional[PasswordCallback] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        """
        Initialize the pool.

        Args:
            timeout: Per-wait timeout for new sessions (seconds)
            poll_interval: Non-blocking read bound for new sessions (seconds)
            shell: Local shell command new sessions start from
            ask_password: Default password callback for hops marked askpw
            session_factory: Replaces TunnelSession.connect (tests)

        Raises:
            ValueError: If parameters are invalid
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")

        self._timeout = timeout
        self._poll_interval = poll_interval
        self._shell = shell
        self._ask_password = ask_password
        self._session_factory = session_factory or TunnelSession.connect

        self._strings = StringPool()
        self._idle: dict[Chain, list[TunnelSession]] = {}
        self._closed = False
        self._lock = threading.Lock()

        logger.debug(f"ConnectionPool created: timeout={timeout}, shell={shell}")

    @property
    def strings(self) -> StringPool:
        """String pool the chains of this pool are interned in."""
        return self._strings

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def closed(self) -> bool:
        """True if pool has been closed."""
        with self._lock:
            return self._closed

    def idle_count(self, chain: Optional[Chain] = None) -> int:
        """Number of idle sessions, for one chain or in total."""
        with self._lock:
            if chain is not None:
                return len(self._idle.get(chain, ()))
            return sum(len(sessions) for sessions in self._idle.values())

    def parse(self, chain_text: str) -> Chain:
        """Parse a chain string, interning its strings into this pool."""
        return parse_chain(self._strings, chain_text)

    def formatted(self, chain: Chain) -> str:
        return format_chain(self._strings, chain)

    def connect(self, chain_text: str, ask_password: Optional[PasswordCallback] = None) -> TunnelSession:
        """Parse ``chain_text`` and check out a session for it.

        Raises:
            HopParseError: If the chain is malformed (before any connection attempt)
        """
        return self.connect_to(self.parse(chain_text), ask_password)

    def connect_to(self, chain: Chain, ask_password: Optional[PasswordCallback] = None) -> TunnelSession:
        """
        Check out a session for ``chain``.

        Returns an idle session for exactly this chain if one exists,
        otherwise logs in a new one (outside the lock).

        Args:
            chain: Parsed hop chain
            ask_password: Password callback for this login (default: the pool's)

        Returns:
            A TunnelSession held exclusively by the caller

        Raises:
            PoolClosedError: If pool is closed
            TunnelError: If a new login fails
        """
        chain = tuple(chain)
        with self._lock:
            if self._closed:
                raise PoolClosedError()
            idle = self._idle.get(chain)
            if idle:
                session = idle.pop()
                logger.debug("Reusing idle session for %s, idle=%d", self.formatted(chain), len(idle))
                return session

        # Login OUTSIDE the lock; it performs blocking I/O
        logger.debug("Creating new session for %s", self.formatted(chain))
        return self._session_factory(
            chain,
            self._strings,
            ask_password=ask_password or self._ask_password,
            timeout=self._timeout,
            poll_interval=self._poll_interval,
            shell=self._shell,
        )

    def recycle(self, session: TunnelSession) -> None:
        """
        Return a session to the pool.

        Broken or dead sessions are closed instead. If the pool is closed,
        the session is closed as well.

        Note:
            Recycling a session twice is a no-op the second time.
        """
        # alive polls the child process; keep it outside the lock
        alive = session.alive
        with self._lock:
            closed = self._closed
            if not closed and alive:
                idle = self._idle.setdefault(session.chain, [])
                if session in idle:
                    logger.debug("Recycle called for session already idle (ignoring)")
                    return
                idle.append(session)
                logger.debug(f"Recycled session, idle={len(idle)}")
                return

        if not alive:
            logger.warning("Discarding dead session %r instead of recycling it", session)
        self._close_session(session)

    def discard(self, session: TunnelSession) -> None:
        """
        Close a session without returning it to the pool.

        Use this when a session is known to be bad (timeout, malformed reply).
        """
        with self._lock:
            idle = self._idle.get(session.chain)
            if idle and session in idle:
                idle.remove(session)
        self._close_session(session)
        logger.debug("Discarded session %r", session)

    def _close_session(self, session: TunnelSession) -> None:
        """Close a session safely."""
        try:
            session.close()
        except Exception as e:
            logger.debug(f"Error closing session: {e}")

    @contextmanager
    def session(self, chain_text: str, ask_password: Optional[PasswordCallback] = None) -> Iterator[TunnelSession]:
        """
        Context manager for checking out a session.

        The session is recycled when the block exits normally and discarded
        on tunnel or I/O errors.

        Example:
            with pool.session("ssh:example.com") as session:
                session.canonicalize("~")
        """
        session = self.connect(chain_text, ask_password)
        broken = False
        try:
            yield session
        except (TunnelError, OSError):
            broken = True
            raise
        finally:
            if broken:
                self.discard(session)
            else:
                self.recycle(session)

    def close(self) -> None:
        """
        Close the pool and all idle sessions.

        Sessions currently checked out are closed when they are recycled.
        Safe to call multiple times.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sessions = [s for idle in self._idle.values() for s in idle]
            self._idle.clear()

        for session in sessions:
            self._close_session(session)
        logger.info("ConnectionPool closed")

    def __enter__(self) -> "ConnectionPool":
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Exit context manager - closes the pool."""
        self.close()
        return False

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return f"ConnectionPool(idle={self.idle_count()}, {status})"
