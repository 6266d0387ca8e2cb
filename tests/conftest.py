"""
Shared pytest fixtures for hopedit unit tests.

This module provides common fixtures used across multiple test files.
"""

import pytest

from hopedit.hops import StringPool, parse_chain
from hopedit.pool import ConnectionPool
from hopedit.testing import FakeShell
from hopedit.tunnel import TunnelSession

# Short enough that timeout tests finish quickly, long enough for FakeShell
FAST_TIMEOUT = 0.3
FAST_POLL = 0.01


@pytest.fixture
def strings():
    """A fresh string pool."""
    return StringPool()


@pytest.fixture
def fake_shell():
    """FakeShell with a couple of files on the remote side."""
    return FakeShell(
        files={
            "/etc/hosts": b"127.0.0.1 localhost\n",
            "/srv/app/config.json": b'{"debug": false}\n',
        }
    )


@pytest.fixture
def make_session(fake_shell, strings):
    """Factory that connects a TunnelSession to ``fake_shell``."""
    sessions = []

    def make(chain_text="bash", ask_password=None, **kwargs):
        kwargs.setdefault("timeout", FAST_TIMEOUT)
        kwargs.setdefault("poll_interval", FAST_POLL)
        session = TunnelSession.connect(
            parse_chain(strings, chain_text),
            strings,
            spawn=fake_shell.spawn,
            ask_password=ask_password,
            **kwargs,
        )
        sessions.append(session)
        return session

    yield make
    for session in sessions:
        session.close()


def fake_session_factory(fake_shell):
    """session_factory for ConnectionPool that spawns FakeShell children."""

    def factory(chain, strings, **kwargs):
        return TunnelSession.connect(chain, strings, spawn=fake_shell.spawn, **kwargs)

    return factory


@pytest.fixture
def fake_pool(fake_shell):
    """ConnectionPool whose sessions talk to ``fake_shell``."""
    pool = ConnectionPool(
        timeout=FAST_TIMEOUT,
        poll_interval=FAST_POLL,
        session_factory=fake_session_factory(fake_shell),
    )
    yield pool
    pool.close()
