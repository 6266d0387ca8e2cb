"""
Configuration for real/integration tests.

These tests drive an actual local shell through a pty (pexpect), and
optionally a real ssh destination:
- Local: sh with coreutils (base64 -w, realpath)
- SSH: HOPEDIT_TEST_SSH_HOST (key-based login, no password prompt)

Run these tests explicitly:
    python -m pytest tests/real/ -v -s -o "addopts="
"""

import pytest

from hopedit.pool import ConnectionPool


# =============================================================================
# Pytest Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "real: marks tests that drive a real shell through a pty",
    )


@pytest.fixture
def pool():
    """A real connection pool with a generous timeout."""
    pool = ConnectionPool(timeout=15.0)
    yield pool
    pool.close()
