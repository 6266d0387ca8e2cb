"""
Exceptions raised by the hopedit document and tunnel layers.

Every error here is recoverable at the call site: the editor shows it on the
status line and keeps running.
"""

from typing import Optional


class HopParseError(ValueError):
    """Raised when a hop chain string cannot be parsed.

    Attributes:
        segment: The offending chain segment, if known
        message: Human-readable description
    """

    def __init__(self, message: str, segment: Optional[str] = None):
        self.message = message
        self.segment = segment
        if segment is not None:
            super().__init__(f"{message} (segment: {segment!r})")
        else:
            super().__init__(message)

    def __repr__(self) -> str:
        return f"HopParseError({self.message!r}, segment={self.segment!r})"


# ---------------------------------------------------------------------------
# Tunnel errors
# ---------------------------------------------------------------------------


class TunnelError(Exception):
    """Base exception for tunnel session failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TunnelCommandError(TunnelError):
    """A remote command exited with non-zero status.

    Attributes:
        command: The command that was run
        exit_code: Exit status reported by the remote shell
        output: Captured output, kept for diagnostics
    """

    def __init__(self, command: str, exit_code: int, output: str):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Command {command!r} failed (exit={exit_code}): {output.strip()}")

    def __repr__(self) -> str:
        return f"TunnelCommandError(command={self.command!r}, exit_code={self.exit_code})"


class TunnelTimeoutError(TunnelError):
    """No recognizable response arrived before the deadline."""


class TunnelClosedError(TunnelError):
    """The shell process exited or the session was already closed."""


class TunnelCancelledError(TunnelError):
    """A wait was cancelled through TunnelSession.cancel()."""


class TunnelAuthError(TunnelError):
    """A hop asked for a password that could not be supplied or was rejected."""


class PoolClosedError(Exception):
    """Raised when attempting to connect through a closed pool."""

    def __init__(self, message: str = "Pool is closed"):
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Storage / decode errors
# ---------------------------------------------------------------------------


class ReadOnlyBufferError(PermissionError):
    """Raised when write() is called on a buffer opened read-only."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name}: buffer is read-only")


class DecodeError(ValueError):
    """Base class for failures serializing a buffer back to bytes."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class HexDecodeError(DecodeError):
    """Raised when a hex dump contains a character that is not a hex digit.

    Attributes:
        row: 1-based line of the offending character
        column: 1-based column (in characters) of the offending character
        char: The offending character
    """

    def __init__(self, row: int, column: int, char: str):
        self.row = row
        self.column = column
        self.char = char
        super().__init__(f"invalid hex digit {char!r} at {row}:{column}")

    def __repr__(self) -> str:
        return f"HexDecodeError(row={self.row}, column={self.column}, char={self.char!r})"


class StructuredDataError(DecodeError):
    """Structured binary content failed to decode or encode.

    The underlying codec exception is chained via ``__cause__``.
    """
