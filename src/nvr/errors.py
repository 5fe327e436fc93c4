"""Exception hierarchy for the remote control client.

Every error carries an ``exit_code`` so the CLI can map each failure kind to
its own process exit status.
"""

from __future__ import annotations

from typing import Any


class NvrError(Exception):
    """Base class for all client errors."""

    exit_code = 1


class TransportError(NvrError):
    """The socket connection could not be opened, or was closed or reset."""

    exit_code = 3


class SocketNotFoundError(TransportError):
    """No server socket could be located."""


class RemoteError(NvrError):
    """The server executed a call but reported an application-level failure.

    Neovim reports errors as ``[error_type, message]`` pairs; other peers may
    send a bare string. Both are accepted.
    """

    exit_code = 4

    def __init__(self, error: Any) -> None:
        self.error = error
        self.error_type: int | None = None
        if (
            isinstance(error, (list, tuple))
            and len(error) == 2
            and isinstance(error[0], int)
        ):
            self.error_type = error[0]
            message = error[1]
        else:
            message = error
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        self.message = str(message)
        super().__init__(self.message)


class WaitTimeoutError(NvrError):
    """A wait session's deadline elapsed before the watched event fired."""

    exit_code = 5

    def __init__(self, handle: int, timeout: float) -> None:
        self.handle = handle
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for buffer {handle} to close"
        )


class MalformedMessage(NvrError):
    """Wire bytes do not decode to a msgpack value."""

    exit_code = 6


class IncompleteMessage(MalformedMessage):
    """The buffer ends before the first message is complete."""


class ProtocolViolation(NvrError):
    """A well-formed value that breaks the RPC protocol.

    Raised for a response whose msgid matches no pending call and for a
    message with an unexpected shape.
    """

    exit_code = 6
