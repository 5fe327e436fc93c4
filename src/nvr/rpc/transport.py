"""Unix domain socket transport for msgpack-RPC messages."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import structlog

from nvr.errors import TransportError
from nvr.models.message import Message
from nvr.rpc.codec import StreamDecoder, encode

log = structlog.get_logger()

READ_CHUNK_SIZE = 64 * 1024


class Transport:
    """Owns one socket connection.

    Writes are serialized with a lock so two senders never interleave their
    bytes. :meth:`messages` is the only reader of the connection.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._decoder = StreamDecoder()
        self._closed = False

    @classmethod
    async def connect(cls, socket_path: str | Path, timeout: float = 5.0) -> Transport:
        """Open a connection to the server listening on *socket_path*."""
        path = Path(socket_path)
        if not path.exists():
            raise TransportError(f"Socket {path} does not exist. Is the server running?")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(path), limit=READ_CHUNK_SIZE),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to {path}") from e
        except OSError as e:
            raise TransportError(f"Cannot connect to {path}: {e}") from e

        log.debug("transport connected", socket=str(path))
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: Message) -> None:
        """Encode *message* and write it in one piece."""
        data = encode(message)
        async with self._write_lock:
            if self._closed:
                raise TransportError("Connection is closed")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                raise TransportError(f"Failed to send {type(message).__name__}: {e}") from e

    async def messages(self) -> AsyncIterator[Message]:
        """Yield inbound messages until the connection fails.

        Always ends by raising :class:`TransportError`; a clean close by the
        peer is still a lost connection for a client that expects responses.
        """
        while True:
            try:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
            except (ConnectionError, OSError) as e:
                raise TransportError(f"Connection lost: {e}") from e

            if not chunk:
                if self._decoder.buffered:
                    raise TransportError(
                        f"Connection closed with {self._decoder.buffered} bytes of an "
                        "incomplete message buffered"
                    )
                raise TransportError("Connection closed by server")

            for message in self._decoder.feed(chunk):
                yield message

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        log.debug("transport closed")
