"""msgpack-RPC wire codec.

Messages are msgpack arrays carried unframed over the stream::

    [0, msgid, method, args]     request
    [1, msgid, error, result]    response
    [2, method, args]            notification

Encoding is delegated to the ``msgpack`` packer, which always picks the
smallest representation for a value (fixint/fixstr/fixarray first, then the
8/16/32/64-bit forms). Decoding is total: bytes that are not msgpack, or str
values that are not valid UTF-8, raise :class:`MalformedMessage` and msgpack
values that are not a valid RPC message raise :class:`ProtocolViolation`.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import msgpack

from nvr.errors import IncompleteMessage, MalformedMessage, ProtocolViolation
from nvr.models.message import (
    HandleKind,
    Message,
    MessageType,
    Notification,
    RemoteHandle,
    Request,
    Response,
)

# 0 lifts the Unpacker default of 100 MiB to 2**32 - 1 bytes.
_MAX_BUFFER_SIZE = 0


def _pack_default(obj: Any) -> Any:
    if isinstance(obj, RemoteHandle):
        return msgpack.ExtType(int(obj.kind), msgpack.packb(obj.handle))
    raise TypeError(f"Cannot encode {type(obj).__name__} as a msgpack value")


def _ext_hook(code: int, data: bytes) -> RemoteHandle:
    try:
        kind = HandleKind(code)
    except ValueError:
        raise MalformedMessage(f"Unknown msgpack ext type {code}") from None
    try:
        handle = msgpack.unpackb(data)
    except (ValueError, msgpack.UnpackException) as e:
        raise MalformedMessage(f"Invalid {kind.name.lower()} handle payload: {e}") from e
    if not _is_int(handle):
        raise MalformedMessage(f"Invalid {kind.name.lower()} handle payload: {handle!r}")
    return RemoteHandle(kind, handle)


def _unpacker() -> msgpack.Unpacker:
    return msgpack.Unpacker(
        raw=False,
        strict_map_key=False,
        ext_hook=_ext_hook,
        max_buffer_size=_MAX_BUFFER_SIZE,
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def encode(message: Message) -> bytes:
    """Serialize a message to msgpack bytes."""
    if isinstance(message, Request):
        frame = [int(MessageType.REQUEST), message.msgid, message.method, list(message.args)]
    elif isinstance(message, Response):
        frame = [int(MessageType.RESPONSE), message.msgid, message.error, message.result]
    elif isinstance(message, Notification):
        frame = [int(MessageType.NOTIFICATION), message.method, list(message.args)]
    else:
        raise TypeError(f"Not an RPC message: {message!r}")
    return msgpack.packb(frame, default=_pack_default, use_bin_type=True)


def decode(data: bytes) -> tuple[Message, int]:
    """Decode the first message in *data*.

    Returns the message and the number of bytes it occupied.

    Raises:
        IncompleteMessage: *data* ends before the first message does.
        MalformedMessage: *data* does not start with a msgpack value.
        ProtocolViolation: the value is not a valid RPC message.
    """
    unpacker = _unpacker()
    unpacker.feed(data)
    obj = _unpack_one(unpacker)
    return to_message(obj), unpacker.tell()


def decode_stream(data: bytes) -> tuple[list[Message], int]:
    """Decode every complete message at the start of *data*.

    A trailing partial message is left alone; the returned byte count tells
    the caller where it begins. Bad bytes after at least one good message end
    the batch there, so the error is raised by the call that starts on them.
    """
    unpacker = _unpacker()
    unpacker.feed(data)
    messages: list[Message] = []
    consumed = 0
    while consumed < len(data):
        try:
            message = to_message(_unpack_one(unpacker))
        except IncompleteMessage:
            break
        except (MalformedMessage, ProtocolViolation):
            if messages:
                break
            raise
        messages.append(message)
        consumed = unpacker.tell()
    return messages, consumed


class StreamDecoder:
    """Incremental decoder for one connection.

    Chunks are fed into a single ``msgpack.Unpacker`` that keeps the state of
    a partial message, so every byte is parsed once however many reads a
    message spans.
    """

    def __init__(self) -> None:
        self._unpacker = _unpacker()
        self._fed = 0
        self._consumed = 0

    @property
    def buffered(self) -> int:
        """Bytes received that do not yet form a complete message."""
        return self._fed - self._consumed

    def feed(self, data: bytes) -> Iterator[Message]:
        """Add *data* and iterate over the messages it completes.

        Messages are yielded in order before any error found after them is
        raised.
        """
        self._unpacker.feed(data)
        self._fed += len(data)
        return self._drain()

    def _drain(self) -> Iterator[Message]:
        while True:
            try:
                obj = _unpack_one(self._unpacker)
            except IncompleteMessage:
                return
            self._consumed = self._unpacker.tell()
            yield to_message(obj)


def _unpack_one(unpacker: msgpack.Unpacker) -> Any:
    try:
        return unpacker.unpack()
    except msgpack.OutOfData:
        raise IncompleteMessage("Buffer ends inside a message") from None
    except (ValueError, msgpack.UnpackException) as e:
        raise MalformedMessage(f"Invalid msgpack data: {e}") from e


def _method_name(value: Any) -> str:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolViolation(f"Method name is not UTF-8: {value!r}") from e
    if not isinstance(value, str):
        raise ProtocolViolation(f"Method name must be a string, got {value!r}")
    return value


def _msgid(value: Any) -> int:
    if not _is_int(value) or value < 0:
        raise ProtocolViolation(f"Message id must be an unsigned integer, got {value!r}")
    return value


def _args(value: Any) -> list[Any]:
    if not isinstance(value, list):
        raise ProtocolViolation(f"Arguments must be an array, got {value!r}")
    return value


def to_message(obj: Any) -> Message:
    """Validate a decoded msgpack value and build the matching message."""
    if not isinstance(obj, list) or not obj:
        raise ProtocolViolation(f"Expected a non-empty array, got {obj!r:.80}")

    tag = obj[0]
    if not _is_int(tag):
        raise ProtocolViolation(f"Message type must be an integer, got {tag!r}")

    if tag == MessageType.REQUEST and len(obj) == 4:
        return Request(msgid=_msgid(obj[1]), method=_method_name(obj[2]), args=_args(obj[3]))
    if tag == MessageType.RESPONSE and len(obj) == 4:
        return Response(msgid=_msgid(obj[1]), error=obj[2], result=obj[3])
    if tag == MessageType.NOTIFICATION and len(obj) == 3:
        return Notification(method=_method_name(obj[1]), args=_args(obj[2]))

    raise ProtocolViolation(f"Unexpected message shape: type={tag} length={len(obj)}")
