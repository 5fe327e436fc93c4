from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class MessageType(IntEnum):
    REQUEST = 0
    RESPONSE = 1
    NOTIFICATION = 2


class HandleKind(IntEnum):
    """msgpack ext type codes Neovim uses for its object handles."""

    BUFFER = 0
    WINDOW = 1
    TABPAGE = 2


@dataclass(frozen=True)
class RemoteHandle:
    """A buffer, window or tabpage handle as sent by the server."""

    kind: HandleKind
    handle: int

    def __int__(self) -> int:
        return self.handle


@dataclass(frozen=True)
class Request:
    msgid: int
    method: str
    args: list[Any] = field(default_factory=list)

    type = MessageType.REQUEST


@dataclass(frozen=True)
class Response:
    msgid: int
    error: Any = None
    result: Any = None

    type = MessageType.RESPONSE


@dataclass(frozen=True)
class Notification:
    method: str
    args: list[Any] = field(default_factory=list)

    type = MessageType.NOTIFICATION


Message = Request | Response | Notification
