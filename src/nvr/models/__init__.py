from nvr.models.message import (
    HandleKind,
    Message,
    MessageType,
    Notification,
    RemoteHandle,
    Request,
    Response,
)

__all__ = [
    "HandleKind",
    "Message",
    "MessageType",
    "Notification",
    "RemoteHandle",
    "Request",
    "Response",
]
