"""Session: one connection, one reader task, many concurrent callers."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import structlog

from nvr.errors import MalformedMessage, NvrError, ProtocolViolation, TransportError
from nvr.models.message import Notification, Request, Response
from nvr.rpc.correlator import CallCorrelator
from nvr.rpc.dispatcher import NotificationDispatcher, Predicate, Subscription
from nvr.rpc.transport import Transport

log = structlog.get_logger()


class Session:
    """msgpack-RPC client session over a :class:`Transport`.

    The reader task is the only consumer of the transport. It hands responses
    to the :class:`CallCorrelator` and notifications to the
    :class:`NotificationDispatcher`. The first fatal error (lost connection,
    malformed bytes, protocol violation) is stored in :attr:`failure` and
    fails every pending call and subscription.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._correlator = CallCorrelator()
        self._dispatcher = NotificationDispatcher()
        self._reader_task: asyncio.Task | None = None
        self._failure: NvrError | None = None

    @classmethod
    async def connect(cls, socket_path: str | Path, timeout: float = 5.0) -> Session:
        transport = await Transport.connect(socket_path, timeout=timeout)
        session = cls(transport)
        session.start()
        return session

    @property
    def failure(self) -> NvrError | None:
        return self._failure

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    def start(self) -> None:
        """Start the reader task."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name="nvr-reader")

    async def close(self) -> None:
        """Stop the reader task and close the connection."""
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._fail(TransportError("Session closed"), log_failure=False)
        await self._transport.close()

    async def __aenter__(self) -> Session:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def call(self, method: str, *args: Any) -> Any:
        """Send a request and wait for its response.

        Raises:
            RemoteError: the server reported an error for this call.
            TransportError: the connection was lost before the response.
            ProtocolViolation: the server broke the protocol.
        """
        self._raise_if_failed()
        msgid, future = self._correlator.register()
        try:
            await self._transport.send(Request(msgid=msgid, method=method, args=list(args)))
            log.debug("request sent", msgid=msgid, method=method)
            return await future
        except TransportError as e:
            self._fail(e)
            raise
        finally:
            if future.cancelled() or not future.done():
                self._correlator.abandon(msgid)

    async def notify(self, method: str, *args: Any) -> None:
        """Send a notification; there is no response."""
        self._raise_if_failed()
        try:
            await self._transport.send(Notification(method=method, args=list(args)))
        except TransportError as e:
            self._fail(e)
            raise

    def subscribe(self, method: str, predicate: Predicate | None = None) -> Subscription:
        """Register interest in the next matching notification."""
        self._raise_if_failed()
        return self._dispatcher.subscribe(method, predicate)

    def unsubscribe(self, subscription: Subscription) -> None:
        self._dispatcher.unsubscribe(subscription)

    def _raise_if_failed(self) -> None:
        if self._failure is not None:
            raise self._failure

    def _fail(self, exc: NvrError, log_failure: bool = True) -> None:
        if self._failure is not None:
            return
        self._failure = exc
        if log_failure:
            log.error("session failed", error=str(exc), kind=type(exc).__name__)
        self._correlator.fail_all(exc)
        self._dispatcher.fail_all(exc)

    async def _read_loop(self) -> None:
        try:
            async for message in self._transport.messages():
                if isinstance(message, Response):
                    self._correlator.resolve(message)
                elif isinstance(message, Notification):
                    self._dispatcher.dispatch(message)
                else:
                    await self._reject_request(message)
        except (TransportError, MalformedMessage, ProtocolViolation) as e:
            self._fail(e)
            await self._transport.close()

    async def _reject_request(self, request: Request) -> None:
        log.warning("rejecting server request", msgid=request.msgid, method=request.method)
        response = Response(
            msgid=request.msgid,
            error=f"Client does not handle requests ({request.method})",
            result=None,
        )
        await self._transport.send(response)
