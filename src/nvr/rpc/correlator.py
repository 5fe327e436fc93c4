"""CallCorrelator: matches responses to the requests that caused them."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import structlog

from nvr.errors import ProtocolViolation, RemoteError
from nvr.models.message import Response

log = structlog.get_logger()


class CallCorrelator:
    """Issues msgids and tracks in-flight calls.

    Each pending call is a future keyed by its msgid. Responses are routed by
    msgid only, so they may arrive in any order.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._abandoned: set[int] = set()

    def register(self) -> tuple[int, asyncio.Future[Any]]:
        """Allocate the next msgid and a future for its response."""
        msgid = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[msgid] = future
        return msgid, future

    def resolve(self, response: Response) -> None:
        """Deliver *response* to the call that owns its msgid."""
        future = self._pending.pop(response.msgid, None)
        if future is None:
            if response.msgid in self._abandoned:
                self._abandoned.discard(response.msgid)
                log.debug("late response for abandoned call", msgid=response.msgid)
                return
            raise ProtocolViolation(f"Response for unknown msgid {response.msgid}")

        if future.done():
            return
        if response.error is not None:
            future.set_exception(RemoteError(response.error))
        else:
            future.set_result(response.result)

    def abandon(self, msgid: int) -> None:
        """Forget a call whose caller stopped waiting.

        Its response, if it ever arrives, is discarded.
        """
        if self._pending.pop(msgid, None) is not None:
            self._abandoned.add(msgid)

    def fail_all(self, exc: BaseException) -> None:
        """Fail every pending call with *exc*."""
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)
        if pending:
            log.debug("failed pending calls", count=len(pending), error=str(exc))
