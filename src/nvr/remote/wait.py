"""WaitCoordinator: block until the server reports that a buffer went away.

A wait moves through these states::

    IDLE -> TRIGGER_INSTALLED -> REGISTERED -> SATISFIED | TIMED_OUT | FAILED

Subscriptions are taken out before the autocommands that produce the
notifications are installed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

import structlog

from nvr.errors import NvrError, RemoteError, TransportError, WaitTimeoutError
from nvr.models.message import Notification
from nvr.remote.api import Buffer, Nvim
from nvr.remote.registry import SharedResourceRegistry
from nvr.rpc.dispatcher import Subscription

log = structlog.get_logger()

BUF_DELETE_EVENT = "BufDelete"
EXIT_EVENT = "Exit"
DEFAULT_WAIT_TIMEOUT = 300.0
# Bound on the cleanup calls made after a timeout.
RELEASE_TIMEOUT = 1.0


class WaitState(StrEnum):
    IDLE = "idle"
    TRIGGER_INSTALLED = "trigger_installed"
    REGISTERED = "registered"
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class WaitResult:
    """How a wait ended."""

    buffer: int
    reason: str  # BufDelete or Exit
    exit_status: int = 0


def trigger_commands(buffer: int, channel_id: int) -> list[str]:
    """Autocommands that notify *channel_id* when *buffer* or the server goes away."""
    # Every command names the group itself; concurrent waits interleave these calls.
    group = f"nvr_{channel_id}"
    notify_delete = f"rpcnotify({channel_id}, '{BUF_DELETE_EVENT}', {buffer})"
    notify_exit = f"rpcnotify({channel_id}, '{EXIT_EVENT}', v:exiting)"
    return [
        f"augroup {group} | augroup END",
        f"autocmd! {group} BufDelete <buffer={buffer}>",
        f"autocmd {group} BufDelete <buffer={buffer}> silent! call {notify_delete}",
        f"autocmd! {group} VimLeave",
        f"autocmd {group} VimLeave * silent! call {notify_exit}",
    ]


class WaitSession:
    """One wait for one buffer."""

    def __init__(
        self,
        nvim: Nvim,
        registry: SharedResourceRegistry,
        buffer: int,
        identity: int,
        timeout: float,
    ) -> None:
        self.nvim = nvim
        self.registry = registry
        self.buffer = buffer
        self.identity = identity
        self.timeout = timeout
        self.deadline: float | None = None
        self.state = WaitState.IDLE
        self._log = log.bind(buffer=buffer, channel=identity)

    def _transition(self, state: WaitState) -> None:
        self._log.debug("wait state", previous=self.state.value, state=state.value)
        self.state = state

    async def run(self) -> WaitResult:
        loop = asyncio.get_running_loop()
        self.deadline = loop.time() + self.timeout

        buf_delete = self.nvim.subscribe(
            BUF_DELETE_EVENT, lambda args: bool(args) and args[0] == self.buffer
        )
        exiting = self.nvim.subscribe(EXIT_EVENT)
        notification: Notification | None = None
        try:
            async with asyncio.timeout_at(self.deadline):
                for command in trigger_commands(self.buffer, self.identity):
                    await self.nvim.command(command)
                self._transition(WaitState.TRIGGER_INSTALLED)

                await self.registry.register(self.buffer, self.identity)
                self._transition(WaitState.REGISTERED)

                notification = await self._first_of(buf_delete, exiting)
        except TimeoutError:
            pass
        except NvrError:
            self._transition(WaitState.FAILED)
            raise
        finally:
            self.nvim.unsubscribe(buf_delete)
            self.nvim.unsubscribe(exiting)

        if notification is None:
            self._transition(WaitState.TIMED_OUT)
            await self._release()
            raise WaitTimeoutError(self.buffer, self.timeout)

        self._transition(WaitState.SATISFIED)
        return self._result(notification)

    async def _first_of(self, *subscriptions: Subscription) -> Notification:
        deliveries = {s.delivery for s in subscriptions}
        done, _ = await asyncio.wait(deliveries, return_when=asyncio.FIRST_COMPLETED)
        # Exit arrives just before the connection drops; prefer the delivery.
        for delivery in done:
            if delivery.exception() is None:
                return delivery.result()
        # A failed session fails every subscription, so result() re-raises it.
        return next(iter(done)).result()

    async def _release(self) -> None:
        group = f"nvr_{self.identity}"
        try:
            async with asyncio.timeout(RELEASE_TIMEOUT):
                await self.registry.unregister(self.buffer, self.identity)
                await self.nvim.command(f"autocmd! {group} BufDelete <buffer={self.buffer}>")
        except TimeoutError:
            self._log.warning("server did not answer cleanup after timeout")
        except (RemoteError, TransportError) as e:
            self._log.warning("could not clean up after timeout", error=str(e))

    def _result(self, notification: Notification) -> WaitResult:
        if notification.method == EXIT_EVENT:
            status = notification.args[0] if notification.args else 0
            exit_status = status if isinstance(status, int) else 0
            self._log.info("server exited during wait", exit_status=exit_status)
            return WaitResult(self.buffer, EXIT_EVENT, exit_status)
        self._log.info("buffer closed")
        return WaitResult(self.buffer, BUF_DELETE_EVENT)


class WaitCoordinator:
    """Runs wait sessions against one server connection."""

    def __init__(
        self,
        nvim: Nvim,
        registry: SharedResourceRegistry | None = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> None:
        self.nvim = nvim
        self.registry = registry or SharedResourceRegistry(nvim)
        self.timeout = timeout

    async def wait_for(self, buffer: Buffer, timeout: float | None = None) -> WaitResult:
        """Block until *buffer* is deleted or the server exits.

        Raises:
            WaitTimeoutError: neither happened before the deadline.
            TransportError: the connection was lost.
            RemoteError: the server rejected the trigger or registry update.
        """
        identity = await self.nvim.channel_id()
        session = WaitSession(
            self.nvim,
            self.registry,
            int(buffer),
            identity,
            self.timeout if timeout is None else timeout,
        )
        return await session.run()

    async def wait_for_all(
        self, buffers: list[Buffer], timeout: float | None = None
    ) -> list[WaitResult]:
        """Wait for every buffer concurrently.

        The first failure cancels the remaining waits and is re-raised.
        """
        if not buffers:
            return []
        await self.nvim.channel_id()
        tasks = [asyncio.create_task(self.wait_for(b, timeout)) for b in buffers]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
