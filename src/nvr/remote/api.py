"""Nvim: the Neovim API calls the client relies on."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from nvr.models.message import RemoteHandle
from nvr.rpc.dispatcher import Predicate, Subscription
from nvr.rpc.session import Session

# Neovim accepts a plain buffer number wherever it expects a buffer handle.
Buffer = int | RemoteHandle


class Nvim:
    """Thin wrapper mapping Neovim API methods onto :meth:`Session.call`."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._channel_id: int | None = None

    @classmethod
    async def connect(cls, socket_path: str | Path, timeout: float = 5.0) -> Nvim:
        session = await Session.connect(socket_path, timeout=timeout)
        return cls(session)

    async def close(self) -> None:
        await self.session.close()

    async def __aenter__(self) -> Nvim:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def call(self, method: str, *args: Any) -> Any:
        return await self.session.call(method, *args)

    def subscribe(self, method: str, predicate: Predicate | None = None) -> Subscription:
        return self.session.subscribe(method, predicate)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.session.unsubscribe(subscription)

    async def command(self, command: str) -> None:
        await self.call("nvim_command", command)

    async def eval(self, expr: str) -> Any:
        return await self.call("nvim_eval", expr)

    async def call_function(self, name: str, args: list[Any]) -> Any:
        return await self.call("nvim_call_function", name, args)

    async def exec_lua(self, code: str, args: list[Any]) -> Any:
        """Run *code* in the server as one request; ``...`` holds *args*."""
        return await self.call("nvim_exec_lua", code, args)

    async def api_info(self) -> list[Any]:
        return await self.call("nvim_get_api_info")

    async def channel_id(self) -> int:
        """This connection's channel id, as assigned by the server."""
        if self._channel_id is None:
            info = await self.api_info()
            self._channel_id = int(info[0])
        return self._channel_id

    async def current_buffer(self) -> RemoteHandle:
        return await self.call("nvim_get_current_buf")

    async def buf_get_var(self, buffer: Buffer, name: str) -> Any:
        return await self.call("nvim_buf_get_var", buffer, name)

    async def buf_set_var(self, buffer: Buffer, name: str, value: Any) -> None:
        await self.call("nvim_buf_set_var", buffer, name, value)

    async def buf_set_lines(
        self,
        buffer: Buffer,
        start: int,
        end: int,
        lines: list[str],
        strict: bool = True,
    ) -> None:
        await self.call("nvim_buf_set_lines", buffer, start, end, strict, lines)
