"""Shared fixtures: an in-process fake Neovim server and raw transport pairs."""

from __future__ import annotations

import asyncio
import re
import shutil
import socket
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import structlog

from nvr.errors import TransportError
from nvr.logging_config import configure_logging
from nvr.models.message import HandleKind, Notification, RemoteHandle, Request, Response
from nvr.remote.registry import REGISTER_LUA, UNREGISTER_LUA
from nvr.rpc.transport import Transport

AUTOCMD_RE = re.compile(r"^autocmd (\S+) (BufDelete|VimLeave) (\S+) (.*)$")
OPEN_COMMANDS = {"edit", "split", "vsplit", "tabedit", "enew", "new", "vnew", "tabnew"}


class FakeRemoteError(Exception):
    """Raise from a handler to send ``[0, message]`` back as the response error."""


class FakeNvimServer:
    """Just enough of Neovim's msgpack-RPC API for the client to talk to.

    Each connection gets its own channel id. Buffer variables, buffers and
    autocommands are shared across connections, like in a real server.
    """

    def __init__(self, socket_path: Path) -> None:
        self.socket_path = socket_path
        self.buffers: dict[int, dict[str, Any]] = {1: {"name": "", "lines": [""]}}
        self.buffer_vars: dict[int, dict[str, Any]] = {}
        self.current_buffer = 1
        self.commands: list[str] = []
        self.requests: list[tuple[int, Request]] = []
        self.autocmds: list[tuple[int, str, int | None]] = []  # (channel, event, buffer)
        self.handlers: dict[str, Callable[..., Any]] = {}
        self.expressions: dict[str, Any] = {}
        self.registers: dict[str, str] = {}
        self.cwd = "/home/user"
        self._transports: dict[int, Transport] = {}
        self._next_channel = 1
        self._server: asyncio.Server | None = None
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        self._server = await asyncio.start_unix_server(self._on_connect, path=str(self.socket_path))

    async def stop(self) -> None:
        for transport in list(self._transports.values()):
            await transport.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._server:
            self._server.close()
            await self._server.wait_closed()

    async def disconnect_all(self) -> None:
        for transport in list(self._transports.values()):
            await transport.close()

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        channel = self._next_channel
        self._next_channel += 1
        transport = Transport(reader, writer)
        self._transports[channel] = transport
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            async for message in transport.messages():
                if isinstance(message, Request):
                    self.requests.append((channel, message))
                    await self._answer(channel, transport, message)
        except TransportError:
            pass
        finally:
            self._transports.pop(channel, None)
            self._tasks.discard(task)

    async def _answer(self, channel: int, transport: Transport, request: Request) -> None:
        error, result = None, None
        try:
            handler = self.handlers.get(request.method)
            if handler is not None:
                result = handler(channel, *request.args)
                if asyncio.iscoroutine(result):
                    result = await result
            else:
                result = self._builtin(channel, request.method, request.args)
        except FakeRemoteError as e:
            error = [0, str(e)]
        await transport.send(Response(msgid=request.msgid, error=error, result=result))

    def _builtin(self, channel: int, method: str, args: list[Any]) -> Any:
        if method == "nvim_get_api_info":
            return [channel, {"version": {"major": 0, "minor": 10}}]
        if method == "nvim_eval":
            return self._eval(args[0])
        if method == "nvim_command":
            self._command(channel, args[0])
            return None
        if method == "nvim_call_function":
            name, fargs = args
            if name == "fnameescape":
                return fargs[0].replace(" ", "\\ ")
            if name == "setreg":
                self.registers[fargs[0]] = fargs[1]
                return 0
            if name == "chdir":
                previous, self.cwd = self.cwd, fargs[0]
                return previous
            raise FakeRemoteError(f"E117: Unknown function: {name}")
        if method == "nvim_exec_lua":
            return self._exec_lua(args[0], args[1])
        if method == "nvim_get_current_buf":
            return RemoteHandle(HandleKind.BUFFER, self.current_buffer)
        if method == "nvim_buf_get_var":
            buffer, name = self._buffer(args[0]), args[1]
            try:
                return self.buffer_vars.get(buffer, {})[name]
            except KeyError:
                raise FakeRemoteError(f"Key not found: {name}") from None
        if method == "nvim_buf_set_var":
            buffer, name, value = self._buffer(args[0]), args[1], args[2]
            self.buffer_vars.setdefault(buffer, {})[name] = value
            return None
        if method == "nvim_buf_set_lines":
            buffer = self._buffer(args[0])
            self.buffers[buffer]["lines"] = list(args[4])
            return None
        raise FakeRemoteError(f"Invalid method: {method}")

    def _buffer(self, value: Any) -> int:
        number = int(value)
        if number == 0:
            number = self.current_buffer
        if number not in self.buffers:
            raise FakeRemoteError(f"Invalid buffer id: {number}")
        return number

    def _exec_lua(self, code: str, args: list[Any]) -> Any:
        buffer_arg, name, identity = args
        if code == REGISTER_LUA:
            buffer = self._buffer(buffer_arg)
            current = self.buffer_vars.get(buffer, {}).get(name)
            if not isinstance(current, list):
                current = []
            if identity in current:
                return current
            updated = [identity, *current]
            self.buffer_vars.setdefault(buffer, {})[name] = updated
            return updated
        if code == UNREGISTER_LUA:
            try:
                buffer = self._buffer(buffer_arg)
            except FakeRemoteError:
                return []
            current = self.buffer_vars.get(buffer, {}).get(name)
            if not isinstance(current, list):
                return []
            updated = [i for i in current if i != identity]
            if updated != current:
                self.buffer_vars[buffer][name] = updated
            return updated
        raise FakeRemoteError("E5108: Error executing lua: unsupported chunk")

    def _eval(self, expr: str) -> Any:
        if expr in self.expressions:
            return self.expressions[expr]
        if expr == "getreg('+')":
            return self.registers.get("+", "")
        if expr == "getcwd(-1, -1)":
            return self.cwd
        if expr == "1+1":
            return 2
        if expr.startswith("'") and expr.endswith("'"):
            return expr[1:-1]
        raise FakeRemoteError(f"E121: Undefined variable: {expr}")

    def _command(self, channel: int, command: str) -> None:
        self.commands.append(command)
        if command.startswith("augroup"):
            return
        if command.startswith("autocmd!"):
            self._clear_autocmds(channel, command.split()[2:])
            return
        match = AUTOCMD_RE.match(command)
        if match:
            _, event, pattern, _ = match.groups()
            buffer = None
            if pattern.startswith("<buffer="):
                buffer = int(pattern[len("<buffer="):-1])
            self.autocmds.append((channel, event, buffer))
            return
        verb, _, name = command.partition(" ")
        if verb in OPEN_COMMANDS:
            existing = [n for n, b in self.buffers.items() if name and b["name"] == name]
            if existing:
                self.current_buffer = existing[0]
            else:
                number = max(self.buffers) + 1
                self.buffers[number] = {"name": name, "lines": [""]}
                self.current_buffer = number

    def _clear_autocmds(self, channel: int, words: list[str]) -> None:
        event = words[0]
        buffer = int(words[1][len("<buffer="):-1]) if len(words) > 1 else None
        self.autocmds = [
            a for a in self.autocmds
            if not (a[0] == channel and a[1] == event and (buffer is None or a[2] == buffer))
        ]

    def reject(self, method: str, message: str) -> None:
        """Answer every *method* request with an error."""

        def handler(channel: int, *args: Any) -> Any:
            raise FakeRemoteError(message)

        self.handlers[method] = handler

    def registered(self, buffer: int, channel: int) -> bool:
        return channel in self.buffer_vars.get(buffer, {}).get("nvr", [])

    async def notify(self, channel: int, method: str, *args: Any) -> None:
        transport = self._transports.get(channel)
        if transport is not None:
            await transport.send(Notification(method=method, args=list(args)))

    async def delete_buffer(self, buffer: int) -> None:
        """Delete *buffer*, firing BufDelete autocommands like the real server."""
        self.buffers.pop(buffer, None)
        self.buffer_vars.pop(buffer, None)
        for channel, event, target in list(self.autocmds):
            if event == "BufDelete" and target == buffer:
                await self.notify(channel, "BufDelete", buffer)
        self.autocmds = [a for a in self.autocmds if a[2] != buffer]

    async def quit(self, status: int = 0) -> None:
        """Fire VimLeave autocommands, then drop every connection."""
        for channel, event, _ in list(self.autocmds):
            if event == "VimLeave":
                await self.notify(channel, "Exit", status)
        await self.disconnect_all()


@pytest.fixture
def short_tmp() -> Path:
    """A short temporary directory; Unix socket paths are limited to ~100 bytes."""
    path = Path(tempfile.mkdtemp(prefix="nvr-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
async def nvim_server(short_tmp: Path) -> FakeNvimServer:
    server = FakeNvimServer(short_tmp / "nvim.sock")
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def transport_pair() -> tuple[Transport, Transport]:
    """Two connected transports: (client side, peer side)."""
    left, right = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    client = Transport(*await asyncio.open_unix_connection(sock=left))
    peer = Transport(*await asyncio.open_unix_connection(sock=right))
    yield client, peer
    await client.close()
    await peer.close()


@pytest.fixture
def threaded_server(short_tmp: Path) -> FakeNvimServer:
    """A fake server on its own event loop thread, for synchronous CLI tests."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, name="fake-nvim", daemon=True)
    thread.start()
    server = FakeNvimServer(short_tmp / "nvim.sock")
    asyncio.run_coroutine_threadsafe(server.start(), loop).result(timeout=5)
    yield server
    asyncio.run_coroutine_threadsafe(server.stop(), loop).result(timeout=5)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


@pytest.fixture(autouse=True)
def reset_logging():
    """Quiet logging per test; configure_logging binds the stderr of the moment."""
    configure_logging("WARNING")
    yield
    structlog.reset_defaults()
