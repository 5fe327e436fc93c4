"""High-level remote operations: open files, feed stdin, run commands, evaluate.

Also the neomux shorthands (``vimwindow 2 FILE``, ``vbcopy TEXT`` and so on),
which parse into :class:`Step` lists run by :func:`run_neomux`.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from nvr.models.message import RemoteHandle
from nvr.remote.api import Nvim

log = structlog.get_logger()


class OpenMode(StrEnum):
    EDIT = "edit"
    SPLIT = "split"
    VSPLIT = "vsplit"
    TABEDIT = "tabedit"


# Commands that open a new, empty buffer in the same kind of window.
_SCRATCH_COMMANDS = {
    OpenMode.EDIT: "enew",
    OpenMode.SPLIT: "new",
    OpenMode.VSPLIT: "vnew",
    OpenMode.TABEDIT: "tabnew",
}


async def _current_buffer_number(nvim: Nvim) -> int:
    buffer = await nvim.current_buffer()
    if isinstance(buffer, RemoteHandle):
        return buffer.handle
    return int(buffer)


async def open_file(nvim: Nvim, path: str, mode: OpenMode = OpenMode.EDIT) -> int:
    """Open *path* in the server and return its buffer number."""
    escaped = await nvim.call_function("fnameescape", [path])
    await nvim.command(f"{mode.value} {escaped}")
    if mode in (OpenMode.SPLIT, OpenMode.VSPLIT):
        await nvim.command("wincmd =")
    buffer = await _current_buffer_number(nvim)
    log.debug("opened file", path=path, mode=mode.value, buffer=buffer)
    return buffer


async def open_stdin(nvim: Nvim, content: str, mode: OpenMode = OpenMode.EDIT) -> int:
    """Open a scratch buffer filled with *content* and return its number."""
    await nvim.command(_SCRATCH_COMMANDS[mode])
    lines = content.split("\n")
    if len(lines) > 1 and lines[-1] == "":
        lines.pop()
    buffer = await _current_buffer_number(nvim)
    await nvim.buf_set_lines(buffer, 0, -1, lines)
    log.debug("opened stdin buffer", buffer=buffer, lines=len(lines))
    return buffer


async def run_commands(nvim: Nvim, commands: list[str]) -> None:
    """Run Ex commands in order, stopping at the first failure."""
    for command in commands:
        await nvim.command(command)


def format_result(value: Any) -> str:
    """Render an evaluation result the way it is printed on stdout."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, RemoteHandle):
        return str(value.handle)
    if isinstance(value, list):
        return "\n".join(format_result(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return str(value)


async def remote_expr(nvim: Nvim, expr: str) -> str:
    """Evaluate *expr* in the server and format the result."""
    return format_result(await nvim.eval(expr))


class StepKind(StrEnum):
    COMMAND = "command"
    EXPR = "expr"
    CALL = "call"
    OPEN = "open"


@dataclass(frozen=True)
class Step:
    """One server action a neomux command expands to.

    *target* is the Ex command, the expression, the function name or the file
    path, depending on *kind*.
    """

    kind: StepKind
    target: str
    args: tuple[str, ...] = ()
    mode: OpenMode = OpenMode.EDIT


NEOMUX_COMMANDS = (
    "vim-window-print",
    "vimwindow",
    "vimwindowsplit",
    "vbpaste",
    "vbcopy",
    "vpwd",
    "vcd",
)


def _take(command: str, words: list[str], what: str) -> str:
    if not words:
        raise ValueError(f"{command} requires {what}")
    return words.pop(0)


def _window_number(command: str, words: list[str]) -> int:
    value = _take(command, words, "a window number")
    try:
        number = int(value)
    except ValueError:
        raise ValueError(f"{command}: invalid window number {value!r}") from None
    if number < 1:
        raise ValueError(f"{command}: invalid window number {value!r}")
    return number


def parse_neomux(words: Sequence[str]) -> list[Step]:
    """Expand neomux command words into steps.

    Several commands may follow each other; ``vbcopy`` takes every word after
    it as the text to copy.

    Raises:
        ValueError: an unknown command, or a missing or invalid argument.
    """
    rest = list(words)
    steps: list[Step] = []
    while rest:
        command = rest.pop(0)
        if command == "vim-window-print":
            number = _window_number(command, rest)
            steps.append(Step(StepKind.EXPR, f"fnamemodify(bufname(winbufnr({number})), ':p')"))
        elif command in ("vimwindow", "vimwindowsplit"):
            number = _window_number(command, rest)
            path = _take(command, rest, "a file")
            mode = OpenMode.SPLIT if command == "vimwindowsplit" else OpenMode.EDIT
            steps.append(Step(StepKind.COMMAND, f"{number}wincmd w"))
            steps.append(Step(StepKind.OPEN, path, mode=mode))
        elif command == "vbpaste":
            steps.append(Step(StepKind.EXPR, "getreg('+')"))
        elif command == "vbcopy":
            if not rest:
                raise ValueError("vbcopy requires text to copy")
            steps.append(Step(StepKind.CALL, "setreg", ("+", " ".join(rest))))
            rest = []
        elif command == "vpwd":
            steps.append(Step(StepKind.EXPR, "getcwd(-1, -1)"))
        elif command == "vcd":
            steps.append(Step(StepKind.CALL, "chdir", (_take(command, rest, "a directory"),)))
        else:
            raise ValueError(
                f"Unknown command {command!r}; expected one of {', '.join(NEOMUX_COMMANDS)}"
            )
    return steps


async def run_neomux(nvim: Nvim, steps: list[Step]) -> list[str]:
    """Run *steps* in order and return the formatted result of each expression."""
    output = []
    for step in steps:
        if step.kind == StepKind.COMMAND:
            await nvim.command(step.target)
        elif step.kind == StepKind.EXPR:
            output.append(await remote_expr(nvim, step.target))
        elif step.kind == StepKind.CALL:
            await nvim.call_function(step.target, list(step.args))
        else:
            await open_file(nvim, step.target, step.mode)
    log.debug("ran neomux steps", steps=len(steps), outputs=len(output))
    return output
