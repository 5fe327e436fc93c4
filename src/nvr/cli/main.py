import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from nvr import __version__
from nvr.config.discovery import discover_socket
from nvr.config.loader import ConfigError, ConfigLoader
from nvr.config.schema import ClientConfig
from nvr.errors import NvrError
from nvr.logging_config import configure_logging, get_logger
from nvr.remote.api import Nvim
from nvr.remote.operations import (
    OpenMode,
    Step,
    open_file,
    open_stdin,
    parse_neomux,
    remote_expr,
    run_commands,
    run_neomux,
)
from nvr.remote.wait import WaitCoordinator

console = Console(stderr=True)

STDIN_MARKER = "-"


@dataclass
class RemoteRequest:
    """Everything one invocation asks the server to do, in execution order."""

    exprs: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    neomux: list[Step] = field(default_factory=list)
    remote: list[str] = field(default_factory=list)
    remote_tab: list[str] = field(default_factory=list)
    remote_wait: list[str] = field(default_factory=list)
    stdin: str | None = None
    mode: OpenMode = OpenMode.EDIT

    @property
    def empty(self) -> bool:
        return not (
            self.exprs or self.commands or self.neomux or self.remote or self.remote_tab
            or self.remote_wait or self.stdin is not None
        )


def _run_async(coro):
    """Run an async function from sync Click commands."""
    return asyncio.run(coro)


async def execute(request: RemoteRequest, socket_path: Path, config: ClientConfig) -> int:
    """Carry out *request* against the server; returns the process exit status."""
    log = get_logger(str(socket_path))
    async with await Nvim.connect(socket_path, timeout=config.connect_timeout) as nvim:
        for expr in request.exprs:
            click.echo(await remote_expr(nvim, expr))

        await run_commands(nvim, request.commands)
        for line in await run_neomux(nvim, request.neomux):
            click.echo(line)

        for path in request.remote:
            await open_file(nvim, path, request.mode)
        for path in request.remote_tab:
            await open_file(nvim, path, OpenMode.TABEDIT)
        if request.stdin is not None:
            await open_stdin(nvim, request.stdin, request.mode)

        buffers = [await open_file(nvim, path, request.mode) for path in request.remote_wait]
        if not buffers:
            return 0

        log.info("waiting for buffers", buffers=buffers, timeout=config.wait_timeout)
        coordinator = WaitCoordinator(nvim, timeout=config.wait_timeout)
        results = await coordinator.wait_for_all(buffers)
        return max(result.exit_status for result in results)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="nvr")
@click.option("--servername", default=None, help="Server socket path (default: discovered)")
@click.option("--config", "config_path", default=None, type=click.Path(path_type=Path, dir_okay=False), help="Config file path")
@click.option("--remote", multiple=True, metavar="FILE", help="Open FILE in the current window ('-' reads stdin)")
@click.option("--remote-wait", multiple=True, metavar="FILE", help="Open FILE and block until its buffer is deleted")
@click.option("--remote-tab", multiple=True, metavar="FILE", help="Open FILE in a new tab")
@click.option("--remote-expr", "exprs", multiple=True, metavar="EXPR", help="Evaluate EXPR and print the result")
@click.option("-c", "-cc", "commands", multiple=True, metavar="CMD", help="Execute Ex command CMD")
@click.option("-o", "hsplit", is_flag=True, help="Open files in horizontal splits")
@click.option("-O", "vsplit", is_flag=True, help="Open files in vertical splits")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for --remote-wait buffers")
@click.option("--log-level", default=None, help="Log level (default: from config, WARNING)")
@click.argument("words", nargs=-1)
def cli(
    servername: str | None,
    config_path: Path | None,
    remote: tuple[str, ...],
    remote_wait: tuple[str, ...],
    remote_tab: tuple[str, ...],
    exprs: tuple[str, ...],
    commands: tuple[str, ...],
    hsplit: bool,
    vsplit: bool,
    timeout: float | None,
    log_level: str | None,
    words: tuple[str, ...],
) -> None:
    """nvr: remote control a running Neovim server.

    WORDS are neomux commands: vim-window-print N, vimwindow N FILE,
    vimwindowsplit N FILE, vbpaste, vbcopy TEXT..., vpwd and vcd DIR.
    """
    try:
        neomux = parse_neomux(words)
    except ValueError as e:
        raise click.UsageError(str(e))
    request = RemoteRequest(
        exprs=list(exprs),
        commands=list(commands),
        neomux=neomux,
        remote=[path for path in remote if path != STDIN_MARKER],
        remote_tab=list(remote_tab),
        remote_wait=list(remote_wait),
        mode=OpenMode.VSPLIT if vsplit else OpenMode.SPLIT if hsplit else OpenMode.EDIT,
    )
    if STDIN_MARKER in remote:
        stdin = click.get_text_stream("stdin")
        if stdin.isatty():
            raise click.UsageError("--remote - expects input on stdin")
        request.stdin = stdin.read()

    if request.empty:
        raise click.UsageError("Nothing to do. Pass --remote, --remote-expr, -c or another action.")

    try:
        config = ConfigLoader(config_path).load()
        overrides = {}
        if servername:
            overrides["servername"] = servername
        if timeout is not None:
            overrides["wait_timeout"] = timeout
        if log_level:
            overrides["log_level"] = log_level
        if overrides:
            config = ClientConfig.model_validate({**config.model_dump(), **overrides})
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(e.exit_code)
    except ValueError as e:
        raise click.BadParameter(str(e))

    configure_logging(config.log_level)

    try:
        socket_path = discover_socket(config.servername)
        status = _run_async(execute(request, socket_path, config))
    except NvrError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {escape(str(e))}")
        raise SystemExit(e.exit_code)

    raise SystemExit(status)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
