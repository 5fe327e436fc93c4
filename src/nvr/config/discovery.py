"""Locate the server socket to connect to."""

from __future__ import annotations

import glob
import os
import socket
from pathlib import Path

import structlog

from nvr.errors import SocketNotFoundError

log = structlog.get_logger()

SOCKET_ENV_VARS = ("NVIM_LISTEN_ADDRESS", "NVIM")


def _candidate_globs() -> list[str]:
    patterns = ["/tmp/nvim*/0"]
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        patterns.append(os.path.join(runtime_dir, "nvim.*.0"))
    return patterns


def is_listening(path: str | Path) -> bool:
    """Return True if something accepts connections on the Unix socket *path*."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.settimeout(1.0)
        sock.connect(str(path))
    except OSError:
        return False
    finally:
        sock.close()
    return True


def discover_socket(servername: str | None = None) -> Path:
    """Pick the socket path.

    Order: explicit *servername*, ``$NVIM_LISTEN_ADDRESS``, ``$NVIM`` (set by
    Neovim for processes started in its terminal), then the first socket
    matching the default server locations that accepts a connection. An
    environment path that nothing listens on is skipped; an explicit
    *servername* is used as given.
    """
    if servername:
        return Path(servername)

    for var in SOCKET_ENV_VARS:
        value = os.environ.get(var)
        if not value:
            continue
        if is_listening(value):
            log.debug("socket from environment", var=var, socket=value)
            return Path(value)
        log.debug("nothing listening on socket from environment", var=var, socket=value)

    for pattern in _candidate_globs():
        for candidate in sorted(glob.glob(pattern)):
            if is_listening(candidate):
                log.debug("socket discovered", socket=candidate)
                return Path(candidate)

    raise SocketNotFoundError(
        "No running Neovim server found. Pass --servername or set NVIM_LISTEN_ADDRESS."
    )
