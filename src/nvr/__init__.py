"""Remote control a running Neovim server over msgpack-RPC."""

__version__ = "0.1.0"
