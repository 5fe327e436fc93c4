"""SharedResourceRegistry: the list of waiting clients stored on a buffer.

The list lives in the server as the buffer variable ``b:nvr`` and is shared
by every client process attached to that server. Each mutation is a single
``nvim_exec_lua`` request; the server runs requests one at a time, so two
clients updating the same buffer cannot lose each other's entry.
"""

from __future__ import annotations

import structlog

from nvr.errors import RemoteError
from nvr.remote.api import Buffer, Nvim

log = structlog.get_logger()

REGISTRY_VAR = "nvr"

# args: buffer, variable name, identity. Returns the list after the update.
REGISTER_LUA = """\
local buf, name, id = ...
local ok, current = pcall(vim.api.nvim_buf_get_var, buf, name)
if not ok or type(current) ~= 'table' then current = {} end
for _, v in ipairs(current) do
  if v == id then return current end
end
table.insert(current, 1, id)
vim.api.nvim_buf_set_var(buf, name, current)
return current
"""

UNREGISTER_LUA = """\
local buf, name, id = ...
if not vim.api.nvim_buf_is_valid(buf) then return {} end
local ok, current = pcall(vim.api.nvim_buf_get_var, buf, name)
if not ok or type(current) ~= 'table' then return {} end
local updated = {}
for _, v in ipairs(current) do
  if v ~= id then table.insert(updated, v) end
end
if #updated ~= #current then vim.api.nvim_buf_set_var(buf, name, updated) end
return updated
"""


def _is_missing(error: RemoteError) -> bool:
    return "Key not found" in error.message


def _as_identities(value: object, buffer: Buffer) -> list[int]:
    if not isinstance(value, list):
        log.warning(
            "registry variable has unexpected type",
            buffer=int(buffer),
            value=repr(value)[:80],
        )
        return []
    return value


class SharedResourceRegistry:
    """Access to the per-buffer identity list."""

    def __init__(self, nvim: Nvim, var_name: str = REGISTRY_VAR) -> None:
        self._nvim = nvim
        self.var_name = var_name

    async def read(self, buffer: Buffer) -> list[int]:
        """Return the identities registered on *buffer*, most recent first."""
        try:
            value = await self._nvim.buf_get_var(buffer, self.var_name)
        except RemoteError as e:
            if _is_missing(e):
                return []
            raise
        return _as_identities(value, buffer)

    async def register(self, buffer: Buffer, identity: int) -> list[int]:
        """Prepend *identity* unless it is already present.

        Returns the entry as it stands after the call.
        """
        entry = await self._nvim.exec_lua(REGISTER_LUA, [buffer, self.var_name, identity])
        log.debug("registered on buffer", buffer=int(buffer), identity=identity, entry=entry)
        return _as_identities(entry, buffer)

    async def unregister(self, buffer: Buffer, identity: int) -> list[int]:
        """Remove *identity*; a buffer that no longer exists is left alone."""
        entry = await self._nvim.exec_lua(UNREGISTER_LUA, [buffer, self.var_name, identity])
        log.debug("unregistered from buffer", buffer=int(buffer), identity=identity)
        return _as_identities(entry, buffer)
