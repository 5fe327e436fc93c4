from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from nvr.config.schema import ClientConfig
from nvr.errors import NvrError


class ConfigError(NvrError):
    """Raised when config loading or validation fails."""

    exit_code = 7

    def __init__(self, path: Path, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


def default_config_path() -> Path:
    """``$XDG_CONFIG_HOME/nvr/config.yaml``, falling back to ``~/.config``."""
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "nvr" / "config.yaml"


class ConfigLoader:
    """Reads the client's YAML config file and validates it."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_config_path()

    def load(self) -> ClientConfig:
        """Load the config file. Returns defaults if it does not exist."""
        if not self.path.exists():
            return ClientConfig()

        try:
            raw = yaml.safe_load(self.path.read_text())
        except yaml.YAMLError as e:
            raise ConfigError(self.path, f"Invalid YAML: {e}") from e

        if raw is None:
            return ClientConfig()
        if not isinstance(raw, dict):
            raise ConfigError(self.path, "Expected a YAML mapping at top level")

        try:
            return ClientConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(self.path, f"Validation error: {e}") from e
