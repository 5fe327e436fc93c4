from __future__ import annotations

import logging

from pydantic import BaseModel, field_validator

from nvr.remote.wait import DEFAULT_WAIT_TIMEOUT


class ClientConfig(BaseModel):
    """Client settings loaded from config.yaml. All optional."""

    servername: str | None = None
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT
    connect_timeout: float = 5.0
    log_level: str = "WARNING"

    @field_validator("wait_timeout", "connect_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level '{v}'")
        return level
