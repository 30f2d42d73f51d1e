"""
Session configuration.

Defaults can be overridden through ``WASESSION_*`` environment variables,
optionally loaded from a ``.env`` file in the project directory.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from wasession.models import ClientIdentity

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent

ENV_PREFIX = "WASESSION_"
DEFAULT_SESSION_ID = "default"
DEFAULT_BRIDGE_URL = "ws://localhost:3000/ws"


class SessionConfig(BaseModel):
    """Settings for one ConnectionManager."""

    session_id: str = DEFAULT_SESSION_ID
    auth_dir: Path = Field(default_factory=lambda: PROJECT_DIR / "auth_data")
    connect_timeout_ms: int = 30_000
    query_timeout_ms: int = 60_000
    keep_alive_interval_ms: int = 10_000
    base_reconnect_delay: float = 5.0  # seconds, multiplied by the attempt number
    max_reconnect_attempts: int = 5
    client_identity: ClientIdentity = Field(default_factory=ClientIdentity)
    bridge_url: str = DEFAULT_BRIDGE_URL

    @field_validator("max_reconnect_attempts")
    @classmethod
    def _positive_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        return value

    @field_validator("base_reconnect_delay")
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("base_reconnect_delay cannot be negative")
        return value

    @field_validator("connect_timeout_ms", "query_timeout_ms", "keep_alive_interval_ms")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None, **overrides) -> "SessionConfig":
        """Build a config from the environment, letting explicit overrides win."""
        load_dotenv(env_file or PROJECT_DIR / ".env")

        values = {}
        for field_name in cls.model_fields:
            if field_name == "client_identity":
                continue
            raw = os.getenv(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is not None:
                values[field_name] = raw

        identity = {
            key: os.getenv(f"{ENV_PREFIX}CLIENT_{key.upper()}")
            for key in ("platform", "browser", "version")
        }
        identity = {k: v for k, v in identity.items() if v}
        if identity:
            values["client_identity"] = ClientIdentity(**identity)

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
