"""Configuration for the capability registry (MCP) client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RegistrySettings:
    """Immutable settings loaded from environment variables."""

    server_url: str = ""
    auth_token: str = field(default="", repr=False)
    connect_timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0

    @classmethod
    def from_env(cls) -> RegistrySettings:
        return cls(
            server_url=os.getenv("MCP_SERVER_URL", "").rstrip("/"),
            auth_token=os.getenv("MCP_AUTH_TOKEN", ""),
            connect_timeout=float(os.getenv("MCP_CONNECT_TIMEOUT", "30")),
            max_retries=int(os.getenv("MCP_MAX_RETRIES", "3")),
            retry_delay=float(os.getenv("MCP_RETRY_DELAY", "1.0")),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.server_url and self.auth_token)

    @property
    def headers(self) -> dict[str, str]:
        h: dict[str, str] = {}
        if self.auth_token:
            h["Authorization"] = f"Bearer {self.auth_token}"
        return h
