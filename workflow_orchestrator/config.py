"""Configuration for the orchestrator process."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class OrchestratorSettings:
    """Immutable settings loaded from environment variables."""

    session_db_path: str = ""
    batch_size: int = 10
    save_interval: float = 30.0
    validation_max_attempts: int = 3
    confidence_threshold: float = 0.6
    session_ttl_hours: float = 24.0
    postgres_dsn: str = field(default="", repr=False)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> OrchestratorSettings:
        return cls(
            session_db_path=os.getenv("SESSION_DB_PATH", ""),
            batch_size=int(os.getenv("SESSION_BATCH_SIZE", "10")),
            save_interval=float(os.getenv("SESSION_SAVE_INTERVAL", "30")),
            validation_max_attempts=int(os.getenv("VALIDATION_MAX_ATTEMPTS", "3")),
            confidence_threshold=float(os.getenv("CLARIFICATION_CONFIDENCE_THRESHOLD", "0.6")),
            session_ttl_hours=float(os.getenv("SESSION_TTL_HOURS", "24")),
            postgres_dsn=os.getenv("POSTGRES_DSN", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def uses_sqlite(self) -> bool:
        return bool(self.session_db_path)
