"""Configuration for the Pool Sync service.

Provides strongly-typed settings using Pydantic and a loader from environment
variables with defaults suitable for a BIG-IP style host.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

DEFAULT_POLL_INTERVAL_MS = 30000
MIN_POLL_INTERVAL_MS = 10000


class Settings(BaseModel):
    """Pydantic settings for the Pool Sync service."""
    tmsh_path: str = "/usr/bin/tmsh"
    command_timeout_s: float = Field(30.0, gt=0)
    registry_timeout_s: float = Field(5.0, gt=0)
    credential_dir: str = "/var/tmp/pool-sync"
    polling_signal_path: str = "/var/tmp/poolsyncOnPolling"
    stop_grace_s: float = Field(2.0, ge=0)
    audit_delay_s: float = Field(2.0, ge=0)
    # bounded retry for pool mutations; 0 keeps the best-effort single attempt
    apply_retries: int = Field(0, ge=0)
    retry_backoff_s: float = Field(0.5, ge=0)


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            tmsh_path=os.getenv("TMSH_PATH", "/usr/bin/tmsh"),
            command_timeout_s=float(os.getenv("COMMAND_TIMEOUT_S", "30.0")),
            registry_timeout_s=float(os.getenv("REGISTRY_TIMEOUT_S", "5.0")),
            credential_dir=os.getenv("CREDENTIAL_DIR", "/var/tmp/pool-sync"),
            polling_signal_path=os.getenv("POLLING_SIGNAL_PATH", "/var/tmp/poolsyncOnPolling"),
            stop_grace_s=float(os.getenv("STOP_GRACE_S", "2.0")),
            audit_delay_s=float(os.getenv("AUDIT_DELAY_S", "2.0")),
            apply_retries=int(os.getenv("APPLY_RETRIES", "0")),
            retry_backoff_s=float(os.getenv("RETRY_BACKOFF_S", "0.5")),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


def effective_interval_ms(poll_interval_s: Optional[float]) -> int:
    """Translate a poll interval in seconds to milliseconds.

    Unset (or zero) falls back to 30s; anything shorter than 10s is raised to
    10s. There is no upper bound.
    """
    if not poll_interval_s:
        return DEFAULT_POLL_INTERVAL_MS
    interval_ms = poll_interval_s * 1000
    if interval_ms < MIN_POLL_INTERVAL_MS:
        return MIN_POLL_INTERVAL_MS
    return int(interval_ms)


settings = load_settings()
