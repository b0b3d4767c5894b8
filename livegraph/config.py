"""
Configuration for livegraph.

Uses pydantic-settings for environment variable loading. Every setting can
be overridden with a LIVEGRAPH_ prefixed variable, e.g.:

    LIVEGRAPH_CONFLICT_POLICY=reject_on_conflict
    LIVEGRAPH_CACHE_PATH=/var/lib/app/livegraph.db
    LIVEGRAPH_LOG_FORMAT=json
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .txn.layer import ConflictPolicy


class StoreSettings(BaseSettings):
    """Store configuration loaded from environment."""

    # Reconciliation
    conflict_policy: ConflictPolicy = Field(
        default=ConflictPolicy.LAST_WRITER_WINS,
        description="How remote deltas interact with pending local writes",
    )

    # Local cache
    cache_path: Optional[str] = Field(default=None, description="SQLite cache file (None disables it)")
    cache_wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")
    cache_busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy timeout")

    # Sync
    reconnect_initial_delay: float = Field(default=0.5, gt=0, description="First reconnect delay seconds")
    reconnect_max_delay: float = Field(default=30.0, gt=0, description="Maximum reconnect delay seconds")
    pending_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Age after which a pending transaction is reported as slow (never expired)",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="text", description="'json' or 'text'")

    model_config = {"env_prefix": "LIVEGRAPH_"}

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    @field_validator("reconnect_max_delay")
    @classmethod
    def _check_max_delay(cls, value: float, info) -> float:
        initial = info.data.get("reconnect_initial_delay")
        if initial is not None and value < initial:
            raise ValueError("reconnect_max_delay must not be below reconnect_initial_delay")
        return value
