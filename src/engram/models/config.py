"""Configuration models for the Engram worker and its components."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

ProviderName = Literal["auto", "claude", "gemini", "openrouter", "codex"]


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.engram/engram.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class QueueConfig(BaseModel):
    """Configuration for the durable per-session message queue."""

    max_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description=(
            "Delivery attempts after which a message is marked failed and the "
            "owning processor moves on to the rest of the queue."
        ),
    )

    poll_interval_s: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Upper bound on how long a suspended consumer waits before re-checking its queue.",
    )

    idle_timeout_s: float = Field(
        default=180.0,
        gt=0.0,
        description=(
            "Seconds an empty queue may stay idle before the consumer returns normally. "
            "A later enqueue starts a fresh consumer."
        ),
    )

    restart_backoff_s: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Delay before a self-restart when the failed run held no message to charge.",
    )


class RecoveryConfig(BaseModel):
    """Configuration for the startup and periodic recovery passes."""

    interval_s: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds between periodic recovery passes.",
    )

    stale_session_ms: int = Field(
        default=6 * 60 * 60 * 1000,
        ge=60_000,
        description="Active sessions started longer ago than this are marked failed.",
    )

    stale_processing_ms: int = Field(
        default=10 * 60 * 1000,
        ge=1_000,
        description=(
            "Periodic passes demote 'processing' rows older than this back to 'pending' "
            "for sessions with no live context."
        ),
    )

    auto_recover_limit: int = Field(
        default=50,
        ge=1,
        le=1_000,
        description="Maximum processors started by one auto-recovery pass.",
    )

    start_delay_s: float = Field(
        default=0.1,
        ge=0.0,
        le=10.0,
        description="Pause between processor starts in one recovery pass.",
    )

    reap_grace_s: float = Field(
        default=5.0,
        ge=0.0,
        description="Seconds an orphaned helper gets after SIGTERM before it is killed.",
    )


class ProviderConfig(BaseModel):
    """Extraction provider selection and per-provider settings."""

    provider: ProviderName = "auto"
    """Which agent to use first. ``auto`` prefers OpenRouter, then Gemini, then Claude."""

    claude_model: str = "claude-sonnet-4-5"
    claude_path: str | None = Field(
        default=None,
        description="Explicit path to the claude executable. None = search PATH.",
    )

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash-lite"

    openrouter_api_key: str | None = None
    openrouter_model: str = "xiaomi/mimo-v2-flash:free"

    codex_path: str | None = Field(
        default=None,
        description="Explicit path to the codex executable. None = search PATH.",
    )

    max_context_messages: int = Field(
        default=20,
        ge=1,
        le=1_000,
        description="Conversation messages kept when calling bounded-context providers.",
    )

    max_estimated_tokens: int = Field(
        default=100_000,
        ge=1_000,
        description="Estimated tokens kept when calling bounded-context providers.",
    )

    call_timeout_s: float = Field(
        default=300.0,
        gt=0.0,
        description="Per-call timeout for a single extraction request.",
    )

    observer_dir: str = Field(
        default="~/.engram/observer-sessions",
        description="Working directory handed to CLI helpers so they never touch the user's repo.",
    )


class WorkerConfig(BaseModel):
    """Process-level lifecycle settings."""

    shutdown_timeout_s: float = Field(
        default=30.0,
        ge=0.0,
        description="How long stop() waits for in-flight work to drain before cancelling.",
    )

    cancel_grace_s: float = Field(
        default=5.0,
        ge=0.0,
        description="How long stop() waits for cancelled consumers before abandoning them.",
    )


class EngramConfig(BaseModel):
    """
    Top-level configuration for an Engram worker.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = EngramConfig(
            store=StoreConfig(db_path="/tmp/engram.db"),
            providers=ProviderConfig(provider="gemini", gemini_api_key="..."),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    @model_validator(mode="after")
    def validate_stale_thresholds(self) -> EngramConfig:
        if self.recovery.stale_processing_ms >= self.recovery.stale_session_ms:
            raise ValueError("stale_processing_ms must be strictly less than stale_session_ms")
        return self

    @classmethod
    def default(cls) -> EngramConfig:
        """Return a config instance with all defaults."""
        return cls()

    @classmethod
    def load(cls, path: str | Path | None = None) -> EngramConfig:
        """
        Build a config from an optional JSON settings file plus environment overrides.

        The settings file mirrors the model layout (``{"store": {...}, ...}``).
        A missing file is not an error. Recognised environment variables:

        - ``ENGRAM_DATA_DIR``: directory holding ``engram.db``
        - ``ENGRAM_DB_PATH``: explicit database path (wins over the data dir)
        - ``ENGRAM_PROVIDER``: provider name
        - ``ENGRAM_GEMINI_API_KEY`` / ``GEMINI_API_KEY``
        - ``ENGRAM_OPENROUTER_API_KEY`` / ``OPENROUTER_API_KEY``
        - ``ENGRAM_CLAUDE_PATH`` / ``CLAUDE_CODE_PATH``
        - ``ENGRAM_CODEX_PATH``

        Raises:
            pydantic.ValidationError: If the merged settings are invalid.
            json.JSONDecodeError: If the settings file is not valid JSON.
        """
        data: dict[str, Any] = {}
        if path is not None:
            settings_path = Path(path).expanduser()
            if settings_path.exists():
                data = json.loads(settings_path.read_text())

        store = dict(data.get("store") or {})
        providers = dict(data.get("providers") or {})

        data_dir = os.environ.get("ENGRAM_DATA_DIR")
        if data_dir:
            store["db_path"] = str(Path(data_dir) / "engram.db")
            providers.setdefault("observer_dir", str(Path(data_dir) / "observer-sessions"))
        if os.environ.get("ENGRAM_DB_PATH"):
            store["db_path"] = os.environ["ENGRAM_DB_PATH"]

        env_map = {
            "provider": ("ENGRAM_PROVIDER",),
            "gemini_api_key": ("ENGRAM_GEMINI_API_KEY", "GEMINI_API_KEY"),
            "openrouter_api_key": ("ENGRAM_OPENROUTER_API_KEY", "OPENROUTER_API_KEY"),
            "claude_path": ("ENGRAM_CLAUDE_PATH", "CLAUDE_CODE_PATH"),
            "codex_path": ("ENGRAM_CODEX_PATH",),
        }
        for field_name, env_names in env_map.items():
            for env_name in env_names:
                value = os.environ.get(env_name)
                if value:
                    providers[field_name] = value
                    break

        data["store"] = store
        data["providers"] = providers
        return cls.model_validate(data)
