"""Configuration management for the Chimp conversation engine.

Loads settings from YAML config file with Pydantic validation.
Config file location: ~/.chimp/config.yaml
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field


# === Default paths ===

def get_chimp_home() -> Path:
    """Get the Chimp data directory (~/.chimp)."""
    return Path(os.environ.get("CHIMP_HOME", Path.home() / ".chimp"))


# === Configuration Models ===


class ConversationConfig(BaseModel):
    """Per-conversation length caps and context slicing."""

    max_length: int = Field(default=12, ge=2)  # Messages kept per conversation, system included
    optimize_threshold: int = Field(default=4, ge=1)  # Below this, records go to the model as-is
    max_tokens: int | None = None  # Optional heuristic token ceiling for a model call
    max_message_length: int = 2000  # Discord message limit


class PersistenceConfig(BaseModel):
    """Snapshot file and background save settings."""

    path: str | None = None  # Defaults to ~/.chimp/data/conversations.json
    save_interval_seconds: float = 300.0  # 0 disables the periodic save task
    max_age_days: float = 7.0
    max_file_size_mb: float = 10.0  # Above this, age pruning runs with half the max age
    version: str = "1.0"

    def get_path(self) -> Path:
        """Resolve the snapshot file path."""
        if self.path:
            return Path(self.path).expanduser()
        return get_chimp_home() / "data" / "conversations.json"


class ReferenceConfig(BaseModel):
    """Reply-chain context settings."""

    enabled: bool = True
    max_depth: int = Field(default=5, ge=1)
    max_context: int = Field(default=5, ge=1)  # Resolved messages injected per reply
    cache_size: int = Field(default=1000, ge=1)


class BlendedConfig(BaseModel):
    """Shared-channel conversation settings."""

    enabled: bool = False
    max_messages_per_user: int = Field(default=5, ge=1)
    context_window: int = Field(default=10, ge=1)  # Most recent channel messages sent to the model
    max_length: int = Field(default=50, ge=2)


class ResilienceConfig(BaseModel):
    """Policy handed to the retry / circuit-breaker collaborator."""

    max_retries: int = 3
    breaker_limit: int = 3
    breaker_timeout_ms: int = 120_000


class ChimpConfig(BaseModel):
    """Root configuration for the conversation engine."""

    bot_name: str = "ChimpGPT"
    bot_personality: str = "I am ChimpGPT, a helpful Discord bot."
    log_level: str = "info"  # debug | info | warning | error

    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    references: ReferenceConfig = Field(default_factory=ReferenceConfig)
    blended: BlendedConfig = Field(default_factory=BlendedConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)


# === Config Loading ===


def load_config(config_path: Path | None = None) -> ChimpConfig:
    """Load configuration from YAML file.

    Falls back to defaults if the config file doesn't exist.
    """
    if config_path is None:
        config_path = get_chimp_home() / "config.yaml"

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return ChimpConfig(**raw)
    return ChimpConfig()


def save_default_config(config_path: Path | None = None) -> Path:
    """Save the default configuration to a YAML file.

    Creates parent directories if needed. Returns the path.
    """
    if config_path is None:
        config_path = get_chimp_home() / "config.yaml"

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config = ChimpConfig()
    data = config.model_dump()

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    return config_path
