"""
Configuration loader for REWIND.
Merges defaults with per-repo .rewind/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ModelConfig(BaseModel):
    name: str = "anthropic/claude-3-5-sonnet-latest"
    temperature: float = 0.2
    max_tokens: int = 4096
    max_attempts: int = 3
    backoff_min: float = 1.0
    backoff_max: float = 10.0


class PermissionConfig(BaseModel):
    danger_mode: bool = False
    fast_edit_mode: bool = False
    fast_mode_category: str = "file_operation"
    always_ask: list[str] = Field(default_factory=list)


class CheckpointConfig(BaseModel):
    enabled: bool = True
    shadow_dir: str = ".rewind/shadow"
    exclude: list[str] = Field(default_factory=list)


class EnvironmentConfig(BaseModel):
    command_timeout: float = 120.0
    max_read_size: int = 1_048_576


class EventsConfig(BaseModel):
    channel_size: int = 256
    audit_log: str = ".rewind/logs/events.jsonl"


class RewindConfig(BaseModel):
    model: ModelConfig = Field(default_factory=ModelConfig)
    permissions: PermissionConfig = Field(default_factory=PermissionConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    runtime_env: str = "development"

    @property
    def transcript_validation(self) -> bool:
        """Invariant checks run everywhere except production."""
        return self.runtime_env != "production"


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_TRUTHY = {"1", "true", "yes", "on"}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    env = os.environ

    if env.get("REWIND_MODEL"):
        overrides.setdefault("model", {})["name"] = env["REWIND_MODEL"]
    if env.get("REWIND_DANGER_MODE"):
        overrides.setdefault("permissions", {})["danger_mode"] = (
            env["REWIND_DANGER_MODE"].lower() in _TRUTHY
        )
    if env.get("REWIND_FAST_EDIT"):
        overrides.setdefault("permissions", {})["fast_edit_mode"] = (
            env["REWIND_FAST_EDIT"].lower() in _TRUTHY
        )
    if env.get("REWIND_ENV"):
        overrides["runtime_env"] = env["REWIND_ENV"]
    return overrides


def load_config(repo_path: Path | None = None) -> RewindConfig:
    """
    Load config by merging:
      1. Built-in defaults (rewind/config.yaml)
      2. Repo-level overrides (<repo>/.rewind/config.yaml)
      3. Environment variable overrides (REWIND_*)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".rewind" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    base = _deep_merge(base, _env_overrides())
    return RewindConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
