"""Application configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (CODERIDE_* prefix)
    - Default values

Key components:
    - AppConfig: Main configuration model
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal
from unittest.mock import patch

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from coderide.core.result import ConfigurationError, Err, Ok
from coderide.core.security import SandboxMode, validate_workspace_root
from coderide.swarm.types import AgentRole

CONFIG_ENV_VAR = "CODERIDE_CONFIG"

MIN_PARTITIONS = 2
MAX_PARTITIONS = 12
MIN_REVIEW_ROUNDS = 1
MAX_REVIEW_ROUNDS = 10


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class SwarmConfig(BaseModel):
    """Agent swarm behaviour."""

    enabled_roles: list[AgentRole] = Field(
        default_factory=lambda: list(AgentRole),
        description="Roles the planner may assign work to.",
    )
    auto_post_code_pipeline: bool = Field(
        default=True,
        description="Append reviewer and test writer tasks after any coder task.",
    )
    max_post_code_retries: int = Field(
        default=10, ge=0, description="Debugger retries after a failing test run."
    )
    max_review_loops: int = Field(
        default=0, ge=0, description="Reviewer/coder fix loops after the main run."
    )

    @field_validator("enabled_roles", mode="after")
    @classmethod
    def ensure_roles(cls, v: list[AgentRole]) -> list[AgentRole]:
        if not v:
            raise ValueError("at least one role must be enabled")
        return list(dict.fromkeys(v))


class ReviewConfig(BaseModel):
    """Multi-swarm review pipeline behaviour."""

    partition_count: int = Field(default=3, description="Parallel analysis workers (2-12).")
    yolo: bool = Field(default=False, description="Run the fix phase without confirmation.")
    phases: Literal["analysis-only", "analysis-and-execution"] = "analysis-and-execution"
    max_review_rounds: int = Field(default=3, description="Analysis/fix rounds (1-10).")
    strategy: Literal["directory", "balanced"] = "directory"
    continuation_phrases: list[str] = Field(
        default_factory=lambda: ["proceed", "apply", "yes"],
        description="Request phrases that confirm the fix phase.",
    )
    scope_phrases: list[str] = Field(
        default_factory=lambda: ["uncommitted", "changed", "staged"],
        description="Request phrases that limit review to uncommitted files.",
    )
    finding_keywords: list[str] = Field(
        default_factory=lambda: ["bug", "error", "high priority", "security"],
        description="Keywords that mark an analysis report as significant.",
    )
    min_report_chars: int = Field(
        default=80, ge=0, description="Reports shorter than this are never significant."
    )
    max_preloaded_files: int = Field(
        default=50, ge=0, description="Files attached to a partition-scoped context."
    )

    @field_validator("partition_count", mode="after")
    @classmethod
    def clamp_partitions(cls, v: int) -> int:
        return _clamp(v, MIN_PARTITIONS, MAX_PARTITIONS)

    @field_validator("max_review_rounds", mode="after")
    @classmethod
    def clamp_rounds(cls, v: int) -> int:
        return _clamp(v, MIN_REVIEW_ROUNDS, MAX_REVIEW_ROUNDS)


class ToolConfig(BaseModel):
    """Marker-driven tool execution."""

    enabled: bool = Field(default=True, description="Wrap providers with the tool runtime.")
    sandbox_mode: SandboxMode = SandboxMode.WORKSPACE_WRITE
    timeout_ms: int = Field(default=60_000, ge=1, description="Shell tool timeout.")
    max_tool_rounds: int = Field(default=20, ge=1, description="Follow-up rounds per request.")


class ProviderConfig(BaseModel):
    """External CLI used as the LLM backend."""

    command: str = Field(default="codex", description="Executable name or path.")
    args: list[str] = Field(
        default_factory=lambda: ["exec"],
        description="Arguments placed before the prompt.",
    )
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment.")


class UserConfig(BaseModel):
    """Workspace and output preferences."""

    workspace_root: Path = Field(default_factory=Path.cwd)
    excluded_paths: list[str] = Field(
        default_factory=list,
        description="Workspace-relative paths skipped by scans.",
    )
    log_level: str = Field(default="INFO", description="Log level for coderide output.")


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


class AppConfig(BaseSettings):
    """Application-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="CODERIDE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    swarm: SwarmConfig = Field(default_factory=SwarmConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    tools: ToolConfig = Field(default_factory=ToolConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    user: UserConfig = Field(default_factory=UserConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
    ]:
        # Environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


_NESTED_MODELS: dict[str, type[BaseModel]] = {
    "swarm": SwarmConfig,
    "review": ReviewConfig,
    "tools": ToolConfig,
    "provider": ProviderConfig,
    "user": UserConfig,
}


def _resolve_config_path(config_path: Path | None, env_vars: Mapping[str, str]) -> Path:
    candidate = config_path or env_vars.get(CONFIG_ENV_VAR) or (Path.home() / ".coderide.toml")
    return Path(candidate).expanduser()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    raw = path.read_text(encoding="utf-8")
    parser = json.loads if path.suffix.lower() == ".json" else tomllib.loads

    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root in {path} must be a mapping.")

    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which nested fields are set through CODERIDE_<GROUP>__<FIELD> variables."""
    prefix = AppConfig.model_config.get("env_prefix", "")
    delimiter = AppConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    for group_name, model_cls in _NESTED_MODELS.items():
        for field in model_cls.model_fields:
            env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
            if env_key in env_vars:
                overrides.add(f"{group_name}.{field}")

    return overrides


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[AppConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    env_vars: Mapping[str, str] = os.environ if env is None else {**os.environ, **env}
    resolved_path = _resolve_config_path(config_path, env_vars)
    env_overrides = _detect_env_overrides(env_vars)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigurationError as exc:
        error = str(exc)

    context_manager = (
        patch.dict(os.environ, env_vars, clear=False) if env is not None else nullcontext()
    )

    try:
        with context_manager:
            config = AppConfig(**file_data)
    except ValidationError as exc:
        error = str(exc)
        config = AppConfig()

    match validate_workspace_root(config.user.workspace_root):
        case Ok(resolved_root):
            updated_user = config.user.model_copy(update={"workspace_root": resolved_root})
            config = config.model_copy(update={"user": updated_user})
        case Err(err):
            error = f"{error}; {err}" if error else str(err)

    load_result = ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )

    return config, load_result


__all__ = [
    "CONFIG_ENV_VAR",
    "AppConfig",
    "ConfigLoadResult",
    "ProviderConfig",
    "ReviewConfig",
    "SwarmConfig",
    "ToolConfig",
    "UserConfig",
    "load_config",
]
