"""Configuration loader for the autodev core.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from autodev.core.exceptions import ConfigError

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> float:
    """Parse a duration given as seconds or as "30s", "15m", "1h", "2d"."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value).lower())
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds < 0:
        raise ValueError(f"Duration must be non-negative: {value!r}")
    return seconds


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class AgentSettings(BaseModel):
    name: str = "autodev"
    max_concurrent_tasks: int = Field(default=4, ge=1)
    module_timeout_seconds: float = Field(default=120.0, gt=0)
    poll_interval_seconds: float = Field(default=0.2, gt=0)
    error_grace_seconds: float = Field(default=30.0, ge=0)


class SelfImprovementConfig(BaseModel):
    enabled: bool = True
    auto_apply: bool = False
    improvement_interval: float = 3600.0  # seconds; 0 disables the timer
    max_modifications_per_session: int = 10
    approval_timeout_seconds: float = Field(default=300.0, gt=0)
    risk_approval_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    min_success_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    max_acceptable_latency_seconds: float = Field(default=5.0, gt=0)
    timeout_pattern_threshold: int = Field(default=2, ge=1)
    metrics_history_size: int = Field(default=100, ge=2)

    @field_validator("improvement_interval", mode="before")
    @classmethod
    def _parse_interval(cls, value: Any) -> float:
        return parse_duration(value)


class SafetyConfig(BaseModel):
    protected_paths: list[str] = Field(
        default_factory=lambda: [
            ".agent/core/**",
            ".agent/safety/**",
            ".agent/auth/**",
            ".agent/config/schema*",
        ]
    )
    forbidden_commands: list[str] = Field(
        default_factory=lambda: ["rm -rf /", "dd if=/dev/zero", "mkfs", "shutdown"]
    )
    max_file_size_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    max_actions_per_hour: int = Field(default=200, gt=0)
    max_concurrent_modifications: int = Field(default=1, ge=1)


class CheckpointConfig(BaseModel):
    storage_dir: Optional[str] = ".agent/checkpoints"
    max_checkpoints: int = Field(default=20, ge=1)
    max_age_hours: Optional[float] = None


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    max_delay_seconds: float = Field(default=10.0, ge=0)


class LLMConfig(BaseModel):
    provider: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "anthropic/claude-sonnet-4"
    default_temperature: float = 0.2
    default_max_tokens: int = 4096
    timeout_seconds: int = 120


class SelfTestConfig(BaseModel):
    command: list[str] = Field(default_factory=lambda: ["python", "-m", "pytest", "-q", "-x"])
    timeout_seconds: float = Field(default=600.0, gt=0)


class ToolsConfig(BaseModel):
    allowed_commands: list[str] = Field(
        default_factory=lambda: [
            "git",
            "ls",
            "cat",
            "grep",
            "find",
            "echo",
            "pwd",
            "wc",
            "head",
            "tail",
            "pytest",
            "python",
            "python3",
        ]
    )
    sanitize_env: bool = True
    safe_env_vars: list[str] = Field(
        default_factory=lambda: [
            "PATH",
            "HOME",
            "TERM",
            "LANG",
            "LC_ALL",
            "LC_CTYPE",
            "USER",
            "SHELL",
            "TMPDIR",
            "VIRTUAL_ENV",
            "PYTHONPATH",
        ]
    )
    command_timeout_seconds: float = Field(default=120.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ObservabilityConfig(BaseModel):
    audit_jsonl_path: Optional[str] = ".agent/audit/events.jsonl"
    metrics_path: Optional[str] = ".agent/audit/metrics.json"


class AppConfig(BaseModel):
    agent: AgentSettings = Field(default_factory=AgentSettings)
    self_improvement: SelfImprovementConfig = Field(default_factory=SelfImprovementConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    self_tests: SelfTestConfig = Field(default_factory=SelfTestConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def _check_limits(self) -> "AppConfig":
        limit = self.self_improvement.max_modifications_per_session
        if limit <= 0:
            raise ValueError("max_modifications_per_session must be greater than 0")
        if limit > 1000:
            raise ValueError(
                f"max_modifications_per_session seems unreasonably high: {limit}. "
                "Maximum allowed is 1000"
            )
        if not self.safety.protected_paths:
            raise ValueError("At least one protected path must be specified")
        return self


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AUTODEV_MAX_CONCURRENT_TASKS": ("agent", "max_concurrent_tasks"),
    "AUTODEV_AUTO_APPLY": ("self_improvement", "auto_apply"),
    "AUTODEV_IMPROVEMENT_INTERVAL": ("self_improvement", "improvement_interval"),
    "AUTODEV_LOG_LEVEL": ("logging", "level"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(merged: dict[str, Any]) -> dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value is None or value == "":
            continue
        merged.setdefault(section, {})
        if not isinstance(merged[section], dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")
        merged[section][key] = value
    return merged


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> AUTODEV_* env vars.

    Raises:
        ConfigError: On malformed YAML or any schema/limit violation.
    """
    if config_dir is None:
        config_dir = Path(__file__).parent.parent.parent / "config"

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay_path = config_dir / f"{env}.yaml"
        if not overlay_path.exists():
            raise ConfigError(f"Unknown config environment '{env}' ({overlay_path} not found)")
        merged = _deep_merge(merged, _load_yaml(overlay_path))

    merged = _apply_env_overrides(merged)

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
