"""
Configuration loader for SUMMON.
Merges packaged defaults, per-repo .summon/config.yaml overrides and
explicit CLI/environment overrides into one validated SummonConfig.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, Field, SecretStr, field_validator

from summon.classifier import Complexity
from summon.instruction import DEFAULT_FILE_PATTERNS, DEFAULT_TRIGGER

Provider = Literal["openai", "anthropic", "deepseek"]

PROVIDER_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

FALLBACK_UNIT_COST = Decimal("0.001")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class BackendDescriptor(BaseModel):
    name: str
    provider: Provider
    model: str | None = None
    cost_per_unit: Decimal | None = None
    unit_capacity: int = 4096
    complexity_affinity: Complexity = "medium"
    api_key: SecretStr | None = Field(default=None, exclude=True)

    @property
    def model_id(self) -> str:
        """Model identifier handed to the backend CLI."""
        return self.model or self.name

    @property
    def unit_cost(self) -> Decimal:
        return self.cost_per_unit if self.cost_per_unit is not None else FALLBACK_UNIT_COST


class LimitsConfig(BaseModel):
    max_cost_per_operation: Decimal = Decimal("1.0")
    daily_budget: Decimal | None = Decimal("10.0")
    timeout_minutes: float = 30.0

    @field_validator("daily_budget")
    @classmethod
    def _zero_means_unlimited(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and value <= 0:
            return None
        return value


class WorkspaceConfig(BaseModel):
    state_dir: str = ".summon"
    branch_prefix: str = "summon"
    bot_name: str = "SUMMON"
    bot_email: str = "summon-bot@users.noreply.github.com"


class SummonConfig(BaseModel):
    trigger: str = DEFAULT_TRIGGER
    default_backend: str | None = None
    allowed_users: list[str] = Field(default_factory=list)
    auto_create_pr: bool = True
    file_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_FILE_PATTERNS))
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    backends: dict[str, BackendDescriptor] = Field(default_factory=dict)

    def catalog(self) -> dict[str, BackendDescriptor]:
        """Backends that can actually run: their provider key is present."""
        return {name: b for name, b in self.backends.items() if b.api_key is not None}

    @property
    def timeout_seconds(self) -> float:
        return self.limits.timeout_minutes * 60


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
REPO_CONFIG_RELPATH = Path(".summon") / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _drop_none(data: dict) -> dict:
    """Strip unset CLI overrides so they do not clobber file values."""
    cleaned = {}
    for key, value in data.items():
        if isinstance(value, dict):
            value = _drop_none(value)
            if not value:
                continue
        elif value is None:
            continue
        cleaned[key] = value
    return cleaned


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(
    repo_path: Path | None = None,
    config_file: Path | None = None,
    overrides: dict[str, Any] | None = None,
    api_keys: dict[str, str | None] | None = None,
) -> SummonConfig:
    """
    Load config by merging:
      1. Built-in defaults (summon/config.yaml)
      2. Repo-level overrides (<repo>/.summon/config.yaml, or config_file)
      3. Explicit overrides (CLI options / INPUT_* variables)
    Then attach provider keys and fill in missing unit prices.
    """
    # 1. Built-in defaults
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    # 2. Repo overrides
    repo_config = config_file
    if repo_config is None and repo_path is not None:
        repo_config = repo_path / REPO_CONFIG_RELPATH
    if repo_config is not None and repo_config.exists():
        base = _deep_merge(base, _read_yaml(repo_config))
        logger.debug(f"[CONFIG] Merged overrides from {repo_config}")

    # 3. Explicit overrides
    if overrides:
        base = _deep_merge(base, _drop_none(overrides))

    for name, backend in (base.get("backends") or {}).items():
        backend.setdefault("name", name)

    config = SummonConfig(**base)
    _attach_api_keys(config, api_keys or {})
    _resolve_unit_costs(config)
    return config


def _attach_api_keys(config: SummonConfig, api_keys: dict[str, str | None]) -> None:
    for backend in config.backends.values():
        key = api_keys.get(backend.provider) or os.environ.get(PROVIDER_KEY_ENV[backend.provider])
        if key:
            backend.api_key = SecretStr(key)


def _resolve_unit_costs(config: SummonConfig) -> None:
    for backend in config.backends.values():
        if backend.cost_per_unit is None:
            backend.cost_per_unit = lookup_unit_cost(backend.model_id)


def lookup_unit_cost(model: str) -> Decimal:
    """Per-token output price from litellm's bundled price map, if it knows the model."""
    # Use the bundled price map rather than fetching the remote copy at import.
    os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")
    import litellm

    entry = litellm.model_cost.get(model) or {}
    price = entry.get("output_cost_per_token") or entry.get("input_cost_per_token")
    if not price:
        logger.debug(f"[CONFIG] No price known for {model}, using {FALLBACK_UNIT_COST}")
        return FALLBACK_UNIT_COST
    return Decimal(str(price))


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "DEEPSEEK_API_KEY":  bool(os.environ.get("DEEPSEEK_API_KEY")),
        "GITHUB_TOKEN":      bool(os.environ.get("GITHUB_TOKEN")),
    }
