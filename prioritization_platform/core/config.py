from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from prioritization_platform.core.errors import ConfigError


ENV_PREFIX = "PRIORITIZATION_"


@dataclass(frozen=True)
class LoopConfig:
    # Prioritization loop
    fast_path_threshold: float = 0.8
    max_iterations: int = 3
    generator_attempts: int = 2
    generator_model: str = "gpt-4o"
    evaluator_model: str = "gpt-4o-mini"

    # Drafts / bridging tasks
    dedupe_threshold: float = 0.85
    duplicate_threshold: float = 0.9

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_timeout_s: float = 10.0
    batch_size: int = 50
    max_concurrent_batches: int = 3


DEFAULT_CONFIG = LoopConfig()


def _field_types() -> dict[str, type]:
    # `from __future__ import annotations` leaves annotations as strings.
    return {f.name: type(getattr(DEFAULT_CONFIG, f.name)) for f in fields(LoopConfig)}


def _coerce(name: str, value: Any, expected: type) -> Any:
    if expected is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(code="E_CONFIG_INVALID", message=f"{name} must be a number", path=name)
        return float(value)
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(code="E_CONFIG_INVALID", message=f"{name} must be an integer", path=name)
        return value
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            code="E_CONFIG_INVALID", message=f"{name} must be a non-empty string", path=name
        )
    return value.strip()


def _parse_env(name: str, raw: str, expected: type) -> Any:
    try:
        if expected is float:
            return float(raw)
        if expected is int:
            return int(raw)
    except ValueError as e:
        raise ConfigError(
            code="E_CONFIG_INVALID",
            message=f"{ENV_PREFIX}{name.upper()}={raw!r} is not a valid {expected.__name__}",
            path=name,
        ) from e
    return raw


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load config overrides from a YAML mapping of field -> value."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(code="E_FILE_NOT_FOUND", message="config file does not exist", file=str(p))
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(code="E_YAML_PARSE", message=str(e), file=str(p)) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(
            code="E_CONFIG_INVALID", message="config file must be a mapping", file=str(p)
        )

    types = _field_types()
    out: dict[str, Any] = {}
    for k, v in raw.items():
        if k not in types:
            raise ConfigError(code="E_CONFIG_UNKNOWN_KEY", message=f"unknown config key: {k}", file=str(p), path=str(k))
        out[k] = _coerce(k, v, types[k])
    return out


def env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, expected in _field_types().items():
        raw = (os.getenv(ENV_PREFIX + name.upper(), "") or "").strip()
        if raw:
            out[name] = _parse_env(name, raw, expected)
    return out


def load_config(path: str | Path | None = None) -> LoopConfig:
    """Defaults, then the optional YAML file, then PRIORITIZATION_* env vars."""
    overrides: dict[str, Any] = {}
    if path:
        overrides.update(load_config_file(path))
    overrides.update(env_overrides())
    cfg = replace(DEFAULT_CONFIG, **overrides)
    _check_ranges(cfg)
    return cfg


def _check_ranges(cfg: LoopConfig) -> None:
    if not 0.0 <= cfg.fast_path_threshold <= 1.0:
        raise ConfigError(code="E_CONFIG_INVALID", message="fast_path_threshold must be within [0, 1]", path="fast_path_threshold")
    if not 0.0 <= cfg.dedupe_threshold <= 1.0:
        raise ConfigError(code="E_CONFIG_INVALID", message="dedupe_threshold must be within [0, 1]", path="dedupe_threshold")
    for name in ("max_iterations", "generator_attempts", "batch_size", "max_concurrent_batches"):
        if getattr(cfg, name) < 1:
            raise ConfigError(code="E_CONFIG_INVALID", message=f"{name} must be >= 1", path=name)


def _role_env_key(role: str) -> str:
    """Map a role name to a role-specific env var key.

    Examples:
      - generator -> OPENAI_MODEL_GENERATOR
      - draft-generator -> OPENAI_MODEL_DRAFT_GENERATOR
    """

    role_key = re.sub(r"[^A-Za-z0-9]+", "_", role).strip("_").upper()
    return f"OPENAI_MODEL_{role_key}"


def model_for_role(role: str, default_model: str) -> str:
    """Return the model to use for a given role.

    Resolution order:
      1) OPENAI_MODEL_<ROLE>
      2) default_model
    """

    override = (os.getenv(_role_env_key(role), "") or "").strip()
    return override or default_model
