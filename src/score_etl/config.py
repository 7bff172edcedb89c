"""score_etl.config

YAML pipeline configuration.

Responsibilities:
  - Load and validate config/pipeline.yml (or any file passed via --config)
  - Expose the lock recovery and orphan retry tunables as a PipelineConfig
  - Hash the YAML content so run reports can name the exact config used

Usage:
    from pathlib import Path
    from score_etl.config import load_pipeline_config

    cfg = load_pipeline_config(Path("config/pipeline.yml"))
    lock = PostgresImportLock(conn, ttl_seconds=cfg.lock_ttl_seconds)

Every key is optional; a missing key takes the PipelineConfig default.
Unknown keys are rejected so typos do not silently fall back to defaults.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_POSITIVE_NUMBERS = ("lock_ttl_seconds",)
_POSITIVE_INTS = ("heartbeat_every", "worker_max_threads")
_NON_NEGATIVE_NUMBERS = ("orphan_backoff_seconds",)
_OPTIONAL_POSITIVE_INTS = ("orphan_max_retries",)
_OPTIONAL_POSITIVE_NUMBERS = ("orphan_backoff_max_seconds",)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when a pipeline YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# PipelineConfig dataclass
# ---------------------------------------------------------------------------

@dataclass
class PipelineConfig:
    lock_ttl_seconds: float = 600.0
    heartbeat_every: int = 50
    orphan_max_retries: int | None = None
    orphan_backoff_seconds: float = 0.0
    orphan_backoff_max_seconds: float | None = None
    log_level: str = "INFO"
    worker_max_threads: int = 4
    yaml_hash: str | None = None
    raw_yaml: str = field(repr=False, default="")

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "raw_yaml"}


_CONFIG_KEYS = frozenset(f.name for f in fields(PipelineConfig)) - {"yaml_hash", "raw_yaml"}


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_pipeline_config(yaml_path: Path | None) -> PipelineConfig:
    """Load, validate, and return a PipelineConfig.

    Args:
        yaml_path: Path to the YAML file, or None for all defaults.

    Raises:
        ConfigValidationError: If any key is unknown or has an invalid value.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return PipelineConfig()
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        data = {}
    validate_pipeline_config(data)
    cfg = PipelineConfig(**data)
    cfg.log_level = (cfg.log_level or "INFO").upper()
    cfg.yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    cfg.raw_yaml = raw
    return cfg


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_pipeline_config(data: Any) -> None:
    """Raise ConfigValidationError if data does not match the config schema."""
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - _CONFIG_KEYS
    if unknown:
        raise ConfigValidationError(f"Unknown config keys: {sorted(unknown)}")

    for key in _POSITIVE_NUMBERS:
        if key in data and not (_is_number(data[key]) and data[key] > 0):
            raise ConfigValidationError(f"'{key}' must be a number > 0, got {data[key]!r}.")

    for key in _POSITIVE_INTS:
        if key in data and not (_is_int(data[key]) and data[key] > 0):
            raise ConfigValidationError(f"'{key}' must be an integer > 0, got {data[key]!r}.")

    for key in _NON_NEGATIVE_NUMBERS:
        if key in data and not (_is_number(data[key]) and data[key] >= 0):
            raise ConfigValidationError(f"'{key}' must be a number >= 0, got {data[key]!r}.")

    for key in _OPTIONAL_POSITIVE_INTS:
        value = data.get(key)
        if value is not None and not (_is_int(value) and value > 0):
            raise ConfigValidationError(
                f"'{key}' must be null or an integer > 0, got {value!r}."
            )

    for key in _OPTIONAL_POSITIVE_NUMBERS:
        value = data.get(key)
        if value is not None and not (_is_number(value) and value > 0):
            raise ConfigValidationError(
                f"'{key}' must be null or a number > 0, got {value!r}."
            )

    level = data.get("log_level")
    if level is not None and (not isinstance(level, str) or level.upper() not in VALID_LOG_LEVELS):
        raise ConfigValidationError(
            f"Invalid log_level {level!r}. Must be one of {list(VALID_LOG_LEVELS)}."
        )

    backoff = data.get("orphan_backoff_seconds", 0)
    ceiling = data.get("orphan_backoff_max_seconds")
    if ceiling is not None and ceiling < backoff:
        raise ConfigValidationError(
            f"'orphan_backoff_max_seconds' ({ceiling}) must be >= "
            f"'orphan_backoff_seconds' ({backoff})."
        )
