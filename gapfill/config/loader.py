"""Configuration loader with validation."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import GapFillConfig


class ConfigError(Exception):
    """Configuration error."""

    pass


def load_config(config_path: Path) -> GapFillConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file

    Returns:
        Validated GapFillConfig instance

    Raises:
        ConfigError: If config file missing or invalid
    """
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not data:
        raise ConfigError(f"Empty configuration file: {config_path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping: {config_path}")

    # Resolve paths relative to config file directory
    for section, key in (("storage", "state_dir"), ("similarity", "history_file")):
        values = data.get(section)
        if isinstance(values, dict) and values.get(key):
            path = Path(values[key])
            if not path.is_absolute():
                values[key] = (config_path.parent / path).resolve()

    try:
        return GapFillConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}")


def load_config_or_default(config_path: Path) -> GapFillConfig:
    """Load configuration, falling back to defaults when the file is absent."""
    if not config_path.exists():
        return GapFillConfig()
    return load_config(config_path)


def create_default_config(config_path: Path) -> None:
    """Create default configuration file.

    Args:
        config_path: Path where config should be created
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = {
        "detection": {
            "time_gap_hours": 40,
            "phase_jump": 2,
            "min_indicators": 3,
            "max_gaps": 3,
        },
        "pipeline": {
            "max_candidates": 3,
            "history_top_k": 10,
            "duplicate_threshold": 0.90,
            "weight_history": 0.4,
            "weight_gap": 0.3,
            "weight_provider": 0.3,
            "generation_timeout_sec": 5.0,
            "similarity_timeout_sec": 5.0,
            "max_generation_attempts": 2,
            "max_concurrent_gaps": 3,
        },
        "generator": {
            "mode": "openai_api",
            "model": None,
            "api_key_env": "OPENAI_API_KEY",
            "temperature": 0.3,
        },
        "similarity": {
            "mode": "openai_api",
            "model": "text-embedding-3-small",
            "history_file": None,
            "api_key_env": "OPENAI_API_KEY",
        },
        "storage": {
            "state_dir": "sessions",
        },
        "logging": {
            "level": "INFO",
            "log_dir": None,
        },
    }

    with open(config_path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
