"""Configuration loader with validation."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import EngineConfig


class ConfigError(Exception):
    """Configuration error."""

    pass


def load_config(config_path: Path) -> EngineConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file

    Returns:
        Validated EngineConfig instance

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

    # Resolve log dir relative to config file
    if "logging" in data and isinstance(data["logging"], dict) and "log_dir" in data["logging"]:
        log_dir = Path(data["logging"]["log_dir"])
        if not log_dir.is_absolute():
            data["logging"]["log_dir"] = (config_path.parent / log_dir).resolve()

    try:
        return EngineConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}")


def create_default_config(config_path: Path) -> None:
    """Create default configuration file.

    Args:
        config_path: Path where config should be created
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = {
        "session": {
            "event_limit": 500,
            "resume_limit": 5,
        },
        "agent": {
            "max_actions": 40,
            "max_writes": 12,
            "max_list_entries": 200,
            "max_observation_chars": 20000,
            "max_file_chars": 200000,
            "loop_window": 6,
        },
        "summarizer": {
            "max_failures": 15,
            "payload_log_lines": 20,
        },
        "executor": {
            "max_fix_attempts": 2,
            "test_command": "pytest -q",
        },
        "llm": {
            "model": None,
            "api_key_env": "OPENAI_API_KEY",
        },
        "logging": {
            "level": "INFO",
            "log_dir": ".autopilot/logs",
        },
    }

    with open(config_path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
