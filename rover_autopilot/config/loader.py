"""Configuration loader with validation."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import AutopilotConfig


class ConfigError(Exception):
    """Configuration error."""

    pass


def load_config(config_path: Path) -> AutopilotConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file

    Returns:
        Validated AutopilotConfig instance

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

    # Resolve project root relative to config file
    if "project" in data and "root" in data["project"]:
        root_path = Path(data["project"]["root"])
        if not root_path.is_absolute():
            data["project"]["root"] = (config_path.parent / root_path).resolve()

    if "project" in data and data["project"].get("data_dir"):
        data["project"]["data_dir"] = Path(data["project"]["data_dir"]).expanduser()

    try:
        return AutopilotConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}")


def create_default_config(config_path: Path, root: Path | None = None) -> None:
    """Create default configuration file.

    Args:
        config_path: Path where config should be created
        root: Repository root (defaults to current directory)
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = {
        "project": {
            "root": str(root or Path.cwd()),
            "data_dir": "~/.rover/data",
        },
        "pipeline": {
            "max_running_tasks": 3,
            "max_retries": 3,
            "poll_interval_sec": 30,
            "initial_delay_sec": 15,
            "stage_stagger_sec": 5,
        },
        "agent": {
            "cli_path": "claude",
            "timeout_sec": 300,
            "commit_message_timeout_sec": 60,
        },
        "sandbox": {
            "enabled": True,
            "docker_cli": "docker",
            "image": "ghcr.io/endorhq/rover/agent:latest",
        },
        "commit": {
            "attribution": True,
        },
        "workspace": {
            "exclude_patterns": [],
            "env_files": [".env", ".env.local"],
        },
        "logging": {
            "level": "INFO",
            "log_dir": ".rover/logs",
        },
    }

    with open(config_path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
