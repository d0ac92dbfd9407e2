"""Configuration loading and management for DriverKeeper."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger

from driverkeeper.models import (
    AUTH_SECRET_ENV,
    NOTIFY_TOKEN_ENV,
    DriverDescription,
    KeeperConfig,
    parse_duration,
)

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".driverkeeper"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "driverkeeper.yaml"

__all__ = [
    "ConfigError",
    "apply_env_secrets",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_CONFIG_FILE",
    "expand_env_vars",
    "expand_path",
    "load_config",
    "load_descriptor",
    "load_yaml_file",
    "parse_duration",
]


class ConfigError(Exception):
    """Configuration error."""

    pass


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)

    return os.path.expandvars(value)


def expand_path(path: str | None) -> str | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    expanded = os.path.expanduser(str(path))
    expanded = expand_env_vars(expanded)
    return expanded


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid YAML in {path}: expected a mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> KeeperConfig:
    """Load the main DriverKeeper configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return apply_env_secrets(KeeperConfig())

    data = load_yaml_file(path)

    worker = data.get("worker")
    if isinstance(worker, dict):
        for key in ("work_dir", "runtime_home"):
            if key in worker:
                worker[key] = expand_path(worker[key])
        if "worker_url" in worker:
            worker["worker_url"] = expand_env_vars(str(worker["worker_url"]))
        credentials = worker.get("fetch_credentials")
        if isinstance(credentials, dict):
            worker["fetch_credentials"] = {
                str(k): expand_env_vars(str(v)) for k, v in credentials.items()
            }

    logging_section = data.get("logging")
    if isinstance(logging_section, dict) and "file" in logging_section:
        logging_section["file"] = expand_path(logging_section["file"])

    notify_section = data.get("notify")
    if isinstance(notify_section, dict) and notify_section.get("token"):
        notify_section["token"] = expand_env_vars(str(notify_section["token"]))

    try:
        config = KeeperConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    return apply_env_secrets(config)


def apply_env_secrets(config: KeeperConfig) -> KeeperConfig:
    """Fill in secrets the config file leaves unset from the keeper's environment.

    $DRIVERKEEPER_AUTH_SECRET becomes the artifact fetch token and
    $DRIVERKEEPER_NOTIFY_TOKEN the notification bearer token.
    """
    auth_secret = os.environ.get(AUTH_SECRET_ENV)
    if auth_secret and not config.worker.fetch_credentials:
        config.worker.fetch_credentials = {"token": auth_secret}

    notify_token = os.environ.get(NOTIFY_TOKEN_ENV)
    if notify_token and not config.notify.token:
        config.notify.token = notify_token

    return config


def load_descriptor(path: Path) -> DriverDescription:
    """Load a driver description from its own YAML file.

    The artifact URL, program and arguments have environment variables
    expanded; placeholders such as ``{{WORKER_URL}}`` are left untouched.
    """
    if not path.exists():
        raise ConfigError(f"Driver descriptor not found: {path}")

    data = load_yaml_file(path)

    if "artifact_url" in data:
        data["artifact_url"] = expand_env_vars(str(data["artifact_url"]))

    command = data.get("command")
    if isinstance(command, dict):
        if "program" in command:
            command["program"] = expand_env_vars(str(command["program"]))
        if "arguments" in command and isinstance(command["arguments"], list):
            command["arguments"] = [expand_env_vars(str(a)) for a in command["arguments"]]
        if "environment" in command and isinstance(command["environment"], dict):
            command["environment"] = {
                k: expand_env_vars(str(v)) for k, v in command["environment"].items()
            }

    try:
        descriptor = DriverDescription.model_validate(data)
        logger.debug(f"Loaded driver descriptor from {path}")
        return descriptor
    except Exception as e:
        raise ConfigError(f"Invalid driver descriptor {path}: {e}") from e
