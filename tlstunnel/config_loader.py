"""Configuration loading from YAML files with environment variable support."""

import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import dotenv_values

from .core.exceptions import ConfigurationError

logger = logging.getLogger("tlstunnel")

# Default path to the config file (relative to project root)
DEFAULT_CONFIG_PATH = "configs/config_default.yaml"

# Environment variable to override the config path
CONFIG_PATH_ENV = "TLSTUNNEL_CONFIG"

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def resolve_config_path(path: str) -> Path:
    """Resolve config path relative to the working directory or project root."""
    if Path(path).is_absolute() or Path(path).exists():
        return Path(path)
    project_root = Path(__file__).parent.parent
    return project_root / path


def resolve_env_path(config_path: Path, env_path: str | None = None) -> Path:
    """Resolve the env file path for a config file."""
    if env_path:
        return resolve_config_path(env_path)
    stem = config_path.stem
    if stem.startswith("config_"):
        suffix = stem[len("config_"):]
        return config_path.with_name(f".env_{suffix}")
    return config_path.with_name(".env")


def load_env_values(env_path: Path) -> dict[str, str]:
    """Load environment values from a .env file without mutating os.environ."""
    if not env_path.exists():
        return {}
    raw_values = dotenv_values(env_path)
    return {key: value for key, value in raw_values.items() if value is not None}


def load_config(
    path: str | None = None,
    env_path: str | None = None,
    substitute_env: bool = True,
) -> dict:
    """Load configuration from a YAML file.

    Args:
        path: Path to the config file. Defaults to TLSTUNNEL_CONFIG, or
              configs/config_default.yaml in the project root. An explicit
              path must exist; a missing default file yields an empty config.
        env_path: Optional .env path override for env substitution.
        substitute_env: Whether to substitute environment variables in the config.

    Returns:
        Parsed configuration dictionary.

    Raises:
        ConfigurationError: If an explicit file is missing or is not a YAML mapping.
    """
    explicit = path is not None or CONFIG_PATH_ENV in os.environ
    if path is None:
        path = os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH

    config_path = resolve_config_path(path)

    if not config_path.exists():
        if explicit:
            logger.error(f"Config file not found: {config_path}")
            raise ConfigurationError(f"Config file not found: {config_path}")
        logger.debug(f"No config file at {config_path}, using defaults")
        return {}

    logger.debug(f"Loading configuration from {config_path}")

    env_values: dict[str, str] = {}
    if substitute_env:
        env_file = resolve_env_path(config_path, env_path)
        if env_file.exists():
            logger.debug(f"Loading environment variables from {env_file}")
            env_values = load_env_values(env_file)

    try:
        with config_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ConfigurationError(f"Config file {config_path} is not valid UTF-8: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")

    if substitute_env:
        data = _substitute_env_vars(data, env_values)

    logger.debug(f"Configuration loaded successfully from {config_path}")
    return data


def _substitute_env_vars(
    obj: Any, env_values: Mapping[str, str] | None = None
) -> Any:
    """Recursively substitute environment variables in configuration values.

    Supports two formats:
    - ${VAR_NAME}: Braced format
    - $VAR_NAME: Simple format

    Values from the .env file win over the process environment. Unset
    variables are left as the literal placeholder and a warning is logged.
    """
    env_values = env_values or {}

    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v, env_values) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item, env_values) for item in obj]
    if isinstance(obj, str):

        def replace_var(match):
            var_name = match.group(1) or match.group(2)
            value = env_values.get(var_name)
            if value is None:
                value = os.getenv(var_name)
            if value is None:
                logger.warning(
                    f"CONFIG ERROR: Environment variable '${var_name}' is not set! "
                    f"The literal placeholder will be used."
                )
                return match.group(0)
            return value

        return _ENV_PATTERN.sub(replace_var, obj)
    return obj
