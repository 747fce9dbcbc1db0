"""Configuration loading from files and environment.

Supports:
- TOML config files with ``[profiles.<name>]`` overlays
- ``${VAR}`` and ``${VAR:-default}`` references inside string values
- Environment variables (COMMONPLACE_* prefix), which win over the file
- .env files

``COMMONPLACE_CONFIG`` and ``COMMONPLACE_PROFILE`` select the file and the
profile when the caller does not.
"""

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Optional

import pydantic
from dotenv import load_dotenv

from commonplace.config.schema import AppConfig
from commonplace.core.errors import ValidationError
from commonplace.observability.logging import get_logger

logger = get_logger(__name__)

_ENV_REFERENCE = re.compile(r"\$\{(?P<name>[^}:]+?)\s*(?::-(?P<default>[^}]*))?\}")


def _expand(match: re.Match) -> str:
    name = match.group("name").strip()
    value = os.getenv(name)
    if value is not None:
        return value
    if match.group("default") is not None:
        return match.group("default")
    logger.warning("env_var_not_found", var_name=name)
    return match.group(0)


def _substitute_env_vars(obj: Any) -> Any:
    """Expand environment references in every string of a parsed TOML tree.

    Unset variables without a default are left as written.
    """
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str):
        return _ENV_REFERENCE.sub(_expand, obj)
    return obj


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``override`` into ``base`` so profiles can set single keys."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_file(config_path: Path, profile: Optional[str]) -> dict[str, Any]:
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValidationError(f"Invalid config file {config_path}: {e}") from e
    logger.info("loaded_config_file", path=str(config_path))

    profiles = data.pop("profiles", {})
    if profile:
        if profile in profiles:
            data = _merge(data, profiles[profile])
            logger.info("applied_profile", profile=profile)
        else:
            logger.warning("profile_not_found", profile=profile, available=sorted(profiles))
    return _substitute_env_vars(data)


def load_config(
    config_path: Optional[Path] = None,
    profile: Optional[str] = None,
    env_file: Optional[Path] = None,
) -> AppConfig:
    """Load application configuration.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (profile overlay first, then base tables)
    3. Defaults

    Args:
        config_path: Path to TOML config file; a missing file means defaults
        profile: Config profile to use (e.g., "local"); defaults to ``COMMONPLACE_PROFILE``
        env_file: Path to .env file, loaded before anything else

    Returns:
        Loaded and validated configuration

    Raises:
        ValidationError: If the file is not valid TOML or a value is out of range
    """
    if env_file and env_file.exists():
        load_dotenv(env_file)
        logger.info("loaded_env_file", path=str(env_file))

    profile = profile or os.getenv("COMMONPLACE_PROFILE")
    config_data: dict[str, Any] = {}
    if config_path and config_path.exists():
        config_data = _read_file(config_path, profile)

    try:
        config = AppConfig(**config_data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid configuration: {e}") from e

    logger.debug(
        "config_loaded",
        embedding_provider=config.embedding.provider.value,
        store_type=config.storage.store_type.value,
        dimension=config.embedding.dimension,
    )
    return config


def get_default_config_path() -> Path:
    """Get the default config file path.

    ``COMMONPLACE_CONFIG`` wins when set. Otherwise the first existing of:
    1. ./commonplace.toml
    2. ~/.commonplace/config.toml
    3. /etc/commonplace/config.toml
    """
    explicit = os.getenv("COMMONPLACE_CONFIG")
    if explicit:
        return Path(explicit).expanduser()

    search_paths = [
        Path.cwd() / "commonplace.toml",
        Path.home() / ".commonplace" / "config.toml",
        Path("/etc/commonplace/config.toml"),
    ]
    for path in search_paths:
        if path.exists():
            return path
    return search_paths[0]
