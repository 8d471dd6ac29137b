"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import SwitchboardConfig

logger = logging.getLogger(__name__)

# Global cache to avoid reloading config multiple times per process
_config_cache: SwitchboardConfig | None = None


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/switchboard/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "switchboard" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Working directory to search from (defaults to current directory)

    Returns:
        Path to .switchboard.json in the project root
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".switchboard.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`.
    Nested dicts are merged, not replaced; lists are replaced.

    Args:
        base: Base dictionary (lower priority)
        override: Override dictionary (higher priority)

    Returns:
        Merged dictionary with override values taking precedence

    Example:
        >>> base = {"a": 1, "b": {"x": 10, "y": 20}}
        >>> override = {"b": {"y": 30, "z": 40}, "c": 3}
        >>> deep_merge(base, override)
        {"a": 1, "b": {"x": 10, "y": 30, "z": 40}, "c": 3}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open() as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to parse config at {path}: {e}")
        return None


def _set_nested(config_dict: dict[str, Any], section: str, key: str, value: Any) -> None:
    section_dict = config_dict.setdefault(section, {})
    section_dict[key] = value


def _float_env(name: str) -> float | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value '{raw}', ignoring")
        return None
    if value <= 0:
        logger.warning(f"{name} must be > 0, got {value}, ignoring")
        return None
    return value


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override all config files.

    Supported env vars:
        SWITCHBOARD_HARNESS - overrides default_harness
        SWITCHBOARD_ABORT_TIMEOUT - overrides execution.abort_timeout_seconds
        SWITCHBOARD_BUFFER_RETENTION_MINUTES - overrides execution.buffer_retention_minutes
        SWITCHBOARD_TOOL_CALL_TIMEOUT - overrides execution.tool_call_timeout_seconds
        SWITCHBOARD_PROBE_TIMEOUT - overrides both probe run timeouts
        SWITCHBOARD_DISABLE_TELEMETRY - overrides privacy.disable_telemetry

    Args:
        config_dict: Configuration dictionary to override

    Returns:
        Configuration dictionary with env var overrides applied
    """
    result = config_dict.copy()

    if harness := os.environ.get("SWITCHBOARD_HARNESS"):
        result["default_harness"] = harness

    if (abort_timeout := _float_env("SWITCHBOARD_ABORT_TIMEOUT")) is not None:
        _set_nested(result, "execution", "abort_timeout_seconds", abort_timeout)

    if (retention := _float_env("SWITCHBOARD_BUFFER_RETENTION_MINUTES")) is not None:
        _set_nested(result, "execution", "buffer_retention_minutes", retention)

    if (tool_timeout := _float_env("SWITCHBOARD_TOOL_CALL_TIMEOUT")) is not None:
        _set_nested(result, "execution", "tool_call_timeout_seconds", tool_timeout)

    if (probe_timeout := _float_env("SWITCHBOARD_PROBE_TIMEOUT")) is not None:
        _set_nested(result, "probes", "install_timeout_seconds", probe_timeout)
        _set_nested(result, "probes", "slash_command_timeout_seconds", probe_timeout)

    if telemetry_str := os.environ.get("SWITCHBOARD_DISABLE_TELEMETRY"):
        disabled = telemetry_str.lower() not in ("false", "0", "")
        _set_nested(result, "privacy", "disable_telemetry", disabled)

    return result


def get_default_config() -> dict[str, Any]:
    """
    Get hardcoded default configuration.

    Returns:
        Dictionary with default configuration values
    """
    defaults = SwitchboardConfig()
    return defaults.model_dump(mode="json")


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> SwitchboardConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (SWITCHBOARD_*)
        2. Project config (.switchboard.json)
        3. User config (~/.config/switchboard/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Project directory to load .switchboard.json from (defaults to cwd)
        use_cache: If True, return cached config from previous load

    Returns:
        Validated SwitchboardConfig instance

    Raises:
        ValidationError: If the merged config fails Pydantic validation

    Example:
        >>> config = load_config()
        >>> config.execution.buffer_retention_minutes
        30.0
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()

    user_config_path = get_user_config_path()
    if user_config := load_json_file(user_config_path):
        merged = deep_merge(merged, user_config)

    project_config_path = get_project_config_path(project_dir)
    if project_config := load_json_file(project_config_path):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    config = SwitchboardConfig(**merged)

    _config_cache = config

    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
