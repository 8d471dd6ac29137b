"""
Configuration models and loading.

This module provides Pydantic models for switchboard configuration
with multi-layer merging: defaults < user < project < env vars.
"""

from .loader import (
    clear_cache,
    get_project_config_path,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
)
from .models import (
    ExecutionConfig,
    HarnessDefaults,
    PrivacyConfig,
    ProbeConfig,
    SwitchboardConfig,
)

__all__ = [
    # Models
    "ExecutionConfig",
    "HarnessDefaults",
    "PrivacyConfig",
    "ProbeConfig",
    "SwitchboardConfig",
    # Loader functions
    "clear_cache",
    "get_project_config_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
]
