"""
Layered .env loading.

Harness CLIs inherit switchboard's environment, so API keys, proxy settings
and ``SWITCHBOARD_*`` overrides can be kept in .env files instead of the
shell. Files are layered lowest to highest:

    ~/.config/switchboard/.env  <  <project>/.env  <  <project>/.env.local

Variables exported before switchboard starts are never replaced.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

from .loader import get_xdg_config_home

logger = logging.getLogger(__name__)


def get_user_env_path() -> Path:
    return get_xdg_config_home() / "switchboard" / ".env"


def get_project_env_paths(project_dir: Path) -> list[Path]:
    return [project_dir / ".env", project_dir / ".env.local"]


def collect_env_layers(paths: Iterable[Path]) -> dict[str, tuple[str, Path]]:
    """
    Merge .env files in order, later files winning.

    Keys without a value (a bare ``KEY`` line) are skipped.

    Returns:
        Mapping of variable name to (value, file it came from)
    """
    merged: dict[str, tuple[str, Path]] = {}
    for path in paths:
        path = Path(path)
        if not path.is_file():
            continue
        for key, value in dotenv_values(path).items():
            if key and value is not None:
                merged[key] = (value, path)
    return merged


def load_layered_env(
    *,
    project_dir: Path | None = None,
    user_env_paths: Iterable[Path] | None = None,
    project_env_paths: Iterable[Path] | None = None,
) -> dict[str, Path]:
    """
    Apply user and project .env files to ``os.environ``.

    Args:
        project_dir: Base directory for the project files (defaults to cwd)
        user_env_paths: Override the user-level files
        project_env_paths: Override the project-level files

    Returns:
        Each variable that was set, mapped to the file that supplied it
    """
    if user_env_paths is None:
        user_env_paths = [get_user_env_path()]
    if project_env_paths is None:
        project_env_paths = get_project_env_paths(project_dir or Path.cwd())

    layers = collect_env_layers([*user_env_paths, *project_env_paths])

    applied: dict[str, Path] = {}
    for key, (value, source) in layers.items():
        if key in os.environ:
            logger.debug(f"Keeping exported {key}; ignoring value from {source}")
            continue
        os.environ[key] = value
        applied[key] = source

    if applied:
        logger.debug(f"Loaded {len(applied)} variable(s) from .env files")
    return applied
