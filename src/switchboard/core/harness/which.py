"""
Locate harness executables and read their versions.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# Install locations that are commonly missing from PATH when the host was
# launched from a desktop session rather than a login shell.
EXTRA_BIN_DIRS = [
    "~/.local/bin",
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "~/.npm-global/bin",
    "~/.yarn/bin",
]


def resolve_executable(name: str, configured_path: str | None = None) -> str | None:
    """
    Find an executable by name.

    Args:
        name: Binary name (e.g. "claude")
        configured_path: Explicit path from configuration, checked first

    Returns:
        Absolute path to the executable, or None if it cannot be found
    """
    if configured_path:
        candidate = Path(configured_path).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        logger.warning(f"Configured binary path for {name} is not executable: {candidate}")

    if found := shutil.which(name):
        return found

    for directory in EXTRA_BIN_DIRS:
        candidate = Path(directory).expanduser() / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)

    return None


async def read_version(binary: str, timeout: float = 10.0) -> str | None:
    """
    Run ``<binary> --version`` and return the first line of output.

    Returns None when the command fails or does not finish within ``timeout``.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.debug(f"Could not run {binary} --version: {e}")
        return None

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.debug(f"{binary} --version timed out after {timeout}s")
        return None

    if process.returncode != 0:
        return None
    lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
    return lines[0].strip() if lines else None
