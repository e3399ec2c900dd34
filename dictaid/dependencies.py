"""Presence and version checks for the command line tools dictaid drives."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

HOMEBREW_PREFIXES = (Path("/opt/homebrew/bin"), Path("/usr/local/bin"))
VERSION_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


class DependencyError(RuntimeError):
    """Raised when a required tool is missing or cannot be installed."""


@dataclass(slots=True)
class DependencyStatus:
    name: str
    description: str
    required: bool
    path: Optional[Path] = None
    version: Optional[str] = None

    @property
    def installed(self) -> bool:
        return self.path is not None


# name -> (description, required, version flag)
DEPENDENCIES = {
    "sox": ("Sound eXchange - audio recording", True, "--version"),
    "ffmpeg": ("Audio conversion for local engines", True, "-version"),
    "uv": ("Python package manager used to run parakeet-mlx", False, "--version"),
}


def find_tool(name: str) -> Optional[Path]:
    """Locate ``name`` on PATH, then in the Homebrew prefixes."""

    found = shutil.which(name)
    if found:
        return Path(found)
    for prefix in HOMEBREW_PREFIXES:
        candidate = prefix / name
        if candidate.exists():
            return candidate
    return None


def require_tool(name: str) -> Path:
    path = find_tool(name)
    if path is None:
        raise DependencyError(f"`{name}` is not installed. Install it with `brew install {name}`.")
    return path


def tool_version(path: Path, flag: str = "--version") -> Optional[str]:
    try:
        result = subprocess.run(
            [str(path), flag],
            capture_output=True,
            text=True,
            timeout=VERSION_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Could not read version of %s: %s", path, exc)
        return None
    output = (result.stdout or result.stderr).strip()
    return output.splitlines()[0] if output else None


def check_dependencies() -> List[DependencyStatus]:
    statuses = []
    for name, (description, required, flag) in DEPENDENCIES.items():
        path = find_tool(name)
        version = tool_version(path, flag) if path is not None else None
        statuses.append(DependencyStatus(name, description, required, path, version))
    return statuses


def missing_required(statuses: List[DependencyStatus]) -> List[DependencyStatus]:
    return [status for status in statuses if status.required and not status.installed]


def install_with_homebrew(package: str) -> None:
    brew = find_tool("brew")
    if brew is None:
        raise DependencyError("Homebrew is not installed. See https://brew.sh for instructions.")
    logger.info("Installing %s with Homebrew", package)
    try:
        subprocess.run([str(brew), "install", package], check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as exc:
        message = (exc.stderr or "").strip() or str(exc)
        raise DependencyError(f"Failed to install {package}: {message}") from exc
