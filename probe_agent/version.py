from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path

DIST_NAME = "vps-probe"
UNKNOWN_VERSION = "0.0.0"

_PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def get_version(dist_name: str = DIST_NAME, pyproject: Path = _PYPROJECT) -> str:
    """Installed distribution version, else [project].version from a source checkout."""

    try:
        return metadata.version(dist_name)
    except metadata.PackageNotFoundError:
        pass
    try:
        project = tomllib.loads(pyproject.read_text("utf-8")).get("project") or {}
    except (OSError, tomllib.TOMLDecodeError):
        return UNKNOWN_VERSION
    return str(project.get("version") or UNKNOWN_VERSION)


__version__ = get_version()
