"""Locate files shipped inside the parley package."""

from importlib.resources import files
from pathlib import Path


def resource_path(relative_path: str) -> Path:
    """Return the absolute path of a file bundled with the package, e.g. `configs/parley_config.yaml`."""
    return Path(str(files("parley").joinpath(relative_path)))
