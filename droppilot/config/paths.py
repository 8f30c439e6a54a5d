"""Path-related configuration and environment detection."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any


# Type alias for path operations
JsonType = dict[str, Any]


# Environment detection
IS_DOCKER = os.getenv("DOCKER_ENV") == "1" or os.path.exists("/.dockerenv")


def _merge_vars(base_vars: JsonType, vars: JsonType) -> None:
    """
    Merge variables recursively.

    NOTE: This modifies base_vars in place.
    """
    for k, v in vars.items():
        if k not in base_vars:
            base_vars[k] = v
        elif isinstance(v, dict):
            if isinstance(base_vars[k], dict):
                _merge_vars(base_vars[k], v)
            elif base_vars[k] is Ellipsis:
                # unspecified base, use the passed in var
                base_vars[k] = v
            else:
                raise RuntimeError(f"Var is a dict, base is not: '{k}'")
        elif isinstance(base_vars[k], dict):
            raise RuntimeError(f"Base is a dict, var is not: '{k}'")
        else:
            # simple overwrite
            base_vars[k] = v
    # ensure none of the vars are ellipsis (unset value)
    for k, v in base_vars.items():
        if v is Ellipsis:
            raise RuntimeError(f"Unspecified variable: '{k}'")


# Base Paths - environment-specific resolution
if (env_dir := os.getenv("DROPPILOT_DATA_DIR")):
    DATA_DIR = Path(env_dir)
elif IS_DOCKER:
    DATA_DIR = Path("/app/data")
else:
    DATA_DIR = Path.cwd() / "data"

# Ensure data directory exists
if not DATA_DIR.exists():
    DATA_DIR.mkdir(parents=True, exist_ok=True)

# Persistent storage paths
LOG_DIR = Path(DATA_DIR, "logs")
COOKIES_PATH = Path(DATA_DIR, "cookies.jar")
SETTINGS_PATH = Path(DATA_DIR, "settings.json")
STATS_PATH = Path(DATA_DIR, "stats.json")
