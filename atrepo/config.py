"""
Configuration: defaults, overlaid by ~/.atrepo/config.toml, overlaid by env.

    store_root      = "~/.atrepo"       (ATREPO_STORE)
    log_level       = "WARNING"         (ATREPO_LOG_LEVEL)
    max_block_size  = 2097152
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from atrepo import STORE_DEFAULT_DIR, STORE_MAX_BLOCK_SIZE

try:
    import tomllib
except ImportError:  # Python < 3.11
    import tomli as tomllib

log = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "store_root": str(Path.home() / STORE_DEFAULT_DIR),
    "log_level": "WARNING",
    "max_block_size": STORE_MAX_BLOCK_SIZE,
}

_ENV_OVERRIDES = {
    "ATREPO_STORE": "store_root",
    "ATREPO_LOG_LEVEL": "log_level",
}


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load config from TOML file and environment, falling back to defaults."""
    config = dict(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else Path.home() / STORE_DEFAULT_DIR / "config.toml"
    if path.is_file():
        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
            config.update(file_config)
        except (OSError, tomllib.TOMLDecodeError) as e:
            log.warning("Failed to load config from %s: %s", path, e)

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[key] = value

    return config
