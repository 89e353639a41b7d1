"""YAML configuration loading and default paths."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DB_PATH = "data/dealfeed.db"
DEFAULT_MAX_AGE_HOURS = 24


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load the YAML config; a missing or empty file yields ``{}``."""
    config_file = Path(path)
    if not config_file.exists():
        logger.warning("Config %s not found; using defaults", path)
        return {}
    with open(config_file, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}
