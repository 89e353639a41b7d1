"""Connector factory: build the right connector from a config.yaml source entry."""

from __future__ import annotations

from typing import Any, Dict

from dealfeed.connectors.api import JSONAPIConnector
from dealfeed.connectors.base import BaseConnector
from dealfeed.connectors.file import FileConnector


def build_connector(config: Dict[str, Any]) -> BaseConnector:
    """Return a connector for the given source config (``type``: json_api | file)."""
    source_type = (config.get("type") or "json_api").lower().strip()
    if source_type == "file":
        return FileConnector(config)
    if source_type == "json_api":
        return JSONAPIConnector(config)
    raise ValueError(f"Unknown connector type {source_type!r} for source {config.get('id')!r}")
