"""Local JSON file connector for manual imports and fixtures."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List

from dealfeed.connectors.base import BaseConnector, lookup, map_record

if TYPE_CHECKING:
    from dealfeed.storage.models import Source

logger = logging.getLogger(__name__)


class FileConnector(BaseConnector):
    """Read a JSON list of deal records from ``path``."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.path = config.get("path", "")
        self.items_key = config.get("items_key")
        self.fields = config.get("fields") or {}

    async def fetch(self, source: "Source") -> List[Dict[str, Any]]:
        if not self.path:
            return []
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._read)
        records = lookup(data, self.items_key) if self.items_key else data
        if not isinstance(records, list):
            raise ValueError(f"{self.path}: expected a JSON list of deals")
        logger.debug("Source %s: read %d records from %s", source.id, len(records), self.path)
        return [map_record(r, self.fields) for r in records if isinstance(r, dict)]

    def _read(self) -> Any:
        return json.loads(Path(self.path).read_text(encoding="utf-8"))
