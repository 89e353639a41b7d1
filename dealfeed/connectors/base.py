"""Base connector interface and shared field mapping."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

if TYPE_CHECKING:
    from dealfeed.storage.models import Source

# Raw deal keys every connector emits; a source's ``fields`` map renames upstream keys onto these
RAW_FIELDS = (
    "external_id",
    "title",
    "url",
    "category",
    "current_price",
    "previous_price",
    "sale_end_date",
)


def lookup(record: Any, path: str) -> Any:
    """Resolve a dotted path (``data.items``) inside nested dicts."""
    node = record
    for part in path.split("."):
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def map_record(record: Mapping[str, Any], fields: Optional[Mapping[str, str]]) -> Dict[str, Any]:
    """Project an upstream record onto the raw deal keys.

    Keys not named in ``fields`` are read under their own name; anything
    left over is kept in ``metadata``.
    """
    fields = fields or {}
    raw: Dict[str, Any] = {}
    used = set()
    for key in RAW_FIELDS:
        path = fields.get(key, key)
        raw[key] = lookup(record, path)
        used.add(path.split(".")[0])
    raw["metadata"] = {k: v for k, v in record.items() if k not in used}
    return raw


class BaseConnector(ABC):
    """Abstract base for deal connectors.

    Subclasses implement fetch() and return raw deal dicts with keys:
    external_id, title, url (required), category, current_price,
    previous_price, sale_end_date, metadata.
    """

    @abstractmethod
    async def fetch(self, source: "Source") -> List[Dict[str, Any]]:
        """Fetch raw deals from the source."""
        ...
